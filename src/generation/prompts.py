"""
Prompt templates for the study-notebook generator.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Answer shaping
# ---------------------------------------------------------------------------

STYLE_GUIDE = {
    "formal": "Use a formal academic tone with precise technical terminology and rigorous structure.",
    "practical": "Focus on practical applications, use concrete examples and accessible language.",
    "balanced": "Combine academic rigour with practical clarity, balancing theory and application.",
}

DEPTH_GUIDE = {
    "basic": "Explain concepts introductorily, assuming little prior knowledge.",
    "intermediate": "Assume basic knowledge and go deeper into the important details.",
    "advanced": "Go into advanced technical aspects, assuming command of the subject.",
}

SYSTEM_PROMPT = """\
You are a study copilot that helps university students learn from their own \
course material.

STYLE: {style}
DEPTH: {depth}
LANGUAGE: Answer in {language}

PRINCIPLES:
- Always cite your sources when you use information from the context
- Be precise and avoid incorrect information
- If you do not know something or the context is insufficient, say so
- Structure your answers clearly
- Adapt your language to the student's level"""


def build_system_prompt(
    style: str = "balanced", depth: str = "intermediate", language: str = "en"
) -> str:
    return SYSTEM_PROMPT.format(
        style=STYLE_GUIDE.get(style, STYLE_GUIDE["balanced"]),
        depth=DEPTH_GUIDE.get(depth, DEPTH_GUIDE["intermediate"]),
        language=language,
    )


# ---------------------------------------------------------------------------
# Grounded answer
# ---------------------------------------------------------------------------

SOURCE_TEMPLATE = "[Source {index}]:\n{content}"

GROUNDED_PROMPT = """\
Answer the student's question using ONLY the academic context below.

CONTEXT:
{context}

STUDENT QUESTION:
{query}

INSTRUCTIONS:
1. Answer clearly and with structure
2. Cite sources as [Source N] whenever you use specific information
3. If the context does not contain enough information, say so explicitly
4. Do not invent information that is not in the context
5. Use the tone and depth that fit the student's profile

ANSWER:"""


def build_grounded_prompt(query: str, sources: list[str]) -> str:
    """Number each source [Source 1]..[Source N] and wrap it with the instructions."""
    context = "\n\n---\n\n".join(
        SOURCE_TEMPLATE.format(index=i, content=content)
        for i, content in enumerate(sources, start=1)
    )
    return GROUNDED_PROMPT.format(context=context, query=query)


# ---------------------------------------------------------------------------
# Fallback when nothing is retrieved
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "I could not find relevant information in your resources to answer this "
    "question. Try adding more resources on the topic or rephrasing your query."
)


# ---------------------------------------------------------------------------
# Academic summary
# ---------------------------------------------------------------------------

SUMMARY_PROMPT = """\
Write a structured academic summary of the following content.

CONTENT:
{content}

REQUIRED STRUCTURE (answer in JSON):
{{
  "theoretical_context": "Theoretical context and conceptual framework (2-3 paragraphs)",
  "key_ideas": ["Key idea 1", "Key idea 2"],
  "definitions": [
    {{"term": "Term", "definition": "Clear definition", "formula": "Formula if any"}}
  ],
  "examples": [
    {{"description": "Example description", "solution": "Step-by-step solution if any"}}
  ],
  "common_mistakes": ["Common mistake 1 and how to avoid it"],
  "review_checklist": ["Review point 1", "Review point 2"],
  "references": ["Reference implied by the content"]
}}

DEPTH: {depth}
LANGUAGE: {language}

Reply ONLY with valid JSON, no additional text."""


def build_summary_prompt(content: str, depth: str = "intermediate", language: str = "en") -> str:
    return SUMMARY_PROMPT.format(content=content, depth=depth, language=language)
