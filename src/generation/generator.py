"""
Text Generators
----------------
One generate() interface, a closed set of provider variants chosen once at
startup by create_generator():

  OpenAIGenerator    -- OpenAI chat completions; also Groq and DeepSeek,
                        which expose OpenAI-compatible endpoints
  AnthropicGenerator -- Anthropic messages API
  GeminiGenerator    -- Google Gemini generateContent over REST (httpx)

Every client carries a bounded timeout and a tenacity retry; a call that
still fails surfaces as UpstreamCapabilityError.
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from langsmith import traceable
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential

from src.exceptions import BackendNotConfiguredError, UpstreamCapabilityError


# ---------------------------------------------------------------------------
# Provider table  (env var, default model, base_url, free tier)
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, dict] = {
    "groq": {
        "env": "GROQ_API_KEY",
        "model": "llama-3.3-70b-versatile",
        "base_url": "https://api.groq.com/openai/v1",
        "free": True,
    },
    "gemini": {
        "env": "GEMINI_API_KEY",
        "model": "gemini-2.0-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "free": True,
    },
    "deepseek": {
        "env": "DEEPSEEK_API_KEY",
        "model": "deepseek-chat",
        "base_url": "https://api.deepseek.com",
        "free": True,
    },
    "openai": {
        "env": "OPENAI_API_KEY",
        "model": "gpt-4o-mini",
        "base_url": None,
        "free": False,
    },
    "anthropic": {
        "env": "ANTHROPIC_API_KEY",
        "model": "claude-haiku-4-5-20251001",
        "base_url": None,
        "free": False,
    },
}

# groq -> gemini -> deepseek (free), then the paid ones
AUTO_ORDER = ("groq", "gemini", "deepseek", "openai", "anthropic")


@dataclass
class GenerationResult:
    """Provider-agnostic result of one generation call."""

    content: str
    tokens_used: int
    finish_reason: str
    model: str
    provider: str


class TextGenerator(ABC):
    provider: str = ""
    model: str = ""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        ...


_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible) Generator
# ---------------------------------------------------------------------------

class OpenAIGenerator(TextGenerator):
    """
    Chat completions through the OpenAI SDK.

    Groq and DeepSeek reuse this class with their own base_url and key.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        provider: str = "openai",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        from openai import OpenAI  # lazy import keeps import graph clean
        self.model = model
        self.provider = provider
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @_retry
    def _complete(self, messages: list[dict], max_tokens: int, temperature: float):
        return self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

    @traceable(name="generate_openai", run_type="llm")
    def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self._complete(messages, max_tokens, temperature)
        except Exception as exc:
            logger.error(f"[OpenAIGenerator:{self.provider}] Generation failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc

        choice = response.choices[0]
        tokens = response.usage.total_tokens if response.usage else 0
        logger.info(f"[OpenAIGenerator:{self.provider}] Done | model={self.model} | tokens={tokens}")
        return GenerationResult(
            content=choice.message.content or "",
            tokens_used=tokens,
            finish_reason=choice.finish_reason or "stop",
            model=self.model,
            provider=self.provider,
        )


# ---------------------------------------------------------------------------
# Anthropic Generator
# ---------------------------------------------------------------------------

class AnthropicGenerator(TextGenerator):
    """
    Claude models through the Anthropic SDK.

    The system prompt goes in the separate `system` parameter, not inside
    the messages list.
    """

    provider = "anthropic"

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        from anthropic import Anthropic  # lazy import
        self.model = model
        self._client = Anthropic(api_key=api_key, timeout=timeout)

    @_retry
    def _complete(self, kwargs: dict):
        return self._client.messages.create(**kwargs)

    @traceable(name="generate_anthropic", run_type="llm")
    def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        try:
            response = self._complete(kwargs)
        except Exception as exc:
            logger.error(f"[AnthropicGenerator] Generation failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc

        answer = response.content[0].text if response.content else ""
        tokens = response.usage.input_tokens + response.usage.output_tokens
        logger.info(f"[AnthropicGenerator] Done | model={self.model} | tokens={tokens}")
        return GenerationResult(
            content=answer,
            tokens_used=tokens,
            finish_reason=response.stop_reason or "end_turn",
            model=self.model,
            provider=self.provider,
        )


# ---------------------------------------------------------------------------
# Gemini Generator
# ---------------------------------------------------------------------------

class GeminiGenerator(TextGenerator):
    """Gemini generateContent over REST; the system prompt is prepended."""

    provider = "gemini"
    base_url = PROVIDERS["gemini"]["base_url"]

    def __init__(
        self,
        model: str = "gemini-2.0-flash",
        api_key: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self._api_key = api_key or os.getenv("GEMINI_API_KEY", "")
        self._client = httpx.Client(timeout=timeout)

    @_retry
    def _post(self, body: dict) -> dict:
        response = self._client.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            params={"key": self._api_key},
            json=body,
        )
        response.raise_for_status()
        return response.json()

    @traceable(name="generate_gemini", run_type="llm")
    def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        text = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        body = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }

        try:
            data = self._post(body)
            candidate = data["candidates"][0]
            content = "".join(p.get("text", "") for p in candidate["content"]["parts"])
        except Exception as exc:
            logger.error(f"[GeminiGenerator] Generation failed: {exc}")
            raise UpstreamCapabilityError(self.provider, str(exc)) from exc

        tokens = data.get("usageMetadata", {}).get("totalTokenCount", 0)
        logger.info(f"[GeminiGenerator] Done | model={self.model} | tokens={tokens}")
        return GenerationResult(
            content=content,
            tokens_used=tokens,
            finish_reason=candidate.get("finishReason", "STOP"),
            model=self.model,
            provider=self.provider,
        )

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def configured_providers() -> list[str]:
    """Providers whose API key is present, in auto-selection order."""
    return [name for name in AUTO_ORDER if os.getenv(PROVIDERS[name]["env"])]


def create_generator(config) -> TextGenerator:
    """
    Build the generator named by config.provider.

    "auto" picks the first configured provider in AUTO_ORDER.
    """
    provider = config.provider
    if provider == "auto":
        available = configured_providers()
        if not available:
            raise BackendNotConfiguredError(
                "No generation provider configured: set one of "
                + ", ".join(PROVIDERS[p]["env"] for p in AUTO_ORDER)
            )
        provider = available[0]

    if provider not in PROVIDERS:
        raise BackendNotConfiguredError(f"Unknown generation provider: {provider}")

    info = PROVIDERS[provider]
    model = config.model or info["model"]
    api_key = os.getenv(info["env"])

    if provider == "anthropic":
        generator: TextGenerator = AnthropicGenerator(
            model=model, api_key=api_key, timeout=config.timeout_seconds
        )
    elif provider == "gemini":
        generator = GeminiGenerator(model=model, api_key=api_key, timeout=config.timeout_seconds)
    else:
        generator = OpenAIGenerator(
            model=model,
            provider=provider,
            api_key=api_key,
            base_url=info["base_url"],
            timeout=config.timeout_seconds,
        )

    logger.info(
        f"[Generator] {provider} | model={model} | free={'yes' if info['free'] else 'no'}"
    )
    return generator
