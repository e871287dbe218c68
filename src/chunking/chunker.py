"""
Paragraph Chunker
------------------
Splits a resource's text into bounded, overlapping chunks for embedding.

Splitting falls back through three levels so every chunk stays bounded no
matter how the input is shaped:

  1. PARAGRAPHS  -- greedily packed up to chunk_size; when a paragraph does
     not fit, the buffer is flushed and the next one is seeded with the
     trailing words of the flushed chunk (the overlap tail).
  2. SENTENCES   -- a paragraph longer than chunk_size is re-packed sentence
     by sentence.
  3. WORDS       -- a sentence longer than chunk_size is packed word by word
     with the same overlap ratio; a single "word" longer than chunk_size
     (e.g. a URL or an unbroken line) is hard-split.

Text that already fits in one chunk is never split.
"""
from __future__ import annotations

import math
import re
from typing import Any, Mapping

from loguru import logger

from src.chunking.schemas import Chunk, ChunkMetadata


# ── Constants ─────────────────────────────────────────────────────────────────

CHUNK_SIZE = 1000          # Target characters per chunk
CHUNK_OVERLAP = 200        # Overlap budget carried into the next chunk
SEPARATOR = "\n\n"         # Paragraph separator

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")


def estimate_tokens(text: str) -> int:
    """Cheap token proxy (~4 characters per token) for usage reporting."""
    return math.ceil(len(text) / 4)


def clean_text(text: str) -> str:
    """Normalise line endings and whitespace before splitting."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ── Main Chunker ──────────────────────────────────────────────────────────────

class TextChunker:
    """
    Paragraph -> sentence -> word chunker with overlap.

    Usage:
        chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
        chunks = chunker.chunk_text(text, {"resource_id": "r1", "resource_title": "Notes"})
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        separator: str = SEPARATOR,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separator = separator

    @property
    def overlap_ratio(self) -> float:
        return self.chunk_overlap / self.chunk_size

    def chunk_text(self, text: str, metadata: Mapping[str, Any]) -> list[Chunk]:
        """
        Split text into Chunks carrying a copy of metadata.

        Args:
            text: Raw resource text.
            metadata: Provenance fields (resource_id, resource_title, page,
                section, timestamp, subject_id).  chunk_index is assigned here.

        Returns:
            Chunks with contiguous chunk_index values starting at 0.
        """
        cleaned = clean_text(text)
        if not cleaned:
            return []

        if len(cleaned) <= self.chunk_size:
            pieces = [cleaned]
        else:
            pieces = self._split_paragraphs(cleaned)

        base = {k: v for k, v in dict(metadata).items() if k != "chunk_index"}
        chunks = [
            Chunk(content=piece, metadata=ChunkMetadata(**base, chunk_index=i))
            for i, piece in enumerate(pieces)
        ]

        logger.debug(
            f"[Chunker] {base.get('resource_id', '?')} | "
            f"{len(cleaned)} chars | -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Level 1: paragraphs -------------------------------------------------

    def _split_paragraphs(self, text: str) -> list[str]:
        pieces: list[str] = []
        buffer = ""

        for paragraph in text.split(self.separator):
            paragraph = paragraph.strip()
            if not paragraph:
                continue

            if len(buffer) + len(paragraph) + 1 <= self.chunk_size:
                buffer = f"{buffer}{self.separator}{paragraph}" if buffer else paragraph
                continue

            if buffer:
                pieces.append(buffer)
                buffer = self._overlap_tail(buffer)

            if len(paragraph) > self.chunk_size:
                pieces.extend(self._split_sentences(paragraph))
                buffer = ""
            else:
                buffer = f"{buffer}{self.separator}{paragraph}" if buffer else paragraph

        if buffer.strip():
            pieces.append(buffer)
        return pieces

    def _overlap_tail(self, flushed: str) -> str:
        """Trailing words of a flushed chunk, capped at chunk_overlap characters."""
        if self.chunk_overlap == 0:
            return ""
        words = flushed.split()
        count = math.ceil(self.overlap_ratio * len(words))
        tail = words[-count:] if count else []
        while tail and len(" ".join(tail)) > self.chunk_overlap:
            tail = tail[1:]
        return " ".join(tail)

    # --- Level 2: sentences --------------------------------------------------

    def _split_sentences(self, paragraph: str) -> list[str]:
        sentences = [s.strip() for s in _SENTENCE_RE.findall(paragraph)]
        sentences = [s for s in sentences if s] or [paragraph]

        pieces: list[str] = []
        buffer = ""
        for sentence in sentences:
            if len(buffer) + len(sentence) + 1 <= self.chunk_size:
                buffer = f"{buffer} {sentence}" if buffer else sentence
                continue

            if buffer:
                pieces.append(buffer)

            if len(sentence) > self.chunk_size:
                pieces.extend(self._split_words(sentence))
                buffer = ""
            else:
                buffer = sentence

        if buffer:
            pieces.append(buffer)
        return pieces

    # --- Level 3: words ------------------------------------------------------

    def _split_words(self, sentence: str) -> list[str]:
        words: list[str] = []
        for word in sentence.split():
            if len(word) > self.chunk_size:
                words.extend(
                    word[i: i + self.chunk_size]
                    for i in range(0, len(word), self.chunk_size)
                )
            else:
                words.append(word)

        pieces: list[str] = []
        i = 0
        while i < len(words):
            start = i
            piece = words[i]
            i += 1
            while i < len(words) and len(piece) + len(words[i]) + 1 <= self.chunk_size:
                piece = f"{piece} {words[i]}"
                i += 1
            pieces.append(piece)

            if i < len(words):
                overlap_words = math.floor(self.overlap_ratio * (i - start))
                i = max(start + 1, i - overlap_words)
        return pieces
