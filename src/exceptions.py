"""
Error taxonomy for the RAG engine.

The serving layer (CLI / HTTP) maps these to user-facing outcomes:
  - ResourceNotFoundError     -> 404, never retried
  - InsufficientContentError  -> 422, nothing to work with
  - UpstreamCapabilityError   -> raised by provider clients after their retries
  - AnswerGenerationError     -> generic "could not generate an answer" (502)
  - BackendNotConfiguredError -> fatal at startup
"""
from __future__ import annotations


class RAGError(Exception):
    """Base class for every error raised by the engine."""


class ResourceNotFoundError(RAGError, LookupError):
    """A referenced resource does not exist in the catalog."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource not found: {resource_id}")


class InsufficientContentError(RAGError):
    """The resource has no content to summarise."""


class UpstreamCapabilityError(RAGError):
    """An embedding or text-generation provider call failed."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider} request failed: {message}")


class AnswerGenerationError(RAGError):
    """Query-time failure surfaced to users without provider details."""

    def __init__(self, message: str = "Could not generate an answer. Please try again later.") -> None:
        super().__init__(message)


class BackendNotConfiguredError(RAGError):
    """A selected backend or provider lacks its configuration."""
