from __future__ import annotations

from typing import Any


class ContentEngineError(Exception):
    """Base error for the content engine."""


class ValidationError(ContentEngineError):
    """Caller input is missing or malformed; never retried automatically."""


class ConflictError(ContentEngineError):
    """Idempotency key or claim race lost; the caller may retry."""


class NotFoundError(ContentEngineError):
    """Referenced entity does not exist."""


class InfraError(ContentEngineError):
    """Queue or database unreachable; safe to retry on the next cycle."""


class JobTimeoutError(ContentEngineError):
    """A job exceeded its wall-clock budget."""


class ProviderConfigError(ContentEngineError):
    """Missing or invalid LLM provider configuration."""


class VertexAuthError(ContentEngineError):
    """Vertex authentication/authorization failure."""


class VertexTimeoutError(ContentEngineError):
    """Vertex streaming request timed out."""


class AIOutputError(ContentEngineError):
    """Generated output was rejected before persistence.

    Subclasses carry a stable ``code`` so operators can tell malformed output
    apart from output that ignored the request context.
    """

    code = "AI_OUTPUT_INVALID"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class SchemaInvalidError(AIOutputError):
    """Output does not match the expected shape for its job kind."""

    code = "SCHEMA_INVALID"


class PlaceholderContentError(AIOutputError):
    """Output contains stub phrases instead of real content."""

    code = "PLACEHOLDER_CONTENT"


class SemanticWeaknessError(AIOutputError):
    """Output is structurally valid but too thin to be useful."""

    code = "SEMANTIC_WEAKNESS"


class ContextMismatchError(AIOutputError):
    """Output declares a language or difficulty other than the one requested."""

    code = "CONTEXT_MISMATCH"


class UnsupportedTargetError(ContentEngineError):
    """Regeneration target type has no generator."""


class RegenerationJobNotFoundError(NotFoundError):
    """Regeneration job does not exist."""


class CandidateNotFoundError(NotFoundError):
    """Promotion candidate does not exist."""


class CandidateAlreadyApprovedError(ConflictError):
    """Promotion candidate was already approved."""


class CandidateAlreadyRejectedError(ConflictError):
    """Promotion candidate was already rejected."""


class RetryIntentNotFoundError(NotFoundError):
    """Retry intent does not exist."""


class AlreadyExecutedError(ConflictError):
    """Retry intent was already consumed by another caller."""


class RetryNotAllowedError(ConflictError):
    """Source job is not in a state that permits a retry."""


class HydrationDisabledError(ContentEngineError):
    """An operator switch has paused new hydration submissions."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Hydration is disabled by the {code} setting")
        self.code = code
