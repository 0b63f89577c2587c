"""
Engine Exceptions
Error taxonomy shared by the guardrails, retrieval, generation and persistence layers.
"""
from typing import Any, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class UnsafeInputError(EngineError):
    """Inbound text tripped a high-severity guardrail rule."""

    def __init__(self, message: str, flags: Optional[list] = None):
        self.flags = flags or []
        super().__init__(message, {"flags": [str(flag) for flag in self.flags]})


class GenerationError(EngineError):
    """Generative backend failed, timed out, or is not configured."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None
    ):
        self.retryable = retryable
        super().__init__(message, details)


class CircuitOpenError(GenerationError):
    """Raised when the generator circuit is open and calls are rejected."""

    def __init__(self, circuit_name: str, retry_after: float):
        self.circuit_name = circuit_name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after:.1f}s",
            retryable=False,
            details={"circuit": circuit_name, "retry_after": retry_after},
        )


class RetrievalError(EngineError):
    """Content store failure while searching for context."""


class PersistenceError(EngineError):
    """Store write failed; callers log it and keep going."""


class SessionNotFoundError(EngineError, LookupError):
    """No statistics recorded for the requested session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found", {"session_id": session_id})
