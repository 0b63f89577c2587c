"""
Structured Logging & Observability
Human-readable in development, JSON lines in production.
"""
import sys
from loguru import logger
from typing import Any
from src.config import get_settings


def configure_logging():
    """
    Configure loguru handlers.

    In development: colorized console output
    In production: one JSON document per record (serialize=True)
    """
    settings = get_settings()

    logger.remove()

    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_pipeline_step(
    component: str,
    session_id: str,
    step: str,
    duration_ms: float | None = None,
    **context
):
    """
    Structured log line for one pipeline stage.

    Args:
        component: Which component ran (e.g., "ContextRetriever")
        session_id: Session or conversation being processed
        step: Stage name (e.g., "search", "score", "synthesize")
        duration_ms: Stage latency in milliseconds
        **context: Stage-specific fields (method, confidence, result counts...)

    Example:
        >>> log_pipeline_step(
        ...     component="ConfidenceScorer",
        ...     session_id="sess-42",
        ...     step="score",
        ...     duration_ms=1.7,
        ...     confidence=0.82,
        ... )
    """
    log_data = {
        "component": component,
        "session_id": session_id,
        "step": step,
    }

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    log_data.update(context)

    logger.bind(**log_data).info(f"{component} | {step}")


def log_llm_call(
    operation: str,
    model: str,
    duration_ms: float,
    attempts: int = 1,
    success: bool = True,
    error: str | None = None
):
    """
    Structured log line for a generative backend call.

    Args:
        operation: Caller role ("respond", "analyze", "transition")
        model: Model identifier
        duration_ms: Total latency including retries
        attempts: Attempts consumed
        success: Whether a completion was returned
        error: Error message if failed
    """
    log_data = {
        "event_type": "llm_call",
        "operation": operation,
        "model": model,
        "duration_ms": round(duration_ms, 2),
        "attempts": attempts,
        "success": success,
    }

    if error:
        log_data["error"] = error

    level = "info" if success else "error"
    logger.bind(**log_data).log(
        level.upper(),
        f"LLM Call: {operation} via {model} | {duration_ms:.0f}ms | attempts={attempts}"
    )


def log_business_event(
    event_type: str,
    subject_id: str,
    **details: Any
):
    """
    Log funnel and knowledge-gap events for analytics.

    Examples:
        - Lead state transitions
        - Unanswered question recorded
        - Human escalation requested
    """
    log_data = {
        "event_type": event_type,
        "subject_id": subject_id,
        **details
    }

    logger.bind(**log_data).success(f"Business Event: {event_type}")


def log_security_event(
    event: str,
    severity: str,
    direction: str,
    flags: list[str],
    **details: Any
):
    """Advisory record of a guardrail hit. Never changes control flow."""
    log_data = {
        "event_type": "security",
        "event": event,
        "severity": severity,
        "direction": direction,
        "flags": flags,
        **details
    }

    bound = logger.bind(**log_data)
    if severity == "high":
        bound.error(f"🚨 Security event: {event} ({direction}) flags={flags}")
    else:
        bound.warning(f"⚠️ Security event: {event} ({direction}) flags={flags}")
