"""Retry schedule and transport error classification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

# Delay before the next attempt, indexed by the attempt that just failed (1-based)
DEFAULT_BACKOFF_MINUTES = [1, 5, 30, 120, 360]
DEFAULT_MAX_ATTEMPTS = 5
MAX_ERROR_LENGTH = 512

# Recipient can no longer be reached through the channel at all
_UNREACHABLE_PATTERNS = (
    "blocked by the user",
    "chat not found",
    "user is deactivated",
    "bot was kicked",
)
_PERMANENT_PATTERNS = _UNREACHABLE_PATTERNS + ("have no rights to send",)
_PERMANENT_CODES = (400, 403)


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of :func:`classify_transport_error`."""

    retryable: bool
    message: str
    deactivate_subscriber: bool = False


def truncate_error(text: str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Clamp a diagnostic message to the size stored on delivery rows."""
    return text[:limit]


def _error_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "error_code", None)
    if code is None and isinstance(exc, aiohttp.ClientResponseError):
        code = exc.status
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _error_text(exc: BaseException) -> str:
    description = getattr(exc, "description", None)
    if description:
        return str(description)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not str(exc):
        return "Transport request timed out"
    return str(exc) or exc.__class__.__name__


def classify_transport_error(exc: BaseException) -> ErrorClassification:
    """
    Classify a transport failure as retryable or permanent.

    Returns:
        ErrorClassification: ``retryable`` is False for rejections that will
        never succeed (HTTP-style 400/403 or a known unreachable-recipient
        description); ``deactivate_subscriber`` is True only when the
        recipient itself is gone (blocked the bot, chat deleted, ...).
        Network errors, timeouts, rate limits and anything unrecognised stay
        retryable.
    """
    code = _error_code(exc)
    text = _error_text(exc)
    normalized = text.lower()

    unreachable = any(pattern in normalized for pattern in _UNREACHABLE_PATTERNS)
    permanent = (
        code in _PERMANENT_CODES
        or any(pattern in normalized for pattern in _PERMANENT_PATTERNS)
    )
    return ErrorClassification(
        retryable=not permanent,
        message=truncate_error(text),
        deactivate_subscriber=permanent and unreachable,
    )


def next_attempt_delay(attempt_count: int, schedule: Optional[List[int]] = None) -> int:
    """
    Return the delay in seconds before retrying a delivery.

    Args:
        attempt_count: Number of attempts made so far (the failed one included).
        schedule: Optional list of delays in minutes; defaults to
            :data:`DEFAULT_BACKOFF_MINUTES`.

    Returns:
        Delay in seconds; attempts beyond the schedule reuse its last tier.
    """
    if not schedule:
        schedule = DEFAULT_BACKOFF_MINUTES
    idx = min(max(attempt_count - 1, 0), len(schedule) - 1)
    return schedule[idx] * 60
