"""Shared enums and value objects for runs, deliveries and recipients."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class RunStatus(str, Enum):
    """Lifecycle of a broadcast run."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    CANCELLED = "CANCELLED"


TERMINAL_RUN_STATUSES: Tuple[str, ...] = (
    RunStatus.COMPLETED.value,
    RunStatus.COMPLETED_WITH_ERRORS.value,
    RunStatus.CANCELLED.value,
)
ACTIVE_RUN_STATUSES: Tuple[str, ...] = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


class DeliveryStatus(str, Enum):
    """Per-recipient delivery state.

    SENT, FAILED_PERMANENT and UNKNOWN are terminal. UNKNOWN is only left
    through an explicit requeue.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    UNKNOWN = "UNKNOWN"


CLAIMABLE_DELIVERY_STATUSES: Tuple[str, ...] = (
    DeliveryStatus.PENDING.value,
    DeliveryStatus.FAILED_RETRYABLE.value,
)
OUTSTANDING_DELIVERY_STATUSES: Tuple[str, ...] = (
    DeliveryStatus.PENDING.value,
    DeliveryStatus.PROCESSING.value,
    DeliveryStatus.FAILED_RETRYABLE.value,
)


class RunKind(str, Enum):
    ANNOUNCEMENT = "announcement"
    NEWS = "news"
    PROMOTION = "promotion"


class AudienceTarget(str, Enum):
    """Audience selector stored on a run and resolved at enqueue time."""

    ALL = "all"
    USERS = "users"
    BOT_SUBSCRIBERS = "bot_subscribers"
    ACTIVE_BOT_SUBSCRIBERS = "active_bot_subscribers"


class DeliveryFilter(str, Enum):
    ALL = "ALL"
    SENT = "SENT"
    NOT_SENT = "NOT_SENT"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"


DELIVERY_FILTER_STATUSES: Dict[str, Optional[Tuple[str, ...]]] = {
    DeliveryFilter.ALL.value: None,
    DeliveryFilter.SENT.value: (DeliveryStatus.SENT.value,),
    DeliveryFilter.NOT_SENT.value: (
        DeliveryStatus.PENDING.value,
        DeliveryStatus.PROCESSING.value,
        DeliveryStatus.FAILED_RETRYABLE.value,
        DeliveryStatus.FAILED_PERMANENT.value,
        DeliveryStatus.UNKNOWN.value,
    ),
    DeliveryFilter.FAILED.value: (
        DeliveryStatus.FAILED_RETRYABLE.value,
        DeliveryStatus.FAILED_PERMANENT.value,
    ),
    DeliveryFilter.UNKNOWN.value: (DeliveryStatus.UNKNOWN.value,),
    DeliveryFilter.PENDING.value: OUTSTANDING_DELIVERY_STATUSES,
}


@dataclass(frozen=True)
class Recipient:
    """A resolved audience member: optional internal user id plus transport address."""

    address: str
    user_id: Optional[int] = None
