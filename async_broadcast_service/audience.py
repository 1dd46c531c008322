"""Audience resolution and subscriber bookkeeping built on top of :class:`Persistence`."""

import time
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import AudienceTarget, Recipient
from .persistence import Persistence

MAX_AUDIENCE_LIMIT = 50000
DEFAULT_ACTIVE_SUBSCRIBER_DAYS = 30


def deduplicate_recipients(rows: Iterable[Tuple[Optional[int], Optional[str]]]) -> List[Recipient]:
    """Collapse ``(user_id, address)`` rows into one recipient per address.

    Addresses are trimmed, blank ones dropped, and the first occurrence of an
    address keeps its user id.
    """
    seen = set()
    recipients: List[Recipient] = []
    for user_id, address in rows:
        if address is None:
            continue
        key = str(address).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        recipients.append(Recipient(address=key, user_id=user_id))
    return recipients


class AudienceResolver:
    """Turn a run target into the list of recipients to deliver to."""

    def __init__(self, persistence: Persistence, *, active_subscriber_days: int = DEFAULT_ACTIVE_SUBSCRIBER_DAYS):
        self.persistence = persistence
        self.active_subscriber_days = max(1, min(int(active_subscriber_days), 365))

    async def resolve(
        self,
        target: str,
        user_ids: Optional[Sequence[int]] = None,
        limit: Optional[int] = None,
    ) -> List[Recipient]:
        """Return deduplicated recipients for ``target``."""
        if limit is not None:
            limit = max(1, min(int(limit), MAX_AUDIENCE_LIMIT))
        target = AudienceTarget(target)
        if target is AudienceTarget.ALL:
            rows = await self.persistence.fetch_user_recipients(limit=limit)
        elif target is AudienceTarget.USERS:
            if not user_ids:
                return []
            rows = await self.persistence.fetch_user_recipients(user_ids=list(user_ids), limit=limit)
        elif target is AudienceTarget.BOT_SUBSCRIBERS:
            rows = await self.persistence.fetch_subscriber_recipients(limit=limit)
        else:
            seen_since = int(time.time()) - self.active_subscriber_days * 86400
            rows = await self.persistence.fetch_subscriber_recipients(seen_since=seen_since, limit=limit)
        return deduplicate_recipients(rows)


class SubscriberDirectory:
    """Channel subscriber registry; unreachable recipients get switched off here."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def register(
        self,
        address: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> None:
        """Record (or refresh) a subscriber and mark it active again."""
        await self.persistence.upsert_subscriber(
            {
                "address": address.strip(),
                "username": username,
                "first_name": first_name,
                "last_name": last_name,
            },
            seen_ts=int(time.time()),
        )

    async def mark_inactive(self, address: str) -> None:
        await self.persistence.set_subscriber_inactive(address)
