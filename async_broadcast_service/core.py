"""Core orchestration logic for the asynchronous broadcast dispatcher."""

from __future__ import annotations

import asyncio
import math
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .audience import MAX_AUDIENCE_LIMIT, AudienceResolver, SubscriberDirectory
from .backoff import DEFAULT_MAX_ATTEMPTS, classify_transport_error, next_attempt_delay
from .logger import get_logger
from .models import (
    DELIVERY_FILTER_STATUSES,
    OUTSTANDING_DELIVERY_STATUSES,
    TERMINAL_RUN_STATUSES,
    AudienceTarget,
    DeliveryStatus,
    RunKind,
    RunStatus,
)
from .persistence import Persistence
from .prometheus import BroadcastMetrics
from .transport import DEFAULT_API_BASE, MediaPathError, TelegramTransport, is_remote, resolve_media_path

RUN_LEASE_SECONDS = 60
DELIVERY_LOCK_SECONDS = 60
STALE_GRACE_SECONDS = 5 * 60
MAX_BATCHES_PER_TICK = 5
INSERT_CHUNK_SIZE = 500
FIRST_TICK_DELAY = 1.5
PURGE_INTERVAL_SECONDS = 24 * 3600

MAX_MESSAGE_LENGTH = 4000
MAX_TARGET_USER_IDS = 5000
MAX_IMAGES = 3
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100


class BroadcastServiceError(RuntimeError):
    """Base class for errors reported back to command callers."""

    code = "broadcast_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class RunNotFoundError(BroadcastServiceError):
    code = "run_not_found"

    def __init__(self, run_id: Any):
        super().__init__(f"Broadcast run {run_id} not found")
        self.run_id = run_id


class RunStateError(BroadcastServiceError):
    """Raised when an operation is not allowed in the run's current status."""

    code = "invalid_run_state"


class ValidationError(BroadcastServiceError):
    code = "invalid_payload"


def _clamp(value: Any, default: int, low: int, high: int | None = None) -> int:
    """Coerce ``value`` to int within ``[low, high]``, using ``default`` when unparsable."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


class BroadcastCore:
    """Coordinate run leasing, delivery claiming, dispatch and finalisation."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/broadcast_service.db",
        logger=None,
        metrics: BroadcastMetrics | None = None,
        transport=None,
        audience=None,
        subscribers=None,
        batch_size: int = 50,
        concurrency: int = 4,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_minutes: Optional[List[int]] = None,
        tick_interval: float = 20.0,
        retention_days: int = 30,
        active_subscriber_days: int = 30,
        telegram_bot_token: str | None = None,
        telegram_api_base: str | None = DEFAULT_API_BASE,
        media_root: str | None = ".",
        send_timeout: float | None = 15.0,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        run_lease_seconds: int = RUN_LEASE_SECONDS,
        delivery_lock_seconds: int = DELIVERY_LOCK_SECONDS,
        stale_grace_seconds: int = STALE_GRACE_SECONDS,
        max_batches_per_tick: int = MAX_BATCHES_PER_TICK,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.metrics = metrics or BroadcastMetrics()
        self.transport = transport or TelegramTransport(
            telegram_bot_token,
            api_base=telegram_api_base or DEFAULT_API_BASE,
            media_root=media_root or ".",
            timeout=float(send_timeout or 15.0),
            logger=self.logger,
        )
        self.audience = audience or AudienceResolver(
            self.persistence,
            active_subscriber_days=_clamp(active_subscriber_days, 30, 1, 365),
        )
        self.subscribers = subscribers or SubscriberDirectory(self.persistence)
        self._media_root = media_root or "."

        self._batch_size = _clamp(batch_size, 50, 10, 200)
        self._concurrency = _clamp(concurrency, 4, 1, 10)
        self._max_attempts = _clamp(max_attempts, DEFAULT_MAX_ATTEMPTS, 1, 10)
        self._backoff_minutes = backoff_minutes
        self._retention_days = _clamp(retention_days, 30, 1, 365)
        self._run_lease_seconds = max(1, int(run_lease_seconds))
        self._delivery_lock_seconds = max(1, int(delivery_lock_seconds))
        self._stale_grace_seconds = max(0, int(stale_grace_seconds))
        self._max_batches_per_tick = max(1, int(max_batches_per_tick))
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)
        self._tick_interval = math.inf if self._test_mode else max(0.05, float(tick_interval or 20.0))

        self.node_token = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_queue: Optional[asyncio.Task] = None
        self._task_purge: Optional[asyncio.Task] = None

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    def _new_lock_token(self) -> str:
        return f"{self.node_token}-{uuid.uuid4().hex[:8]}"

    async def init(self) -> None:
        """Initialise persistence and the gauges."""
        await self.persistence.init_db()
        await self._refresh_gauges()

    @staticmethod
    def _normalise_page(page: Any, limit: Any) -> Tuple[int, int]:
        return _clamp(page, 1, 1), _clamp(limit, DEFAULT_PAGE_LIMIT, 1, MAX_PAGE_LIMIT)

    @staticmethod
    def _page_meta(page: int, limit: int, total: int) -> Dict[str, Any]:
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        try:
            return await self._execute_command(cmd, payload)
        except BroadcastServiceError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _execute_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self.run_now()
            return {"ok": True}
        if cmd == "enqueueRun":
            run = await self.enqueue_run(
                payload.get("message"),
                kind=payload.get("kind") or RunKind.ANNOUNCEMENT.value,
                target=payload.get("target") or AudienceTarget.ALL.value,
                user_ids=payload.get("user_ids"),
                image_paths=payload.get("image_paths"),
                requested_by=payload.get("requested_by"),
                limit=payload.get("limit"),
            )
            return {"ok": True, "run": run}
        if cmd == "listRuns":
            result = await self.list_runs(page=payload.get("page"), limit=payload.get("limit"))
            return {"ok": True, **result}
        if cmd == "getRun":
            return {"ok": True, "run": await self.get_run(self._run_id(payload))}
        if cmd == "listDeliveries":
            result = await self.list_deliveries(
                self._run_id(payload),
                status=payload.get("status"),
                page=payload.get("page"),
                limit=payload.get("limit"),
            )
            return {"ok": True, **result}
        if cmd == "cancelRun":
            return {"ok": True, "run": await self.cancel_run(self._run_id(payload))}
        if cmd == "requeueUnknown":
            run_id = self._run_id(payload)
            requeued = await self.requeue_unknown(run_id)
            return {"ok": True, "run_id": run_id, "requeued": requeued}
        if cmd == "repostRun":
            run = await self.repost_run(self._run_id(payload), requested_by=payload.get("requested_by"))
            return {"ok": True, "run": run}
        if cmd == "deleteRun":
            run_id = self._run_id(payload)
            await self.delete_run(run_id)
            return {"ok": True, "run_id": run_id, "deleted": True}
        if cmd == "purgeRuns":
            return {"ok": True, "removed": await self.purge_expired_runs()}
        if cmd == "listUsers":
            result = await self.list_users(
                search=payload.get("search"),
                page=payload.get("page"),
                limit=payload.get("limit"),
            )
            return {"ok": True, **result}
        if cmd == "addUser":
            user = await self.add_user(
                payload.get("address"),
                first_name=payload.get("first_name"),
                username=payload.get("username"),
            )
            return {"ok": True, "user": user}
        if cmd == "registerSubscriber":
            address = str(payload.get("address") or "").strip()
            if not address:
                raise ValidationError("missing 'address'")
            await self.subscribers.register(
                address,
                username=payload.get("username"),
                first_name=payload.get("first_name"),
                last_name=payload.get("last_name"),
            )
            return {"ok": True}
        return {"ok": False, "error": "unknown command"}

    @staticmethod
    def _run_id(payload: Dict[str, Any]) -> int:
        try:
            return int(payload["id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("missing or invalid 'id'") from None

    def run_now(self) -> None:
        """Wake the queue loop so the next tick happens immediately."""
        self._wake_event.set()

    # ---------------------------------------------------------------- operations
    def _validate_message(self, message: Any) -> str:
        text = str(message or "").strip()
        if not text:
            raise ValidationError("Broadcast message is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Broadcast message exceeds {MAX_MESSAGE_LENGTH} characters")
        return text

    @staticmethod
    def _normalise_user_ids(user_ids: Any) -> List[int]:
        """Keep unique positive integer ids in input order, at most ``MAX_TARGET_USER_IDS``."""
        if not isinstance(user_ids, (list, tuple)):
            return []
        unique: List[int] = []
        for value in user_ids:
            try:
                parsed = int(value)
            except (TypeError, ValueError):
                continue
            if parsed < 1 or parsed in unique:
                continue
            unique.append(parsed)
            if len(unique) >= MAX_TARGET_USER_IDS:
                break
        return unique

    def _normalise_image_paths(self, image_paths: Any) -> List[str]:
        """Unique, trimmed image paths; local ones must be existing files under the media root."""
        if not image_paths:
            return []
        if not isinstance(image_paths, (list, tuple)):
            raise ValidationError("image_paths must be a list")
        unique: List[str] = []
        for value in image_paths:
            path = str(value or "").strip()
            if path and path not in unique:
                unique.append(path)
        if len(unique) > MAX_IMAGES:
            raise ValidationError(f"You can attach at most {MAX_IMAGES} images")
        for path in unique:
            if is_remote(path):
                continue
            try:
                resolved = resolve_media_path(self._media_root, path)
            except MediaPathError as exc:
                raise ValidationError(str(exc)) from None
            if not resolved.is_file():
                raise ValidationError(f"Image file not found: {path}")
        return unique

    async def enqueue_run(
        self,
        message: Any,
        *,
        kind: str = RunKind.ANNOUNCEMENT.value,
        target: str = AudienceTarget.ALL.value,
        user_ids: Optional[Sequence[int]] = None,
        image_paths: Optional[Sequence[str]] = None,
        requested_by: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Validate, resolve the audience and persist a new run with its deliveries."""
        text = self._validate_message(message)
        try:
            kind = RunKind(kind).value
        except ValueError:
            raise ValidationError(f"Unsupported broadcast kind: {kind}") from None
        try:
            target = AudienceTarget(target).value
        except ValueError:
            raise ValidationError(f"Unsupported broadcast target: {target}") from None
        target_user_ids = self._normalise_user_ids(user_ids)
        if target == AudienceTarget.USERS.value and not target_user_ids:
            raise ValidationError("At least one user is required for user-targeted broadcasts")
        images = self._normalise_image_paths(image_paths)
        safe_limit = None
        if isinstance(limit, (int, float)) and not isinstance(limit, bool) and limit > 0:
            safe_limit = min(int(limit), MAX_AUDIENCE_LIMIT)

        recipients = await self.audience.resolve(
            target,
            target_user_ids if target == AudienceTarget.USERS.value else None,
            safe_limit,
        )
        run_id = await self.persistence.create_run(
            {
                "kind": kind,
                "target": target,
                "target_user_ids": target_user_ids or None,
                "message": text,
                "image_paths": images or None,
                "requested_by": requested_by,
            },
            recipients,
            now_ts=self._utc_now_epoch(),
            chunk_size=INSERT_CHUNK_SIZE,
        )
        self.logger.info(
            "Queued broadcast run %s (kind=%s, target=%s, recipients=%d)",
            run_id,
            kind,
            target,
            len(recipients),
        )
        await self._refresh_gauges()
        if recipients:
            self.run_now()
        return await self.get_run(run_id)

    async def get_run(self, run_id: int) -> Dict[str, Any]:
        """Return a run together with its per-status delivery summary."""
        run = await self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        run["delivery_summary"] = await self.persistence.delivery_status_summary(run_id)
        return run

    async def list_runs(self, *, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        page, limit = self._normalise_page(page, limit)
        runs, total = await self.persistence.list_runs(offset=(page - 1) * limit, limit=limit)
        return {"runs": runs, "meta": self._page_meta(page, limit, total)}

    async def list_deliveries(
        self,
        run_id: int,
        *,
        status: Any = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        """Page through a run's deliveries, newest first, optionally filtered."""
        if await self.persistence.get_run(run_id) is None:
            raise RunNotFoundError(run_id)
        filter_key = str(status or "ALL").upper()
        if filter_key not in DELIVERY_FILTER_STATUSES:
            raise ValidationError(f"Unsupported delivery filter: {status}")
        page, limit = self._normalise_page(page, limit)
        deliveries, total = await self.persistence.list_deliveries(
            run_id,
            statuses=DELIVERY_FILTER_STATUSES[filter_key],
            offset=(page - 1) * limit,
            limit=limit,
        )
        return {"deliveries": deliveries, "meta": self._page_meta(page, limit, total)}

    async def list_users(self, *, search: Any = None, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        """Page through users that have an address, newest first."""
        page, limit = self._normalise_page(page, limit)
        term = str(search or "").strip().lower() or None
        users, total = await self.persistence.list_users(search=term, offset=(page - 1) * limit, limit=limit)
        return {"users": users, "meta": self._page_meta(page, limit, total)}

    async def add_user(
        self, address: Any, *, first_name: Optional[str] = None, username: Optional[str] = None
    ) -> Dict[str, Any]:
        """Register a user that broadcasts with target ``users`` can reach."""
        address = str(address or "").strip()
        if not address:
            raise ValidationError("missing 'address'")
        user_id = await self.persistence.add_user(address, first_name=first_name, username=username)
        self.logger.info("Added broadcast user %s", user_id)
        return await self.persistence.get_user(user_id)

    async def cancel_run(self, run_id: int) -> Dict[str, Any]:
        """Cancel an active run; terminal runs are returned unchanged."""
        run = await self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run["status"] in TERMINAL_RUN_STATUSES:
            return await self.get_run(run_id)
        if await self.persistence.cancel_run(run_id, now_ts=self._utc_now_epoch()):
            await self._refresh_run_counters(run_id)
            await self._refresh_gauges()
            self.logger.info("Cancelled broadcast run %s", run_id)
        return await self.get_run(run_id)

    async def requeue_unknown(self, run_id: int) -> int:
        """Put UNKNOWN deliveries back to PENDING so they are attempted again."""
        run = await self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run["status"] == RunStatus.RUNNING.value:
            raise RunStateError("Cannot requeue unknown deliveries while run is active")
        requeued = await self.persistence.requeue_unknown_deliveries(run_id)
        if requeued:
            await self._refresh_run_counters(run_id)
            await self._refresh_gauges()
            self.logger.info("Requeued %d unknown deliveries of run %s", requeued, run_id)
            self.run_now()
        return requeued

    async def repost_run(self, run_id: int, *, requested_by: Optional[int] = None) -> Dict[str, Any]:
        """Enqueue a fresh run with the content and audience of an existing one.

        ``requested_by`` records who reposted, not the author of the source run.
        """
        run = await self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return await self.enqueue_run(
            run["message"],
            kind=run["kind"],
            target=run["target"],
            user_ids=run.get("target_user_ids"),
            image_paths=run.get("image_paths"),
            requested_by=requested_by,
        )

    async def delete_run(self, run_id: int) -> None:
        run = await self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run["status"] not in TERMINAL_RUN_STATUSES:
            raise RunStateError("Cannot delete an active broadcast. Cancel it first.")
        await self.persistence.delete_run(run_id)
        await self._refresh_gauges()

    async def purge_expired_runs(self) -> int:
        """Delete finished runs older than the retention window."""
        threshold = self._utc_now_epoch() - self._retention_days * 86400
        removed = await self.persistence.purge_runs_finished_before(threshold)
        if removed:
            self.logger.info("Purged %d broadcast runs finished before %s", removed, threshold)
        return removed

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background tick and maintenance tasks."""
        await self.init()
        self._stop.clear()
        self._task_queue = asyncio.create_task(self._queue_loop(), name="broadcast-queue-loop")
        if not self._test_mode:
            self._task_purge = asyncio.create_task(self._purge_loop(), name="broadcast-purge-loop")

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        self._wake_event.set()
        if self._task_purge:
            self._task_purge.cancel()
        await asyncio.gather(
            *(task for task in [self._task_queue, self._task_purge] if task),
            return_exceptions=True,
        )

    async def _queue_loop(self) -> None:
        """Tick on a fixed cadence; ``run now`` wakes the loop early."""
        await self._wait_for_wakeup(math.inf if self._test_mode else FIRST_TICK_DELAY)
        while not self._stop.is_set():
            await self.tick()
            await self._wait_for_wakeup(self._tick_interval)

    async def _purge_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.purge_expired_runs()
            except Exception as exc:
                self.logger.exception("Failed to purge broadcast runs: %s", exc)
            await asyncio.sleep(PURGE_INTERVAL_SECONDS)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ---------------------------------------------------------------- tick logic
    async def tick(self) -> bool:
        """Run one scheduling pass; return True when a run was claimed.

        Overlapping calls return False immediately instead of waiting.
        """
        if self._tick_lock.locked():
            self.metrics.inc_tick_skipped()
            self.logger.debug("Tick already in progress, skipping")
            return False
        async with self._tick_lock:
            try:
                return await self._process_tick()
            except Exception as exc:
                self.logger.exception("Unhandled error in broadcast tick: %s", exc)
                return False
            finally:
                await self._refresh_gauges()

    async def _process_tick(self) -> bool:
        await self._reclaim_stale_deliveries()
        run = await self._claim_next_run()
        if run is None:
            return False
        await self._process_run(run)
        return True

    async def _reclaim_stale_deliveries(self, run_id: Optional[int] = None) -> int:
        now_ts = self._utc_now_epoch()
        reclaimed = await self.persistence.mark_stale_processing_unknown(
            stale_before=now_ts - self._stale_grace_seconds,
            run_id=run_id,
        )
        if reclaimed:
            self.metrics.inc_unknown(reclaimed)
            self.logger.warning(
                "Marked %d interrupted deliveries as UNKNOWN%s",
                reclaimed,
                f" for run {run_id}" if run_id is not None else "",
            )
        return reclaimed

    async def _claim_next_run(self) -> Optional[Dict[str, Any]]:
        token = self._new_lock_token()
        run = await self.persistence.claim_next_run(
            token,
            now_ts=self._utc_now_epoch(),
            lease_seconds=self._run_lease_seconds,
        )
        if run is not None:
            self.logger.debug("Claimed broadcast run %s with lease %s", run["id"], token)
        return run

    async def _process_run(self, run: Dict[str, Any]) -> None:
        """Work a claimed run for a bounded number of batch rounds."""
        run_id = run["id"]
        token = run["lock_token"]
        for _ in range(self._max_batches_per_tick):
            renewed = await self.persistence.renew_run_lease(
                run_id,
                token,
                now_ts=self._utc_now_epoch(),
                lease_seconds=self._run_lease_seconds,
            )
            if not renewed:
                self.logger.info("Lease on broadcast run %s lost, stopping", run_id)
                return
            deliveries = await self._claim_deliveries(run_id, token, self._batch_size)
            if not deliveries:
                break
            await self._dispatch_batch(run, deliveries, token, self._concurrency)
            if await self._finalize_run_if_complete(run_id, token):
                return
        await self._reclaim_stale_deliveries(run_id)
        await self._finalize_run_if_complete(run_id, token)

    async def _claim_deliveries(self, run_id: int, token: str, batch_size: int) -> List[Dict[str, Any]]:
        """Lock up to ``batch_size`` due deliveries of a run, in insertion order."""
        now_ts = self._utc_now_epoch()
        candidates = await self.persistence.fetch_claim_candidates(run_id, now_ts=now_ts, limit=batch_size * 2)
        claimed: List[int] = []
        for candidate in candidates:
            if len(claimed) >= batch_size:
                break
            won = await self.persistence.claim_delivery(
                candidate["id"],
                token,
                now_ts=now_ts,
                lock_seconds=self._delivery_lock_seconds,
            )
            if won:
                claimed.append(candidate["id"])
        return await self.persistence.fetch_deliveries(claimed)

    async def _dispatch_batch(
        self,
        run: Dict[str, Any],
        deliveries: List[Dict[str, Any]],
        token: str,
        concurrency: int,
    ) -> None:
        """Send a batch with ``concurrency`` workers striding over the list."""
        if not deliveries:
            return
        workers = max(1, min(concurrency, len(deliveries)))

        async def worker(offset: int) -> None:
            for idx in range(offset, len(deliveries), workers):
                await self._send_delivery(run, deliveries[idx], token)

        results = await asyncio.gather(*(worker(i) for i in range(workers)), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.logger.error("Broadcast worker for run %s crashed: %s", run["id"], result, exc_info=result)

    async def _send_delivery(self, run: Dict[str, Any], delivery: Dict[str, Any], token: str) -> None:
        address = delivery["address"]
        # Cancelled or reclaimed while queued in this batch
        if not await self.persistence.delivery_lock_held(delivery["id"], token):
            self.logger.debug("Skipping delivery %s: lock no longer held", delivery["id"])
            return
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery %s of run %s to %s (attempt %d)",
                delivery["id"],
                run["id"],
                address,
                delivery.get("attempt_count") or 0,
            )
        try:
            result = await self.transport.send(address, run["message"], run.get("image_paths") or None)
        except Exception as exc:
            await self._record_failure(run, delivery, token, exc)
            return

        message_id = (result or {}).get("message_id")
        recorded = await self.persistence.mark_delivery_sent(
            delivery["id"],
            token,
            sent_ts=self._utc_now_epoch(),
            transport_message_id=str(message_id) if message_id is not None else None,
        )
        if not recorded:
            self.logger.warning("Delivery %s was sent but its lock was lost; outcome not recorded", delivery["id"])
            return
        self.metrics.inc_sent(run.get("kind"))
        if self._log_delivery_activity:
            self.logger.info("Delivery %s of run %s sent (message_id=%s)", delivery["id"], run["id"], message_id)

    async def _record_failure(
        self,
        run: Dict[str, Any],
        delivery: Dict[str, Any],
        token: str,
        exc: Exception,
    ) -> None:
        classification = classify_transport_error(exc)
        attempt_count = int(delivery.get("attempt_count") or 0)
        retry_at: Optional[int] = None
        if classification.retryable and attempt_count < self._max_attempts:
            delay = next_attempt_delay(attempt_count, self._backoff_minutes)
            retry_at = self._utc_now_epoch() + delay

        recorded = await self.persistence.mark_delivery_failed(
            delivery["id"],
            token,
            error=classification.message,
            retry_at=retry_at,
        )
        if not recorded:
            self.logger.warning("Delivery %s failed but its lock was lost; outcome not recorded", delivery["id"])
            return

        if retry_at is not None:
            self.metrics.inc_retried(run.get("kind"))
            self.logger.warning(
                "Temporary error for delivery %s (attempt %d/%d): %s - retrying in %ds",
                delivery["id"],
                attempt_count,
                self._max_attempts,
                classification.message,
                retry_at - self._utc_now_epoch(),
            )
        else:
            self.metrics.inc_failed(run.get("kind"))
            self.logger.warning(
                "Delivery %s to %s failed permanently after %d attempt(s): %s",
                delivery["id"],
                delivery["address"],
                attempt_count,
                classification.message,
            )

        if classification.deactivate_subscriber:
            try:
                await self.subscribers.mark_inactive(delivery["address"])
            except Exception as deactivate_exc:
                self.logger.warning(
                    "Failed to deactivate subscriber %s: %s",
                    delivery["address"],
                    deactivate_exc,
                )

    async def _refresh_run_counters(self, run_id: int) -> Dict[str, int]:
        """Recompute a run's cached counters from its deliveries."""
        summary = await self.persistence.delivery_status_summary(run_id)
        await self.persistence.update_run_counters(
            run_id,
            total=sum(summary.values()),
            pending=sum(summary[status] for status in OUTSTANDING_DELIVERY_STATUSES),
            sent=summary[DeliveryStatus.SENT.value],
            failed=summary[DeliveryStatus.FAILED_PERMANENT.value],
            unknown=summary[DeliveryStatus.UNKNOWN.value],
        )
        return summary

    async def _finalize_run_if_complete(self, run_id: int, token: str) -> bool:
        """Close the run when nothing is outstanding, otherwise renew its lease.

        Returns True when the worker must stop touching the run.
        """
        summary = await self._refresh_run_counters(run_id)
        outstanding = sum(summary[status] for status in OUTSTANDING_DELIVERY_STATUSES)
        now_ts = self._utc_now_epoch()
        if outstanding:
            renewed = await self.persistence.renew_run_lease(
                run_id,
                token,
                now_ts=now_ts,
                lease_seconds=self._run_lease_seconds,
            )
            return not renewed

        errors = summary[DeliveryStatus.FAILED_PERMANENT.value] + summary[DeliveryStatus.UNKNOWN.value]
        status = RunStatus.COMPLETED if errors == 0 else RunStatus.COMPLETED_WITH_ERRORS
        if await self.persistence.complete_run(run_id, token, status.value, now_ts=now_ts):
            self.logger.info(
                "Broadcast run %s finished as %s (sent=%d, failed=%d, unknown=%d)",
                run_id,
                status.value,
                summary[DeliveryStatus.SENT.value],
                summary[DeliveryStatus.FAILED_PERMANENT.value],
                summary[DeliveryStatus.UNKNOWN.value],
            )
        else:
            await self.persistence.release_run_lease(run_id, token, now_ts=now_ts)
        return True

    async def _refresh_gauges(self) -> None:
        """Refresh the metrics describing outstanding work."""
        try:
            pending = await self.persistence.count_outstanding_deliveries()
            active = await self.persistence.count_active_runs()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh broadcast gauges")
            return
        self.metrics.set_pending(pending)
        self.metrics.set_active_runs(active)
