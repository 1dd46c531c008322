import asyncio
import types
from typing import Any, Dict, List, Optional

import aiohttp
import pytest
from aioresponses import aioresponses

from async_broadcast_service.core import (
    BroadcastCore,
    RunNotFoundError,
    RunStateError,
    ValidationError,
)
from async_broadcast_service.models import Recipient
from async_broadcast_service.persistence import STALE_PROCESSING_ERROR
from async_broadcast_service.transport import TelegramAPIError, TelegramTransport

NOW = 1_700_000_000


class DummyTransport:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.always_fail: Dict[str, Exception] = {}
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_send = None

    async def send(self, address, message, attachments=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_send is not None:
                await self.on_send(address)
            if self.delay:
                await asyncio.sleep(self.delay)
            if address in self.always_fail:
                raise self.always_fail[address]
            queued = self.failures.get(address)
            if queued:
                raise queued.pop(0)
            self.sent.append({"address": address, "message": message, "attachments": attachments})
            return {"message_id": f"m-{len(self.sent)}"}
        finally:
            self.in_flight -= 1


class DummyDirectory:
    def __init__(self):
        self.deactivated: List[str] = []

    async def mark_inactive(self, address):
        self.deactivated.append(address)

    async def register(self, address, **kwargs):
        return None


class DummyMetrics:
    def __init__(self):
        self.sent: List[str] = []
        self.failed: List[str] = []
        self.retried: List[str] = []
        self.unknown = 0
        self.ticks_skipped = 0
        self.pending_value: Optional[int] = None
        self.active_runs_value: Optional[int] = None

    def inc_sent(self, kind):
        self.sent.append(kind)

    def inc_failed(self, kind):
        self.failed.append(kind)

    def inc_retried(self, kind):
        self.retried.append(kind)

    def inc_unknown(self, amount=1):
        self.unknown += amount

    def inc_tick_skipped(self):
        self.ticks_skipped += 1

    def set_pending(self, value):
        self.pending_value = value

    def set_active_runs(self, value):
        self.active_runs_value = value


class Clock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


def silent_logger(exceptions: Optional[List[Any]] = None):
    def _exception(*args, **kwargs):
        if exceptions is not None:
            exceptions.append(args)

    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=_exception,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


async def make_core(tmp_path, users: int = 3, **kwargs) -> BroadcastCore:
    core = BroadcastCore(
        db_path=str(tmp_path / "core.db"),
        transport=DummyTransport(),
        subscribers=DummyDirectory(),
        metrics=DummyMetrics(),
        logger=silent_logger(),
        test_mode=True,
        **kwargs,
    )
    core._utc_now_epoch = Clock()
    await core.persistence.init_db()
    for idx in range(users):
        await core.persistence.add_user(str(1001 + idx), first_name=f"User{idx}")
    return core


async def statuses(core: BroadcastCore, run_id: int) -> Dict[str, str]:
    result = await core.list_deliveries(run_id, limit=100)
    return {d["address"]: d["status"] for d in result["deliveries"]}


@pytest.mark.asyncio
async def test_tick_delivers_run_and_completes(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hello everyone")
    assert run["status"] == "QUEUED"
    assert run["total_recipients"] == 3
    assert run["pending_count"] == 3

    assert await core.tick() is True

    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED"
    assert run["sent_count"] == 3
    assert run["pending_count"] == 0
    assert run["started_at"] == NOW
    assert run["finished_at"] == NOW
    assert run["lock_token"] is None
    assert run["delivery_summary"]["SENT"] == 3
    assert sorted(item["address"] for item in core.transport.sent) == ["1001", "1002", "1003"]
    assert core.metrics.sent == ["announcement"] * 3

    deliveries = (await core.list_deliveries(run["id"]))["deliveries"]
    assert all(d["attempt_count"] == 1 for d in deliveries)
    assert {d["transport_message_id"] for d in deliveries} == {"m-1", "m-2", "m-3"}

    # Nothing left to claim.
    assert await core.tick() is False


@pytest.mark.asyncio
async def test_zero_recipient_run_is_completed_immediately(tmp_path):
    core = await make_core(tmp_path, users=0)
    run = await core.enqueue_run("Nobody listens")
    assert run["status"] == "COMPLETED"
    assert run["total_recipients"] == 0
    assert run["started_at"] == NOW
    assert run["finished_at"] == NOW
    assert await core.tick() is False
    assert core.transport.sent == []


@pytest.mark.asyncio
async def test_permanent_failure_completes_with_errors_and_deactivates(tmp_path):
    core = await make_core(tmp_path)
    core.transport.always_fail["1002"] = TelegramAPIError(403, "Forbidden: bot was blocked by the user")
    run = await core.enqueue_run("Hi")

    await core.tick()

    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED_WITH_ERRORS"
    assert run["sent_count"] == 2
    assert run["failed_count"] == 1
    assert (await statuses(core, run["id"]))["1002"] == "FAILED_PERMANENT"
    assert core.subscribers.deactivated == ["1002"]
    assert core.metrics.failed == ["announcement"]


@pytest.mark.asyncio
async def test_no_rights_error_is_permanent_without_deactivation(tmp_path):
    core = await make_core(tmp_path, users=1)
    core.transport.always_fail["1001"] = TelegramAPIError(None, "Bad Request: have no rights to send a message")
    run = await core.enqueue_run("Hi")

    await core.tick()

    assert (await statuses(core, run["id"]))["1001"] == "FAILED_PERMANENT"
    assert core.subscribers.deactivated == []


@pytest.mark.asyncio
async def test_deactivation_failure_is_swallowed(tmp_path):
    core = await make_core(tmp_path, users=1)

    async def broken(address):
        raise RuntimeError("directory offline")

    core.subscribers.mark_inactive = broken
    core.transport.always_fail["1001"] = TelegramAPIError(400, "Bad Request: chat not found")
    run = await core.enqueue_run("Hi")

    await core.tick()

    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED_WITH_ERRORS"


@pytest.mark.asyncio
async def test_retryable_failure_is_retried_after_backoff(tmp_path):
    core = await make_core(tmp_path)
    core.transport.failures["1002"] = [aiohttp.ClientConnectionError("connection reset")]
    run = await core.enqueue_run("Hi")

    await core.tick()

    run = await core.get_run(run["id"])
    assert run["status"] == "RUNNING"
    assert run["pending_count"] == 1
    assert run["lock_expires_at"] == NOW + 60
    deliveries = {d["address"]: d for d in (await core.list_deliveries(run["id"]))["deliveries"]}
    retry = deliveries["1002"]
    assert retry["status"] == "FAILED_RETRYABLE"
    assert retry["next_attempt_at"] == NOW + 60
    assert retry["last_error"] == "connection reset"
    assert core.metrics.retried == ["announcement"]

    # Lease still held and retry not due: nothing happens.
    core._utc_now_epoch.now = NOW + 30
    assert await core.tick() is False

    core._utc_now_epoch.now = NOW + 120
    assert await core.tick() is True
    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED"
    assert run["sent_count"] == 3
    deliveries = {d["address"]: d for d in (await core.list_deliveries(run["id"]))["deliveries"]}
    assert deliveries["1002"]["attempt_count"] == 2
    assert deliveries["1002"]["last_error"] is None


@pytest.mark.asyncio
async def test_retryable_failure_becomes_permanent_when_attempts_exhausted(tmp_path):
    core = await make_core(tmp_path, users=1, max_attempts=2)
    core.transport.always_fail["1001"] = asyncio.TimeoutError()
    run = await core.enqueue_run("Hi")

    await core.tick()
    assert (await statuses(core, run["id"]))["1001"] == "FAILED_RETRYABLE"

    core._utc_now_epoch.now = NOW + 120
    await core.tick()

    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED_WITH_ERRORS"
    delivery = (await core.list_deliveries(run["id"]))["deliveries"][0]
    assert delivery["status"] == "FAILED_PERMANENT"
    assert delivery["attempt_count"] == 2
    assert delivery["next_attempt_at"] is None
    assert delivery["last_error"] == "Transport request timed out"


@pytest.mark.asyncio
async def test_crashed_worker_delivery_becomes_unknown_and_is_not_resent(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")
    persistence = core.persistence

    # A worker that claimed the run and one delivery, then died.
    claimed = await persistence.claim_next_run("dead-worker", now_ts=NOW, lease_seconds=60)
    assert claimed["id"] == run["id"]
    candidates = await persistence.fetch_claim_candidates(run["id"], now_ts=NOW, limit=10)
    stuck_id = candidates[0]["id"]
    assert await persistence.claim_delivery(stuck_id, "dead-worker", now_ts=NOW, lock_seconds=60)

    # Lease expired but the lock is still inside the grace period.
    core._utc_now_epoch.now = NOW + 200
    assert await core.tick() is True
    run = await core.get_run(run["id"])
    assert run["status"] == "RUNNING"
    assert (await statuses(core, run["id"]))["1001"] == "PROCESSING"
    assert sorted(item["address"] for item in core.transport.sent) == ["1002", "1003"]

    # Past the grace period the delivery is written off as UNKNOWN.
    core._utc_now_epoch.now = NOW + 60 + 300 + 1
    assert await core.tick() is True
    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED_WITH_ERRORS"
    assert run["unknown_count"] == 1
    delivery = (await core.list_deliveries(run["id"], status="UNKNOWN"))["deliveries"][0]
    assert delivery["address"] == "1001"
    assert delivery["last_error"] == STALE_PROCESSING_ERROR
    assert sorted(item["address"] for item in core.transport.sent) == ["1002", "1003"]
    assert core.metrics.unknown == 1

    # The dead worker can no longer record an outcome.
    assert not await persistence.mark_delivery_sent(stuck_id, "dead-worker", sent_ts=NOW, transport_message_id="late")


@pytest.mark.asyncio
async def test_stale_sweep_is_idempotent(tmp_path):
    core = await make_core(tmp_path, users=2)
    run = await core.enqueue_run("Hi")
    persistence = core.persistence
    candidates = await persistence.fetch_claim_candidates(run["id"], now_ts=NOW, limit=10)
    for candidate in candidates:
        await persistence.claim_delivery(candidate["id"], "w", now_ts=NOW, lock_seconds=60)

    stale_before = NOW + 1000
    assert await persistence.mark_stale_processing_unknown(stale_before=stale_before, run_id=run["id"] + 1) == 0
    assert await persistence.mark_stale_processing_unknown(stale_before=stale_before) == 2
    assert await persistence.mark_stale_processing_unknown(stale_before=stale_before) == 0


@pytest.mark.asyncio
async def test_concurrent_claims_never_overlap(tmp_path):
    core = await make_core(tmp_path, users=30)
    run = await core.enqueue_run("Hi")

    first, second = await asyncio.gather(
        core._claim_deliveries(run["id"], "worker-a", 20),
        core._claim_deliveries(run["id"], "worker-b", 20),
    )

    first_ids = {d["id"] for d in first}
    second_ids = {d["id"] for d in second}
    assert first_ids.isdisjoint(second_ids)
    assert len(first_ids | second_ids) == 30
    assert all(d["lock_token"] == "worker-a" for d in first)
    assert all(d["lock_token"] == "worker-b" for d in second)
    assert all(d["status"] == "PROCESSING" and d["attempt_count"] == 1 for d in first + second)


@pytest.mark.asyncio
async def test_claim_deliveries_respects_batch_size_and_order(tmp_path):
    core = await make_core(tmp_path, users=5)
    run = await core.enqueue_run("Hi")

    claimed = await core._claim_deliveries(run["id"], "w", 3)
    assert [d["address"] for d in claimed] == ["1001", "1002", "1003"]
    assert all(d["lock_expires_at"] == NOW + 60 for d in claimed)
    assert all(d["last_attempt_at"] == NOW for d in claimed)


@pytest.mark.asyncio
async def test_dispatch_batch_bounds_concurrency(tmp_path):
    core = await make_core(tmp_path, users=6, concurrency=2)
    core.transport.delay = 0.01
    run = await core.enqueue_run("Hi")

    await core.tick()

    assert core.transport.max_in_flight == 2
    assert len(core.transport.sent) == 6


@pytest.mark.asyncio
async def test_tick_is_not_reentrant(tmp_path):
    core = await make_core(tmp_path)
    await core.enqueue_run("Hi")

    async with core._tick_lock:
        assert await core.tick() is False
    assert core.metrics.ticks_skipped == 1
    assert core.transport.sent == []


@pytest.mark.asyncio
async def test_tick_logs_and_swallows_errors(tmp_path):
    core = await make_core(tmp_path)
    logged: List[Any] = []
    core.logger = silent_logger(logged)

    async def boom(*args, **kwargs):
        raise RuntimeError("database on fire")

    core.persistence.claim_next_run = boom
    assert await core.tick() is False
    assert logged


@pytest.mark.asyncio
async def test_cancel_settles_pending_and_in_flight_deliveries(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")
    candidates = await core.persistence.fetch_claim_candidates(run["id"], now_ts=NOW, limit=10)
    await core.persistence.claim_delivery(candidates[0]["id"], "w", now_ts=NOW, lock_seconds=60)

    cancelled = await core.cancel_run(run["id"])

    assert cancelled["status"] == "CANCELLED"
    assert cancelled["finished_at"] == NOW
    assert cancelled["lock_token"] is None
    assert cancelled["failed_count"] == 2
    assert cancelled["unknown_count"] == 1
    assert cancelled["pending_count"] == 0
    assert await statuses(core, run["id"]) == {
        "1001": "UNKNOWN",
        "1002": "FAILED_PERMANENT",
        "1003": "FAILED_PERMANENT",
    }
    assert await core.tick() is False

    # Cancelling a finished run is a no-op.
    again = await core.cancel_run(run["id"])
    assert again["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_cancel_during_dispatch_leaves_run_cancelled(tmp_path):
    core = await make_core(tmp_path, concurrency=1)
    run = await core.enqueue_run("Hi")
    run_id = run["id"]

    async def cancel_on_first_send(address):
        if address == "1001":
            await core.cancel_run(run_id)

    core.transport.on_send = cancel_on_first_send
    await core.tick()

    run = await core.get_run(run_id)
    assert run["status"] == "CANCELLED"
    assert run["lock_token"] is None
    # The in-flight send could not record its outcome.
    assert (await statuses(core, run_id))["1001"] == "UNKNOWN"
    assert [item["address"] for item in core.transport.sent] == ["1001"]


@pytest.mark.asyncio
async def test_requeue_unknown(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")
    candidates = await core.persistence.fetch_claim_candidates(run["id"], now_ts=NOW, limit=10)
    await core.persistence.claim_delivery(candidates[0]["id"], "w", now_ts=NOW, lock_seconds=60)
    await core.cancel_run(run["id"])

    requeued = await core.requeue_unknown(run["id"])
    assert requeued == 1
    run = await core.get_run(run["id"])
    assert run["status"] == "QUEUED"
    assert run["finished_at"] is None
    assert run["pending_count"] == 1

    await core.tick()
    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED_WITH_ERRORS"
    assert run["sent_count"] == 1
    assert [item["address"] for item in core.transport.sent] == ["1001"]

    # Nothing left to requeue.
    assert await core.requeue_unknown(run["id"]) == 0


@pytest.mark.asyncio
async def test_requeue_unknown_refused_while_running(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")
    await core.persistence.claim_next_run("w", now_ts=NOW, lease_seconds=60)

    with pytest.raises(RunStateError):
        await core.requeue_unknown(run["id"])


@pytest.mark.asyncio
async def test_repost_creates_new_run_with_same_content(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run(
        "Sale!",
        kind="promotion",
        target="users",
        user_ids=[1, 3],
        image_paths=["https://cdn.example.com/a.jpg"],
        requested_by=7,
    )
    assert run["total_recipients"] == 2

    reposted = await core.repost_run(run["id"], requested_by=9)

    assert reposted["id"] != run["id"]
    assert reposted["requested_by"] == 9
    assert reposted["status"] == "QUEUED"
    assert reposted["message"] == "Sale!"
    assert reposted["kind"] == "promotion"
    assert reposted["target_user_ids"] == [1, 3]
    assert reposted["image_paths"] == ["https://cdn.example.com/a.jpg"]
    assert reposted["total_recipients"] == 2

    await core.tick()
    await core.tick()
    assert [item["attachments"] for item in core.transport.sent][0] == ["https://cdn.example.com/a.jpg"]


@pytest.mark.asyncio
async def test_delete_run_requires_terminal_status(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")

    with pytest.raises(RunStateError):
        await core.delete_run(run["id"])

    await core.tick()
    await core.delete_run(run["id"])
    with pytest.raises(RunNotFoundError):
        await core.get_run(run["id"])
    assert await core.persistence.fetch_deliveries(range(1, 10)) == []


@pytest.mark.asyncio
async def test_purge_removes_only_old_terminal_runs(tmp_path):
    core = await make_core(tmp_path, retention_days=1)
    old_done = await core.enqueue_run("old")
    await core.tick()
    old_active = await core.enqueue_run("still queued")

    core._utc_now_epoch.now = NOW + 2 * 86400
    recent_done = await core.enqueue_run("recent", target="users", user_ids=[999])

    removed = await core.purge_expired_runs()

    assert removed == 1
    with pytest.raises(RunNotFoundError):
        await core.get_run(old_done["id"])
    assert (await core.get_run(old_active["id"]))["status"] == "QUEUED"
    assert (await core.get_run(recent_done["id"]))["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_enqueue_validation(tmp_path):
    core = await make_core(tmp_path)

    with pytest.raises(ValidationError):
        await core.enqueue_run("   ")
    with pytest.raises(ValidationError):
        await core.enqueue_run("x" * 4001)
    with pytest.raises(ValidationError):
        await core.enqueue_run("Hi", target="users", user_ids=[0, -3, "abc"])
    with pytest.raises(ValidationError):
        await core.enqueue_run("Hi", kind="spam")
    with pytest.raises(ValidationError):
        await core.enqueue_run("Hi", image_paths=["a.jpg", "b.jpg", "c.jpg", "d.jpg"])

    run = await core.enqueue_run("  Hi  ", target="users", user_ids=[2, 2, "3", 0])
    assert run["message"] == "Hi"
    assert run["target_user_ids"] == [2, 3]
    assert run["total_recipients"] == 2


@pytest.mark.asyncio
async def test_enqueue_limit_caps_audience(tmp_path):
    core = await make_core(tmp_path, users=5)
    run = await core.enqueue_run("Hi", limit=2)
    assert run["total_recipients"] == 2


@pytest.mark.asyncio
async def test_handle_command_reports_domain_errors(tmp_path):
    core = await make_core(tmp_path)

    missing = await core.handle_command("getRun", {"id": 999})
    assert missing == {"ok": False, "error": "Broadcast run 999 not found", "code": "run_not_found"}

    invalid = await core.handle_command("enqueueRun", {"message": ""})
    assert invalid["ok"] is False
    assert invalid["code"] == "invalid_payload"

    assert (await core.handle_command("getRun", {}))["code"] == "invalid_payload"
    assert await core.handle_command("bogus", {}) == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_handle_command_round_trip(tmp_path):
    core = await make_core(tmp_path)

    created = await core.handle_command("enqueueRun", {"message": "Hello", "kind": "news"})
    assert created["ok"] is True
    run_id = created["run"]["id"]

    listed = await core.handle_command("listRuns", {"page": 1, "limit": 5})
    assert listed["ok"] is True
    assert [r["id"] for r in listed["runs"]] == [run_id]
    assert listed["meta"] == {
        "page": 1,
        "limit": 5,
        "total": 1,
        "total_pages": 1,
        "has_next": False,
        "has_prev": False,
    }

    cancelled = await core.handle_command("cancelRun", {"id": run_id})
    assert cancelled["run"]["status"] == "CANCELLED"

    deleted = await core.handle_command("deleteRun", {"id": run_id})
    assert deleted == {"ok": True, "run_id": run_id, "deleted": True}

    assert await core.handle_command("purgeRuns", {}) == {"ok": True, "removed": 0}
    assert await core.handle_command("run now", {}) == {"ok": True}


@pytest.mark.asyncio
async def test_list_deliveries_filters_and_paginates(tmp_path):
    core = await make_core(tmp_path, users=4)
    core.transport.always_fail["1004"] = TelegramAPIError(403, "Forbidden: user is deactivated")
    run = await core.enqueue_run("Hi")
    await core.tick()

    sent = await core.list_deliveries(run["id"], status="SENT", page=1, limit=2)
    assert [d["address"] for d in sent["deliveries"]] == ["1003", "1002"]
    assert sent["meta"]["total"] == 3
    assert sent["meta"]["total_pages"] == 2
    assert sent["meta"]["has_next"] is True
    assert sent["deliveries"][0]["user_first_name"] == "User2"

    not_sent = await core.list_deliveries(run["id"], status="not_sent")
    assert [d["address"] for d in not_sent["deliveries"]] == ["1004"]
    failed = await core.list_deliveries(run["id"], status="FAILED")
    assert failed["meta"]["total"] == 1
    assert (await core.list_deliveries(run["id"], status="PENDING"))["meta"]["total"] == 0

    with pytest.raises(ValidationError):
        await core.list_deliveries(run["id"], status="WHATEVER")
    with pytest.raises(RunNotFoundError):
        await core.list_deliveries(999)


@pytest.mark.asyncio
async def test_queued_runs_are_claimed_before_expired_running_ones(tmp_path):
    core = await make_core(tmp_path)
    persistence = core.persistence
    older = await core.enqueue_run("older")
    await persistence.claim_next_run("gone", now_ts=NOW, lease_seconds=60)
    core._utc_now_epoch.now = NOW + 10
    newer = await core.enqueue_run("newer")

    claimed = await persistence.claim_next_run("w2", now_ts=NOW + 100, lease_seconds=60)
    assert claimed["id"] == newer["id"]
    claimed = await persistence.claim_next_run("w3", now_ts=NOW + 100, lease_seconds=60)
    assert claimed["id"] == older["id"]
    assert claimed["started_at"] == NOW
    assert await persistence.claim_next_run("w4", now_ts=NOW + 100, lease_seconds=60) is None


@pytest.mark.asyncio
async def test_background_loop_processes_on_wakeup(tmp_path):
    core = await make_core(tmp_path)
    await core.start()
    try:
        run = await core.enqueue_run("Hi")
        for _ in range(100):
            await asyncio.sleep(0.02)
            current = await core.get_run(run["id"])
            if current["status"] == "COMPLETED":
                break
        assert current["status"] == "COMPLETED"
    finally:
        await core.stop()
    assert core._task_queue.done()


@pytest.mark.asyncio
async def test_local_images_must_exist_inside_media_root(tmp_path):
    media = tmp_path / "media"
    media.mkdir()
    (media / "banner.png").write_bytes(b"\x89PNG")
    (tmp_path / "secret.txt").write_bytes(b"TOP-SECRET")
    core = await make_core(tmp_path, media_root=str(media))

    with pytest.raises(ValidationError, match="outside the media root"):
        await core.enqueue_run("Hi", image_paths=[str(tmp_path / "secret.txt")])
    with pytest.raises(ValidationError, match="outside the media root"):
        await core.enqueue_run("Hi", image_paths=["../secret.txt"])
    with pytest.raises(ValidationError, match="not found"):
        await core.enqueue_run("Hi", image_paths=["missing.png"])
    assert (await core.list_runs())["meta"]["total"] == 0

    run = await core.enqueue_run("Hi", image_paths=["banner.png", "https://cdn.example.com/a.jpg"])
    assert run["image_paths"] == ["banner.png", "https://cdn.example.com/a.jpg"]


@pytest.mark.asyncio
async def test_stored_image_outside_media_root_is_never_uploaded(tmp_path):
    media = tmp_path / "media"
    media.mkdir()
    (tmp_path / "secret.txt").write_bytes(b"TOP-SECRET")
    core = BroadcastCore(
        db_path=str(tmp_path / "core.db"),
        transport=TelegramTransport("123:abc", api_base="https://bot.example.test", media_root=str(media)),
        subscribers=DummyDirectory(),
        metrics=DummyMetrics(),
        logger=silent_logger(),
        test_mode=True,
    )
    core._utc_now_epoch = Clock()
    await core.persistence.init_db()
    run_id = await core.persistence.create_run(
        {
            "kind": "announcement",
            "target": "all",
            "target_user_ids": None,
            "message": "leak",
            "image_paths": [str(tmp_path / "secret.txt")],
            "requested_by": None,
        },
        [Recipient(address="1001")],
        now_ts=NOW,
    )

    with aioresponses() as m:
        await core.tick()
        assert m.requests == {}

    run = await core.get_run(run_id)
    assert run["status"] == "COMPLETED_WITH_ERRORS"
    assert (await statuses(core, run_id))["1001"] == "FAILED_PERMANENT"

@pytest.mark.asyncio
async def test_tick_stops_after_max_batches_and_resumes_once_lease_expires(tmp_path):
    core = await make_core(tmp_path, users=60, batch_size=10, max_batches_per_tick=5, run_lease_seconds=60)
    run = await core.enqueue_run("Hi")

    assert await core.tick() is True

    run = await core.get_run(run["id"])
    assert run["status"] == "RUNNING"
    assert run["sent_count"] == 50
    assert run["pending_count"] == 10
    assert len(core.transport.sent) == 50

    # The lease is still held, so nobody (this worker included) picks the run up yet.
    assert await core.tick() is False

    core._utc_now_epoch.now = NOW + 61
    assert await core.tick() is True
    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED"
    assert run["sent_count"] == 60
    assert len(core.transport.sent) == 60


@pytest.mark.asyncio
async def test_lost_lease_stops_further_batch_claims(tmp_path):
    core = await make_core(tmp_path, users=30, batch_size=10, concurrency=1)
    run = await core.enqueue_run("Hi")
    run_id = run["id"]
    stolen = []

    async def steal_lease(address):
        if stolen:
            return
        current = await core.persistence.get_run(run_id)
        await core.persistence.release_run_lease(run_id, current["lock_token"], now_ts=NOW)
        stolen.append(await core.persistence.claim_next_run("other-worker", now_ts=NOW, lease_seconds=60))

    core.transport.on_send = steal_lease
    await core.tick()

    assert stolen[0]["id"] == run_id
    # The batch already locked finishes, but no further batch is claimed.
    assert len(core.transport.sent) == 10
    run = await core.get_run(run_id)
    assert run["status"] == "RUNNING"
    assert run["lock_token"] == "other-worker"
    summary = run["delivery_summary"]
    assert summary["SENT"] == 10
    assert summary["PENDING"] == 20
    assert summary["PROCESSING"] == 0


@pytest.mark.asyncio
async def test_cancel_of_finished_run_is_a_no_op(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi")
    await core.tick()
    finished = await core.get_run(run["id"])

    assert await core.persistence.cancel_run(run["id"], now_ts=NOW + 100) is False

    run = await core.get_run(run["id"])
    assert run["status"] == "COMPLETED"
    assert run["finished_at"] == finished["finished_at"]
    assert run["delivery_summary"]["SENT"] == 3


@pytest.mark.asyncio
async def test_list_and_add_users(tmp_path):
    core = await make_core(tmp_path, users=0)
    await core.persistence.add_user(None, first_name="NoAddress")
    await core.persistence.add_user("  ", first_name="Blank")
    alice = await core.add_user(" 2001 ", first_name="Alice", username="alice_w")
    await core.add_user("2002", first_name="Bob")
    await core.add_user("3003", username="carol")

    assert alice["address"] == "2001"
    assert alice["first_name"] == "Alice"
    with pytest.raises(ValidationError):
        await core.add_user("   ")

    everyone = await core.list_users()
    assert [u["address"] for u in everyone["users"]] == ["3003", "2002", "2001"]
    assert everyone["meta"]["total"] == 3

    by_name = await core.list_users(search="  ALI ")
    assert [u["id"] for u in by_name["users"]] == [alice["id"]]
    by_username = await core.list_users(search="carol")
    assert [u["address"] for u in by_username["users"]] == ["3003"]
    by_address = await core.list_users(search="200")
    assert [u["address"] for u in by_address["users"]] == ["2002", "2001"]

    second_page = await core.list_users(page=2, limit=2)
    assert [u["address"] for u in second_page["users"]] == ["2001"]
    assert second_page["meta"]["has_prev"] is True
    assert second_page["meta"]["has_next"] is False

    listed = await core.handle_command("listUsers", {"search": "bob"})
    assert listed["ok"] is True
    assert [u["first_name"] for u in listed["users"]] == ["Bob"]
    added = await core.handle_command("addUser", {"address": "4004"})
    assert added["ok"] is True
    assert added["user"]["address"] == "4004"
    assert (await core.handle_command("addUser", {}))["code"] == "invalid_payload"


@pytest.mark.asyncio
async def test_repost_command_records_reposting_user(tmp_path):
    core = await make_core(tmp_path)
    run = await core.enqueue_run("Hi", requested_by=7)

    reposted = await core.handle_command("repostRun", {"id": run["id"], "requested_by": 12})
    assert reposted["ok"] is True
    assert reposted["run"]["requested_by"] == 12

    anonymous = await core.handle_command("repostRun", {"id": run["id"]})
    assert anonymous["run"]["requested_by"] is None
