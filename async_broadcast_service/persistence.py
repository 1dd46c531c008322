"""SQLite backed persistence used by the broadcast dispatcher.

Runs and deliveries are coordinated exclusively through conditional
``UPDATE ... WHERE`` statements whose affected row count tells the caller
whether it won a claim. No connection-level locking is assumed, so several
processes may share the same database file.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    ACTIVE_RUN_STATUSES,
    CLAIMABLE_DELIVERY_STATUSES,
    TERMINAL_RUN_STATUSES,
    DeliveryStatus,
    Recipient,
    RunStatus,
)

STALE_PROCESSING_ERROR = (
    "Delivery outcome unknown after worker interruption. "
    "Not retried automatically to avoid duplicate sends."
)
CANCELLED_ERROR = "Broadcast cancelled by operator"
CANCELLED_IN_FLIGHT_ERROR = "Delivery outcome unknown because the broadcast was cancelled mid-flight"

_RUN_JSON_COLUMNS = ("target_user_ids", "image_paths")


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class Persistence:
    """Helper class responsible for reading and writing service state."""

    def __init__(self, db_path: str = "/data/broadcast_service.db", timeout: float = 30.0):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"
        self.timeout = timeout

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.timeout)

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL DEFAULT 'QUEUED',
                    kind TEXT NOT NULL DEFAULT 'announcement',
                    target TEXT NOT NULL DEFAULT 'all',
                    target_user_ids TEXT,
                    message TEXT NOT NULL,
                    image_paths TEXT,
                    requested_by INTEGER,
                    total_recipients INTEGER NOT NULL DEFAULT 0,
                    pending_count INTEGER NOT NULL DEFAULT 0,
                    sent_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    unknown_count INTEGER NOT NULL DEFAULT 0,
                    lock_token TEXT,
                    lock_expires_at INTEGER,
                    last_heartbeat_at INTEGER,
                    created_at INTEGER NOT NULL,
                    started_at INTEGER,
                    finished_at INTEGER
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_status_created ON runs(status, created_at)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_finished ON runs(finished_at)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                    user_id INTEGER,
                    address TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at INTEGER,
                    last_attempt_at INTEGER,
                    sent_at INTEGER,
                    transport_message_id TEXT,
                    last_error TEXT,
                    lock_token TEXT,
                    lock_expires_at INTEGER,
                    UNIQUE (run_id, address)
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_deliveries_run_status_next
                ON deliveries(run_id, status, next_attempt_at)
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_run_lock ON deliveries(run_id, lock_expires_at)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT,
                    first_name TEXT,
                    username TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_users_address ON users(address)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT NOT NULL UNIQUE,
                    username TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_seen_at INTEGER
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_subscribers_active ON subscribers(is_active)")
            await db.commit()

    # Runs ---------------------------------------------------------------------
    @staticmethod
    def _decode_run_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        for column in _RUN_JSON_COLUMNS:
            raw = data.get(column)
            data[column] = json.loads(raw) if raw else None
        return data

    async def create_run(
        self,
        run: Dict[str, Any],
        recipients: Sequence[Recipient],
        *,
        now_ts: int,
        chunk_size: int = 500,
    ) -> int:
        """Insert a run and one PENDING delivery per recipient in one transaction.

        A run without recipients is stored already COMPLETED.
        """
        total = len(recipients)
        status = RunStatus.QUEUED.value if total else RunStatus.COMPLETED.value
        finished_at = None if total else now_ts
        chunk_size = max(1, int(chunk_size))
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO runs (
                        status, kind, target, target_user_ids, message, image_paths, requested_by,
                        total_recipients, pending_count, created_at, started_at, finished_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        status,
                        run["kind"],
                        run["target"],
                        json.dumps(run["target_user_ids"]) if run.get("target_user_ids") else None,
                        run["message"],
                        json.dumps(run["image_paths"]) if run.get("image_paths") else None,
                        run.get("requested_by"),
                        total,
                        total,
                        now_ts,
                        finished_at,
                        finished_at,
                    ),
                )
                run_id = cursor.lastrowid
                for start in range(0, total, chunk_size):
                    chunk = recipients[start:start + chunk_size]
                    await db.executemany(
                        "INSERT INTO deliveries (run_id, user_id, address, status) VALUES (?, ?, ?, ?)",
                        [(run_id, rcpt.user_id, rcpt.address, DeliveryStatus.PENDING.value) for rcpt in chunk],
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return int(run_id)

    async def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        """Return a single run or ``None``."""
        async with self._connect() as db:
            async with db.execute("SELECT * FROM runs WHERE id=?", (run_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_run_row(row, cols)

    async def list_runs(self, *, offset: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        """Return a page of runs, newest first, plus the total count."""
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM runs") as cur:
                row = await cur.fetchone()
                total = int(row[0] if row else 0)
            async with db.execute(
                "SELECT * FROM runs ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_run_row(row, cols) for row in rows], total

    async def delete_run(self, run_id: int) -> bool:
        """Remove a run together with its deliveries."""
        async with self._connect() as db:
            await db.execute("DELETE FROM deliveries WHERE run_id=?", (run_id,))
            cursor = await db.execute("DELETE FROM runs WHERE id=?", (run_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def purge_runs_finished_before(self, threshold_ts: int) -> int:
        """Delete terminal runs (and their deliveries) finished before ``threshold_ts``."""
        statuses = TERMINAL_RUN_STATUSES
        where = f"status IN ({_placeholders(statuses)}) AND finished_at IS NOT NULL AND finished_at < ?"
        params = (*statuses, threshold_ts)
        async with self._connect() as db:
            await db.execute(
                f"DELETE FROM deliveries WHERE run_id IN (SELECT id FROM runs WHERE {where})",
                params,
            )
            cursor = await db.execute(f"DELETE FROM runs WHERE {where}", params)
            await db.commit()
            return cursor.rowcount

    async def count_active_runs(self) -> int:
        """Return the number of QUEUED or RUNNING runs."""
        async with self._connect() as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM runs WHERE status IN ({_placeholders(ACTIVE_RUN_STATUSES)})",
                ACTIVE_RUN_STATUSES,
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Run leases ---------------------------------------------------------------
    async def claim_next_run(self, lock_token: str, *, now_ts: int, lease_seconds: int) -> Optional[Dict[str, Any]]:
        """Lease the oldest claimable run, never-started runs first.

        Returns ``None`` when nothing is claimable or when another worker
        updated the candidate between the read and the conditional update.
        """
        statuses = ACTIVE_RUN_STATUSES
        eligible = f"status IN ({_placeholders(statuses)}) AND (lock_expires_at IS NULL OR lock_expires_at < ?)"
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT id FROM runs
                WHERE {eligible}
                ORDER BY CASE WHEN status = ? THEN 0 ELSE 1 END, created_at ASC, id ASC
                LIMIT 1
                """,
                (*statuses, now_ts, RunStatus.QUEUED.value),
            ) as cur:
                row = await cur.fetchone()
            if not row:
                return None
            run_id = row[0]
            cursor = await db.execute(
                f"""
                UPDATE runs
                SET status=?, lock_token=?, lock_expires_at=?, last_heartbeat_at=?,
                    started_at=COALESCE(started_at, ?)
                WHERE id=? AND {eligible}
                """,
                (
                    RunStatus.RUNNING.value,
                    lock_token,
                    now_ts + lease_seconds,
                    now_ts,
                    now_ts,
                    run_id,
                    *statuses,
                    now_ts,
                ),
            )
            await db.commit()
            if not cursor.rowcount:
                return None
        return await self.get_run(run_id)

    async def renew_run_lease(self, run_id: int, lock_token: str, *, now_ts: int, lease_seconds: int) -> bool:
        """Extend the lease; ``False`` means the caller lost it and must stop."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE runs SET lock_expires_at=?, last_heartbeat_at=?
                WHERE id=? AND lock_token=? AND status=?
                """,
                (now_ts + lease_seconds, now_ts, run_id, lock_token, RunStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def release_run_lease(self, run_id: int, lock_token: str, *, now_ts: int) -> bool:
        """Clear the lease fields held under ``lock_token``, whatever the run status."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE runs SET lock_token=NULL, lock_expires_at=NULL, last_heartbeat_at=?
                WHERE id=? AND lock_token=?
                """,
                (now_ts, run_id, lock_token),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def complete_run(self, run_id: int, lock_token: str, status: str, *, now_ts: int) -> bool:
        """Move a leased RUNNING run to a terminal status and drop its lease."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE runs
                SET status=?, finished_at=?, last_heartbeat_at=?, lock_token=NULL, lock_expires_at=NULL
                WHERE id=? AND lock_token=? AND status=?
                """,
                (status, now_ts, now_ts, run_id, lock_token, RunStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def cancel_run(self, run_id: int, *, now_ts: int) -> bool:
        """Cancel an active run and settle its deliveries in one transaction.

        Deliveries not yet handed to the transport fail permanently; in-flight
        ones become UNKNOWN because their external outcome cannot be known.
        Returns False, changing nothing, when the run is no longer QUEUED or RUNNING.
        """
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    f"""
                    UPDATE runs
                    SET status=?, finished_at=?, last_heartbeat_at=?, lock_token=NULL, lock_expires_at=NULL
                    WHERE id=? AND status IN ({_placeholders(ACTIVE_RUN_STATUSES)})
                    """,
                    (RunStatus.CANCELLED.value, now_ts, now_ts, run_id, *ACTIVE_RUN_STATUSES),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    return False
                await db.execute(
                    f"""
                    UPDATE deliveries
                    SET status=?, next_attempt_at=NULL, lock_token=NULL, lock_expires_at=NULL, last_error=?
                    WHERE run_id=? AND status IN ({_placeholders(CLAIMABLE_DELIVERY_STATUSES)})
                    """,
                    (DeliveryStatus.FAILED_PERMANENT.value, CANCELLED_ERROR, run_id, *CLAIMABLE_DELIVERY_STATUSES),
                )
                await db.execute(
                    """
                    UPDATE deliveries
                    SET status=?, next_attempt_at=NULL, lock_token=NULL, lock_expires_at=NULL, last_error=?
                    WHERE run_id=? AND status=?
                    """,
                    (
                        DeliveryStatus.UNKNOWN.value,
                        CANCELLED_IN_FLIGHT_ERROR,
                        run_id,
                        DeliveryStatus.PROCESSING.value,
                    ),
                )
                await db.commit()
                return True
            except Exception:
                await db.rollback()
                raise

    async def requeue_unknown_deliveries(self, run_id: int) -> int:
        """Return UNKNOWN deliveries to PENDING and re-queue the run when any moved."""
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    """
                    UPDATE deliveries
                    SET status=?, next_attempt_at=NULL, lock_token=NULL, lock_expires_at=NULL, last_error=NULL
                    WHERE run_id=? AND status=?
                    """,
                    (DeliveryStatus.PENDING.value, run_id, DeliveryStatus.UNKNOWN.value),
                )
                requeued = cursor.rowcount
                if requeued:
                    await db.execute(
                        """
                        UPDATE runs
                        SET status=?, finished_at=NULL, lock_token=NULL, lock_expires_at=NULL
                        WHERE id=?
                        """,
                        (RunStatus.QUEUED.value, run_id),
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return requeued

    # Deliveries ---------------------------------------------------------------
    async def fetch_claim_candidates(self, run_id: int, *, now_ts: int, limit: int) -> List[Dict[str, Any]]:
        """Return deliveries that are due and unlocked, in insertion order."""
        statuses = CLAIMABLE_DELIVERY_STATUSES
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT id, status, attempt_count FROM deliveries
                WHERE run_id=?
                  AND status IN ({_placeholders(statuses)})
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                  AND (lock_expires_at IS NULL OR lock_expires_at < ?)
                ORDER BY id ASC
                LIMIT ?
                """,
                (run_id, *statuses, now_ts, now_ts, limit),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def claim_delivery(self, delivery_id: int, lock_token: str, *, now_ts: int, lock_seconds: int) -> bool:
        """Lock one delivery for ``lock_token``; ``False`` when someone else got it first."""
        statuses = CLAIMABLE_DELIVERY_STATUSES
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE deliveries
                SET status=?, lock_token=?, lock_expires_at=?, last_attempt_at=?,
                    next_attempt_at=NULL, last_error=NULL, attempt_count=attempt_count + 1
                WHERE id=?
                  AND status IN ({_placeholders(statuses)})
                  AND (lock_expires_at IS NULL OR lock_expires_at < ?)
                """,
                (
                    DeliveryStatus.PROCESSING.value,
                    lock_token,
                    now_ts + lock_seconds,
                    now_ts,
                    delivery_id,
                    *statuses,
                    now_ts,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def fetch_deliveries(self, ids: Iterable[int]) -> List[Dict[str, Any]]:
        """Return the deliveries with the given ids ordered by id."""
        id_list = [int(i) for i in ids]
        if not id_list:
            return []
        async with self._connect() as db:
            async with db.execute(
                f"SELECT * FROM deliveries WHERE id IN ({_placeholders(id_list)}) ORDER BY id ASC",
                id_list,
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def delivery_lock_held(self, delivery_id: int, lock_token: str) -> bool:
        """Return True while the delivery is still PROCESSING under ``lock_token``."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT 1 FROM deliveries WHERE id=? AND status=? AND lock_token=?",
                (delivery_id, DeliveryStatus.PROCESSING.value, lock_token),
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def mark_delivery_sent(
        self, delivery_id: int, lock_token: str, *, sent_ts: int, transport_message_id: Optional[str]
    ) -> bool:
        """Record a successful send if the caller still owns the delivery lock."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE deliveries
                SET status=?, sent_at=?, transport_message_id=?, next_attempt_at=NULL,
                    lock_token=NULL, lock_expires_at=NULL, last_error=NULL
                WHERE id=? AND status=? AND lock_token=?
                """,
                (
                    DeliveryStatus.SENT.value,
                    sent_ts,
                    transport_message_id,
                    delivery_id,
                    DeliveryStatus.PROCESSING.value,
                    lock_token,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_delivery_failed(
        self, delivery_id: int, lock_token: str, *, error: str, retry_at: Optional[int]
    ) -> bool:
        """Record a failed attempt; ``retry_at`` selects FAILED_RETRYABLE over FAILED_PERMANENT."""
        status = DeliveryStatus.FAILED_RETRYABLE if retry_at is not None else DeliveryStatus.FAILED_PERMANENT
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE deliveries
                SET status=?, next_attempt_at=?, lock_token=NULL, lock_expires_at=NULL, last_error=?
                WHERE id=? AND status=? AND lock_token=?
                """,
                (
                    status.value,
                    retry_at,
                    error,
                    delivery_id,
                    DeliveryStatus.PROCESSING.value,
                    lock_token,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_stale_processing_unknown(self, *, stale_before: int, run_id: Optional[int] = None) -> int:
        """Turn PROCESSING deliveries whose lock expired before ``stale_before`` into UNKNOWN.

        When ``run_id`` is given only that run is swept.
        """
        query = """
            UPDATE deliveries
            SET status=?, lock_token=NULL, lock_expires_at=NULL, next_attempt_at=NULL, last_error=?
            WHERE status=? AND lock_expires_at IS NOT NULL AND lock_expires_at < ?
        """
        params: List[Any] = [
            DeliveryStatus.UNKNOWN.value,
            STALE_PROCESSING_ERROR,
            DeliveryStatus.PROCESSING.value,
            stale_before,
        ]
        if run_id is not None:
            query += " AND run_id=?"
            params.append(run_id)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def delivery_status_summary(self, run_id: int) -> Dict[str, int]:
        """Count deliveries of a run per status (every status present, zero-filled)."""
        summary = {status.value: 0 for status in DeliveryStatus}
        async with self._connect() as db:
            async with db.execute(
                "SELECT status, COUNT(id) FROM deliveries WHERE run_id=? GROUP BY status",
                (run_id,),
            ) as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            if status in summary:
                summary[status] = int(count or 0)
        return summary

    async def update_run_counters(
        self,
        run_id: int,
        *,
        total: int,
        pending: int,
        sent: int,
        failed: int,
        unknown: int,
    ) -> None:
        """Overwrite the denormalised counters of a run."""
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE runs
                SET total_recipients=?, pending_count=?, sent_count=?, failed_count=?, unknown_count=?
                WHERE id=?
                """,
                (total, pending, sent, failed, unknown, run_id),
            )
            await db.commit()

    async def list_deliveries(
        self,
        run_id: int,
        *,
        statuses: Optional[Sequence[str]] = None,
        offset: int,
        limit: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return a page of deliveries (newest first) joined with recipient details."""
        where = "d.run_id=?"
        params: List[Any] = [run_id]
        if statuses:
            where += f" AND d.status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM deliveries d WHERE {where}", params) as cur:
                row = await cur.fetchone()
                total = int(row[0] if row else 0)
            async with db.execute(
                f"""
                SELECT d.id, d.status, d.attempt_count, d.address, d.transport_message_id,
                       d.sent_at, d.last_attempt_at, d.next_attempt_at, d.last_error,
                       u.id AS user_id, u.first_name AS user_first_name, u.username AS user_username,
                       s.first_name AS subscriber_first_name, s.username AS subscriber_username
                FROM deliveries d
                LEFT JOIN users u ON u.id = d.user_id
                LEFT JOIN subscribers s ON s.address = d.address
                WHERE {where}
                ORDER BY d.id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows], total

    async def count_outstanding_deliveries(self) -> int:
        """Return the number of deliveries still awaiting a final outcome."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM deliveries WHERE status IN (?, ?, ?)",
                (
                    DeliveryStatus.PENDING.value,
                    DeliveryStatus.PROCESSING.value,
                    DeliveryStatus.FAILED_RETRYABLE.value,
                ),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Audience -----------------------------------------------------------------
    async def add_user(self, address: Optional[str], *, first_name: Optional[str] = None,
                       username: Optional[str] = None) -> int:
        """Insert a user record usable as broadcast audience."""
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT INTO users (address, first_name, username) VALUES (?, ?, ?)",
                (address, first_name, username),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, address, first_name, username, created_at FROM users WHERE id=?", (user_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def list_users(
        self, *, search: Optional[str] = None, offset: int, limit: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return a page of addressable users, newest first, plus the total count.

        ``search`` matches case-insensitively anywhere in first name, username or address.
        """
        where = "address IS NOT NULL AND TRIM(address) != ''"
        params: List[Any] = []
        if search:
            pattern = f"%{search}%"
            where += (
                " AND (LOWER(COALESCE(first_name, '')) LIKE ?"
                " OR LOWER(COALESCE(username, '')) LIKE ?"
                " OR LOWER(address) LIKE ?)"
            )
            params.extend([pattern, pattern, pattern])
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM users WHERE {where}", params) as cur:
                row = await cur.fetchone()
                total = int(row[0] if row else 0)
            async with db.execute(
                f"""
                SELECT id, address, first_name, username, created_at FROM users
                WHERE {where}
                ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows], total

    async def upsert_subscriber(self, sub: Dict[str, Any], *, seen_ts: int) -> None:
        """Insert or refresh a channel subscriber, reactivating it."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO subscribers (address, username, first_name, last_name, is_active, last_seen_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(address) DO UPDATE SET
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    is_active = 1,
                    last_seen_at = excluded.last_seen_at
                """,
                (sub["address"], sub.get("username"), sub.get("first_name"), sub.get("last_name"), seen_ts),
            )
            await db.commit()

    async def set_subscriber_inactive(self, address: str) -> int:
        """Flag a subscriber as no longer reachable."""
        async with self._connect() as db:
            cursor = await db.execute("UPDATE subscribers SET is_active=0 WHERE address=?", (address,))
            await db.commit()
            return cursor.rowcount

    async def get_subscriber(self, address: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM subscribers WHERE address=?", (address,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        sub = dict(zip(cols, row))
        sub["is_active"] = bool(sub["is_active"])
        return sub

    async def fetch_user_recipients(
        self, *, user_ids: Optional[Sequence[int]] = None, limit: Optional[int] = None
    ) -> List[Tuple[Optional[int], str]]:
        """Return ``(user_id, address)`` for users with a non-blank address, by id."""
        query = "SELECT id, address FROM users WHERE address IS NOT NULL AND TRIM(address) != ''"
        params: List[Any] = []
        if user_ids is not None:
            query += f" AND id IN ({_placeholders(user_ids)})"
            params.extend(user_ids)
        query += " ORDER BY id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def fetch_subscriber_recipients(
        self, *, seen_since: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Tuple[Optional[int], str]]:
        """Return ``(user_id, address)`` for active subscribers, by subscription order."""
        query = """
            SELECT u.id, s.address
            FROM subscribers s
            LEFT JOIN users u ON u.address = s.address
            WHERE s.is_active = 1
        """
        params: List[Any] = []
        if seen_since is not None:
            query += " AND s.last_seen_at IS NOT NULL AND s.last_seen_at >= ?"
            params.append(seen_since)
        query += " ORDER BY s.id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [(row[0], row[1]) for row in rows]
