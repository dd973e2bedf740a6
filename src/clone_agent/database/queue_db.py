"""
Postgres Buffer Store - message_queue table operations.

Every state change is a single conditional UPDATE (or a short transaction
holding the row lock), so concurrent workers in different processes cannot
both win a claim, a delivery lease or a send slot:

- claim: UPDATE ... WHERE status/lease still eligible; "UPDATE 1" means won
- complete/fail: SELECT ... FOR UPDATE, validate, UPDATE, carry late items
- schedule: partial unique index on scheduled_minute rejects a taken minute
- mark_sent: UPDATE ... WHERE sent_at IS NULL, idempotent on replay

Times come from the injected clock rather than NOW() so every worker and the
in-memory store agree on what "now" means.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from clone_agent.core.errors import EntryNotFound, InvalidState, QueueError, SlotTaken
from clone_agent.core.models import (
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    ConversationKey,
    InboundItem,
    Lease,
    QueueEntry,
    QueueStatus,
    check_transition,
)
from clone_agent.database.pool import get_connection
from clone_agent.temporal.buffer_store import (
    DEFAULT_LEASE_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    MAX_ERROR_LENGTH,
    BufferStore,
    minute_key,
    new_entry_id,
)
from clone_agent.temporal.clock import OperatingClock

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_CLAIMABLE = [s.value for s in CLAIMABLE_STATUSES] + [QueueStatus.PROCESSING.value]

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _uuid(entry_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(entry_id)
    except (ValueError, TypeError, AttributeError):
        raise EntryNotFound(entry_id)

def _item_json(item: InboundItem) -> dict:
    return item.model_dump(mode="json")

def _row_to_entry(row: asyncpg.Record) -> QueueEntry:
    """
    Convert a message_queue row to a QueueEntry.

    Args:
        row: Database record from asyncpg.

    Returns:
        QueueEntry: Pydantic model instance.
    """
    result = dict(row)

    payload = result["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)

    lease = None
    if result.get("lease_owner"):
        lease = Lease(owner_id=result["lease_owner"], acquired_at=result["lease_acquired_at"])

    return QueueEntry(
        id=str(result["id"]),
        conversation_key=ConversationKey(
            endpoint_id=result["endpoint_id"],
            counterpart=result["counterpart"],
            is_group=result["is_group"],
        ),
        payload=[InboundItem(**item) for item in payload],
        status=QueueStatus(result["status"]),
        window_end=result["window_end"],
        window_seconds=result["window_seconds"],
        lease=lease,
        retry_count=result["retry_count"],
        last_error=result["last_error"],
        consumed_count=result["consumed_count"],
        reply=result["reply"],
        scheduled_send_at=result["scheduled_send_at"],
        sent_at=result["sent_at"],
        delivery_owner=result["delivery_owner"],
        delivery_started_at=result["delivery_started_at"],
        created_at=result["created_at"],
        updated_at=result["updated_at"],
    )

class PostgresBufferStore(BufferStore):
    """
    BufferStore backed by the message_queue table.

    Safe to share between any number of worker processes pointing at the
    same database.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        lease_timeout: timedelta = DEFAULT_LEASE_TIMEOUT,
        clock: Optional[OperatingClock] = None,
    ):
        super().__init__(max_retries=max_retries, lease_timeout=lease_timeout, clock=clock)

    async def _missing_or_invalid(
        self, conn: asyncpg.Connection, entry_id: str, message: str
    ) -> QueueError:
        status = await conn.fetchval(
            "SELECT status FROM message_queue WHERE id = $1", _uuid(entry_id)
        )
        if status is None:
            return EntryNotFound(entry_id)
        return InvalidState(f"{message} (status {status})")

    async def _insert_entry(
        self,
        conn: asyncpg.Connection,
        key: ConversationKey,
        window_seconds: int,
        now: datetime,
        payload: Optional[list[dict]] = None,
    ) -> Optional[asyncpg.Record]:
        return await conn.fetchrow(
            """
            INSERT INTO message_queue (
                id, conversation_key, endpoint_id, counterpart, is_group,
                payload, window_end, window_seconds, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $9)
            ON CONFLICT (conversation_key)
                WHERE status IN ('collecting', 'ready', 'processing')
            DO NOTHING
            RETURNING *
            """,
            uuid.UUID(new_entry_id()),
            key.as_string(),
            key.endpoint_id,
            key.counterpart,
            key.is_group,
            payload or [],
            now + timedelta(seconds=window_seconds),
            window_seconds,
            now,
        )

    async def _release_active(
        self, conn: asyncpg.Connection, entry: QueueEntry, now: datetime
    ) -> None:
        """Move payload items past consumed_count into a fresh collecting entry."""
        late = entry.payload[entry.consumed_count:]
        if not late:
            return

        await conn.execute(
            """
            UPDATE message_queue
            SET payload = $2, updated_at = $3
            WHERE id = $1
            """,
            _uuid(entry.id),
            [_item_json(i) for i in entry.payload[:entry.consumed_count]],
            now,
        )
        row = await self._insert_entry(
            conn,
            entry.conversation_key,
            entry.window_seconds,
            now,
            payload=[_item_json(i) for i in late],
        )
        if row is None:
            raise InvalidState(
                f"Another active entry exists for {entry.conversation_key.as_string()}"
            )
        logger.info(f"Carried {len(late)} late item(s) from {entry.short_id()} into {str(row['id'])[:8]}")

    async def _locked_entry(self, conn: asyncpg.Connection, entry_id: str) -> QueueEntry:
        row = await conn.fetchrow(
            "SELECT * FROM message_queue WHERE id = $1 FOR UPDATE", _uuid(entry_id)
        )
        if row is None:
            raise EntryNotFound(entry_id)
        return _row_to_entry(row)

    @staticmethod
    def _lease_owner_check(entry: QueueEntry, owner_id: Optional[str]) -> None:
        if owner_id is not None and (entry.lease is None or entry.lease.owner_id != owner_id):
            raise InvalidState(f"Entry {entry.id} is no longer leased by {owner_id}")

    # =========================================================================
    # COLLECTION
    # =========================================================================

    async def get_or_create_active(
        self, key: ConversationKey, window_seconds: int
    ) -> QueueEntry:
        async with get_connection() as conn:
            for _ in range(3):
                row = await conn.fetchrow(
                    """
                    SELECT * FROM message_queue
                    WHERE conversation_key = $1 AND status = ANY($2::text[])
                    """,
                    key.as_string(),
                    _ACTIVE,
                )
                if row:
                    return _row_to_entry(row)

                row = await self._insert_entry(conn, key, window_seconds, self.clock.now())
                if row:
                    return _row_to_entry(row)

        raise InvalidState(f"Could not open an entry for {key.as_string()}")

    async def append(self, entry_id: str, item: InboundItem) -> QueueEntry:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE message_queue
                SET payload = payload || $2::jsonb, updated_at = $3
                WHERE id = $1 AND status = ANY($4::text[])
                RETURNING *
                """,
                _uuid(entry_id),
                [_item_json(item)],
                self.clock.now(),
                _ACTIVE,
            )
            if row is None:
                raise await self._missing_or_invalid(conn, entry_id, f"Cannot append to entry {entry_id}")
            return _row_to_entry(row)

    # =========================================================================
    # PROCESSING
    # =========================================================================

    async def list_due(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        now = now or self.clock.now()
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM message_queue
                WHERE window_end <= $1
                  AND status = ANY($2::text[])
                  AND (lease_acquired_at IS NULL OR lease_acquired_at <= $3)
                ORDER BY window_end ASC
                LIMIT $4
                """,
                now,
                _CLAIMABLE,
                now - self.lease_timeout,
                limit,
            )
            return [_row_to_entry(row) for row in rows]

    async def claim(self, entry_id: str, owner_id: str) -> bool:
        now = self.clock.now()
        async with get_connection() as conn:
            result = await conn.execute(
                """
                UPDATE message_queue
                SET status = 'processing',
                    lease_owner = $2,
                    lease_acquired_at = $3,
                    consumed_count = jsonb_array_length(payload),
                    updated_at = $3
                WHERE id = $1
                  AND window_end <= $3
                  AND status = ANY($4::text[])
                  AND (lease_acquired_at IS NULL OR lease_acquired_at <= $5)
                """,
                _uuid(entry_id),
                owner_id,
                now,
                _CLAIMABLE,
                now - self.lease_timeout,
            )
            return result == "UPDATE 1"

    async def complete(
        self, entry_id: str, reply: str, owner_id: Optional[str] = None
    ) -> QueueEntry:
        now = self.clock.now()
        async with get_connection() as conn:
            async with conn.transaction():
                entry = await self._locked_entry(conn, entry_id)
                if entry.reply is not None:
                    raise InvalidState(f"Entry {entry_id} already has a reply")
                check_transition(entry.status, QueueStatus.COMPLETED)
                self._lease_owner_check(entry, owner_id)

                row = await conn.fetchrow(
                    """
                    UPDATE message_queue
                    SET status = 'completed',
                        reply = $2,
                        lease_owner = NULL,
                        lease_acquired_at = NULL,
                        updated_at = $3
                    WHERE id = $1
                    RETURNING *
                    """,
                    _uuid(entry_id),
                    reply,
                    now,
                )
                await self._release_active(conn, entry, now)

            completed = _row_to_entry(row)
            completed.payload = entry.payload[:entry.consumed_count]
            return completed

    async def fail(
        self,
        entry_id: str,
        reason: str,
        permanent: bool = False,
        owner_id: Optional[str] = None,
    ) -> QueueEntry:
        now = self.clock.now()
        async with get_connection() as conn:
            async with conn.transaction():
                entry = await self._locked_entry(conn, entry_id)
                self._lease_owner_check(entry, owner_id)

                retry_count = entry.retry_count + 1
                target = (
                    QueueStatus.FAILED
                    if permanent or retry_count >= self.max_retries
                    else QueueStatus.READY
                )
                check_transition(entry.status, target)

                row = await conn.fetchrow(
                    """
                    UPDATE message_queue
                    SET status = $2,
                        retry_count = $3,
                        last_error = $4,
                        lease_owner = NULL,
                        lease_acquired_at = NULL,
                        updated_at = $5
                    WHERE id = $1
                    RETURNING *
                    """,
                    _uuid(entry_id),
                    target.value,
                    retry_count,
                    (reason or "")[:MAX_ERROR_LENGTH],
                    now,
                )
                if target == QueueStatus.FAILED:
                    await self._release_active(conn, entry, now)
                    row = await conn.fetchrow(
                        "SELECT * FROM message_queue WHERE id = $1", _uuid(entry_id)
                    )

            return _row_to_entry(row)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def schedule(self, entry_id: str, send_at: datetime) -> QueueEntry:
        async with get_connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    UPDATE message_queue
                    SET scheduled_send_at = $2,
                        scheduled_minute = $3,
                        updated_at = $4
                    WHERE id = $1 AND status = 'completed' AND sent_at IS NULL
                    RETURNING *
                    """,
                    _uuid(entry_id),
                    send_at,
                    minute_key(send_at),
                    self.clock.now(),
                )
            except asyncpg.UniqueViolationError:
                raise SlotTaken(minute_key(send_at))

            if row is None:
                raise await self._missing_or_invalid(conn, entry_id, f"Cannot schedule entry {entry_id}")
            return _row_to_entry(row)

    async def occupied_send_times(self) -> list[datetime]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT scheduled_send_at FROM message_queue
                WHERE sent_at IS NULL AND scheduled_send_at IS NOT NULL
                ORDER BY scheduled_send_at ASC
                """
            )
            return [row["scheduled_send_at"] for row in rows]

    async def list_unscheduled(self, limit: int = 50) -> list[QueueEntry]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM message_queue
                WHERE status = 'completed'
                  AND scheduled_send_at IS NULL
                  AND sent_at IS NULL
                ORDER BY updated_at ASC
                LIMIT $1
                """,
                limit,
            )
            return [_row_to_entry(row) for row in rows]

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def list_sendable(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        now = now or self.clock.now()
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM message_queue
                WHERE status = 'completed'
                  AND sent_at IS NULL
                  AND scheduled_send_at <= $1
                  AND (delivery_owner IS NULL OR delivery_started_at <= $2)
                ORDER BY scheduled_send_at ASC
                LIMIT $3
                """,
                now,
                now - self.lease_timeout,
                limit,
            )
            return [_row_to_entry(row) for row in rows]

    async def claim_delivery(self, entry_id: str, owner_id: str) -> bool:
        now = self.clock.now()
        async with get_connection() as conn:
            result = await conn.execute(
                """
                UPDATE message_queue
                SET delivery_owner = $2, delivery_started_at = $3
                WHERE id = $1
                  AND status = 'completed'
                  AND sent_at IS NULL
                  AND scheduled_send_at <= $3
                  AND (delivery_owner IS NULL OR delivery_started_at <= $4)
                """,
                _uuid(entry_id),
                owner_id,
                now,
                now - self.lease_timeout,
            )
            return result == "UPDATE 1"

    async def release_delivery(self, entry_id: str, owner_id: str) -> None:
        async with get_connection() as conn:
            await conn.execute(
                """
                UPDATE message_queue
                SET delivery_owner = NULL, delivery_started_at = NULL
                WHERE id = $1 AND delivery_owner = $2
                """,
                _uuid(entry_id),
                owner_id,
            )

    async def mark_sent(self, entry_id: str) -> QueueEntry:
        now = self.clock.now()
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE message_queue
                SET status = 'sent',
                    sent_at = $2,
                    delivery_owner = NULL,
                    delivery_started_at = NULL,
                    updated_at = $2
                WHERE id = $1
                  AND status = 'completed'
                  AND sent_at IS NULL
                  AND scheduled_send_at <= $2
                RETURNING *
                """,
                _uuid(entry_id),
                now,
            )
            if row is not None:
                return _row_to_entry(row)

            current = await conn.fetchrow("SELECT * FROM message_queue WHERE id = $1", _uuid(entry_id))
            if current is None:
                raise EntryNotFound(entry_id)
            if current["sent_at"] is not None:
                return _row_to_entry(current)
            raise InvalidState(f"Entry {entry_id} is not due for sending yet")

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        try:
            key = _uuid(entry_id)
        except EntryNotFound:
            return None
        async with get_connection() as conn:
            row = await conn.fetchrow("SELECT * FROM message_queue WHERE id = $1", key)
            return _row_to_entry(row) if row else None

    async def count_by_status(self) -> dict[str, int]:
        """Entry counts per status, for the daemon status table."""
        async with get_connection() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM message_queue GROUP BY status"
            )
            return {row["status"]: row["n"] for row in rows}
