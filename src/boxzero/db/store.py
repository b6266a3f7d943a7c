"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the BoxZero triage engine. It uses aiosqlite for async access
and returns typed dataclasses.

Usage:
    from boxzero.db.store import DatabaseStore

    store = DatabaseStore("data/boxzero.db")
    await store.initialize()

    # Action queue
    await store.save_queue_item(item)
    pending = await store.list_queue_items(status="pending")

    # Audit trail
    await store.log_action("auto_executed", email_id="abc", details={...})
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from boxzero.core.errors import DatabaseError
from boxzero.core.logging import get_correlation_id, get_logger
from boxzero.db.models import init_database
from boxzero.queue.actions import ActionQueueItem

logger = get_logger(__name__)

# Undo snapshots are kept this long
UNDO_RETENTION_DAYS = 30

# Format of SQLite CURRENT_TIMESTAMP (UTC)
SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _sqlite_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime(SQLITE_TIMESTAMP_FORMAT)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.now(UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _loads(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    email_id: str | None = None
    triage_cycle_id: str | None = None
    prompt_json: dict[str, Any] | None = None
    response_json: dict[str, Any] | None = None
    tool_call_json: dict[str, Any] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime
    action_type: str
    email_id: str | None = None
    details_json: dict[str, Any] | None = None
    triggered_by: str | None = None


@dataclass(frozen=True)
class UndoSnapshot:
    """Pre-action state captured before an auto-execution."""

    id: int
    email_id: str
    created_at: datetime
    expires_at: datetime
    user_id: str | None = None
    action: str | None = None
    prediction_id: str | None = None
    snapshot: dict[str, Any] | None = None
    undone: bool = False


class DatabaseStore:
    """Database store for all BoxZero data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent access from triage + API
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep WAL file size bounded.

        Safe to call periodically (e.g., at the end of each triage cycle).
        """
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Record Operations (Repository backend)
    # =========================================================================

    async def get_record(self, namespace: str, key: str) -> str | None:
        """Get a raw JSON record, or None if absent."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT value_json FROM records WHERE namespace = ? AND key = ?",
                    (namespace, key),
                )
                row = await cursor.fetchone()
                return row["value_json"] if row else None

        except aiosqlite.Error as e:
            logger.error("record_get_failed", namespace=namespace, key=key, error=str(e))
            raise DatabaseError(f"Failed to read record {namespace}/{key}: {e}") from e

    async def put_record(self, namespace: str, key: str, value_json: str) -> None:
        """Insert or replace a raw JSON record."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO records (namespace, key, value_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    (namespace, key, value_json, _sqlite_timestamp(datetime.now(UTC))),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("record_put_failed", namespace=namespace, key=key, error=str(e))
            raise DatabaseError(f"Failed to write record {namespace}/{key}: {e}") from e

    async def list_record_keys(self, namespace: str) -> list[str]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT key FROM records WHERE namespace = ? ORDER BY key",
                    (namespace,),
                )
                return [row["key"] for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("record_keys_failed", namespace=namespace, error=str(e))
            raise DatabaseError(f"Failed to list records in {namespace}: {e}") from e

    # =========================================================================
    # Action Queue Operations
    # =========================================================================

    async def save_queue_item(self, item: ActionQueueItem) -> None:
        """Insert a queue item or update its status fields."""
        final = item.prediction.final_prediction
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO action_queue (
                        id, user_id, email_id, thread_id, account_id,
                        email_subject, sender_email, prediction_id,
                        predicted_action, confidence, status, prediction_json,
                        modified_action, error_message,
                        created_at, resolved_at, executed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        prediction_json = excluded.prediction_json,
                        modified_action = excluded.modified_action,
                        error_message = excluded.error_message,
                        resolved_at = excluded.resolved_at,
                        executed_at = excluded.executed_at
                    """,
                    (
                        item.id,
                        item.user_id,
                        item.email_id,
                        item.thread_id,
                        item.account_id,
                        item.email_subject,
                        item.sender_email,
                        item.prediction.prediction_id,
                        final.action,
                        final.confidence,
                        item.status,
                        json.dumps(item.prediction.to_dict()),
                        item.modified_action,
                        item.error_message,
                        item.created_at.isoformat(),
                        item.resolved_at.isoformat() if item.resolved_at else None,
                        item.executed_at.isoformat() if item.executed_at else None,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("queue_item_save_failed", item_id=item.id, error=str(e))
            raise DatabaseError(f"Failed to save action queue item {item.id}: {e}") from e

    async def get_queue_item(self, item_id: str) -> ActionQueueItem | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM action_queue WHERE id = ?", (item_id,))
                row = await cursor.fetchone()
                return self._row_to_queue_item(row) if row else None

        except aiosqlite.Error as e:
            logger.error("queue_item_get_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to get action queue item {item_id}: {e}") from e

    async def list_queue_items(
        self,
        status: str | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[ActionQueueItem]:
        """List queue items, most confident first.

        Args:
            status: Filter by status
            user_id: Filter by user
            limit: Maximum number of items
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_queue WHERE 1=1"
                params: list[Any] = []

                if status:
                    query += " AND status = ?"
                    params.append(status)

                if user_id:
                    query += " AND user_id = ?"
                    params.append(user_id)

                query += " ORDER BY confidence DESC, created_at ASC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_queue_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("queue_list_failed", status=status, error=str(e))
            raise DatabaseError(f"Failed to list action queue items: {e}") from e

    async def get_pending_items_before(self, cutoff: datetime) -> list[ActionQueueItem]:
        """Pending items created before the cutoff (candidates for expiry)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM action_queue
                    WHERE status = 'pending' AND created_at < ?
                    ORDER BY created_at ASC
                    """,
                    (cutoff.astimezone(UTC).isoformat(),),
                )
                rows = await cursor.fetchall()
                return [self._row_to_queue_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("stale_queue_items_failed", error=str(e))
            raise DatabaseError(f"Failed to get stale action queue items: {e}") from e

    async def count_queue_items_by_status(self) -> dict[str, int]:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT status, COUNT(*) AS n FROM action_queue GROUP BY status")
                return {row["status"]: row["n"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("queue_count_failed", error=str(e))
            raise DatabaseError(f"Failed to count action queue items: {e}") from e

    def _row_to_queue_item(self, row: aiosqlite.Row) -> ActionQueueItem:
        data = {
            "id": row["id"],
            "user_id": row["user_id"],
            "email_id": row["email_id"],
            "thread_id": row["thread_id"],
            "account_id": row["account_id"],
            "email_subject": row["email_subject"],
            "sender_email": row["sender_email"],
            "prediction": json.loads(row["prediction_json"]),
            "status": row["status"],
            "created_at": row["created_at"],
            "resolved_at": row["resolved_at"],
            "executed_at": row["executed_at"],
            "error_message": row["error_message"],
            "modified_action": row["modified_action"],
        }
        return ActionQueueItem.from_dict(data)

    # =========================================================================
    # Undo Snapshot Operations
    # =========================================================================

    async def save_undo_snapshot(
        self,
        email_id: str,
        snapshot: dict[str, Any],
        action: str,
        user_id: str | None = None,
        prediction_id: str | None = None,
        retention_days: int = UNDO_RETENTION_DAYS,
    ) -> int:
        """Capture pre-action state for an email.

        Returns:
            The snapshot ID
        """
        now = datetime.now(UTC)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO undo_snapshots (
                        email_id, user_id, action, prediction_id,
                        snapshot_json, created_at, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email_id,
                        user_id,
                        action,
                        prediction_id,
                        json.dumps(snapshot),
                        _sqlite_timestamp(now),
                        _sqlite_timestamp(now + timedelta(days=retention_days)),
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("undo_snapshot_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to save undo snapshot for email {email_id}: {e}") from e

    async def get_undo_snapshots(
        self,
        email_id: str | None = None,
        include_undone: bool = False,
        limit: int = 100,
    ) -> list[UndoSnapshot]:
        """Unexpired snapshots, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM undo_snapshots WHERE expires_at > ?"
                params: list[Any] = [_sqlite_timestamp(datetime.now(UTC))]

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if not include_undone:
                    query += " AND undone = 0"

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_undo_snapshot(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("undo_snapshots_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get undo snapshots: {e}") from e

    async def mark_snapshot_undone(self, snapshot_id: int) -> bool:
        """Flag a snapshot as used. Returns False if it was already undone or missing."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE undo_snapshots SET undone = 1 WHERE id = ? AND undone = 0",
                    (snapshot_id,),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("undo_snapshot_mark_failed", snapshot_id=snapshot_id, error=str(e))
            raise DatabaseError(f"Failed to mark undo snapshot {snapshot_id}: {e}") from e

    async def prune_undo_snapshots(self) -> int:
        """Delete expired snapshots. Returns number deleted."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM undo_snapshots WHERE expires_at <= ?",
                    (_sqlite_timestamp(datetime.now(UTC)),),
                )
                await db.commit()
                if cursor.rowcount:
                    logger.info("undo_snapshots_pruned", deleted=cursor.rowcount)
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("undo_snapshots_prune_failed", error=str(e))
            raise DatabaseError(f"Failed to prune undo snapshots: {e}") from e

    def _row_to_undo_snapshot(self, row: aiosqlite.Row) -> UndoSnapshot:
        return UndoSnapshot(
            id=row["id"],
            email_id=row["email_id"],
            user_id=row["user_id"],
            action=row["action"],
            prediction_id=row["prediction_id"],
            snapshot=_loads(row["snapshot_json"]),
            created_at=_parse_timestamp(row["created_at"]),
            expires_at=_parse_timestamp(row["expires_at"]),
            undone=bool(row["undone"]),
        )

    # =========================================================================
    # Agent State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("state_get_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _sqlite_timestamp(datetime.now(UTC))),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("state_set_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: Which Tier-3 call ('classify', 'extract_actions')
            model: Model string used
            prompt: The prompt sent to Claude
            response: The response from Claude
            tool_call: Extracted tool input
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            email_id: Associated email ID
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, email_id, triage_cycle_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        email_id,
                        get_correlation_id(),
                        json.dumps(prompt),
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("llm_log_write_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        email_id: str | None = None,
        triage_cycle_id: str | None = None,
    ) -> list[LLMLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if triage_cycle_id:
                    query += " AND triage_cycle_id = ?"
                    params.append(triage_cycle_id)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_llm_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("llm_logs_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period."""
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (_sqlite_timestamp(cutoff),),
                )
                await db.commit()

                if cursor.rowcount:
                    logger.info("llm_logs_pruned", deleted=cursor.rowcount, retention_days=retention_days)
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("llm_logs_prune_failed", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_timestamp(row["timestamp"]),
            task_type=row["task_type"],
            model=row["model"],
            email_id=row["email_id"],
            triage_cycle_id=row["triage_cycle_id"],
            prompt_json=_loads(row["prompt_json"]),
            response_json=_loads(row["response_json"]),
            tool_call_json=_loads(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def log_action(
        self,
        action_type: str,
        email_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "auto",
    ) -> int:
        """Log an engine action for the audit trail.

        Args:
            action_type: 'auto_executed', 'approved', 'modified', 'rejected',
                'executed', 'failed', 'expired'
            email_id: Associated email ID
            details: Prediction ID, confidence, action and the like
            triggered_by: 'auto' or 'user'

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        action_type, email_id, details_json, triggered_by
                    ) VALUES (?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        email_id,
                        json.dumps(details) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("action_log_write_failed", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self,
        limit: int = 100,
        email_id: str | None = None,
        action_type: str | None = None,
    ) -> list[ActionLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("action_logs_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        return ActionLogEntry(
            id=row["id"],
            timestamp=_parse_timestamp(row["timestamp"]),
            action_type=row["action_type"],
            email_id=row["email_id"],
            details_json=_loads(row["details_json"]),
            triggered_by=row["triggered_by"],
        )
