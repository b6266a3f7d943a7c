"""Tests for the database layer.

Tests CRUD operations for the 6 database tables:
- records
- action_queue
- action_log
- undo_snapshots
- llm_request_log
- agent_state
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from boxzero.core.errors import DatabaseError
from boxzero.core.logging import correlation_scope
from boxzero.db import DatabaseStore, init_database, verify_schema
from boxzero.predictors.types import EnsembleWeights, FinalPrediction, PredictionResult
from boxzero.queue.actions import ActionQueueItem

CREATED = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


@pytest.fixture
def db_path(data_dir: Path) -> Path:
    """Create a test database path."""
    return data_dir / "boxzero.db"


def _queue_item(
    item_id: str = "aq_1",
    confidence: float = 0.6,
    user_id: str = "u1",
    created_at: datetime = CREATED,
    action: str = "archive",
) -> ActionQueueItem:
    prediction = PredictionResult(
        prediction_id=f"pred_{item_id}",
        email_id=f"email-{item_id}",
        user_id=user_id,
        final_prediction=FinalPrediction(
            action=action, confidence=confidence, reasoning="Bayesian: archive", requires_approval=True
        ),
        ensemble_weights=EnsembleWeights(tier1=1.0, tier2=0.0, tier3=0.0),
        timestamp=created_at,
    )
    return ActionQueueItem(
        id=item_id,
        user_id=user_id,
        email_id=prediction.email_id,
        account_id="acct-1",
        email_subject="Weekly digest",
        sender_email="news@shop.example",
        prediction=prediction,
        created_at=created_at,
    )


async def _backdate(db_path: Path, table: str, column: str, value: str) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(f"UPDATE {table} SET {column} = ?", (value,))
        await db.commit()


class TestDatabaseInitialization:
    """Tests for database initialization."""

    @pytest.mark.asyncio
    async def test_init_database_creates_file(self, db_path: Path) -> None:
        """Test that init_database creates the database file."""
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_init_database_enables_wal_mode(self, db_path: Path) -> None:
        """Test that WAL mode is enabled."""
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_init_database_is_idempotent(self, db_path: Path) -> None:
        """Test that initializing twice keeps existing data."""
        store = DatabaseStore(db_path)
        await store.initialize()
        await store.set_state("k", "v")
        await store.initialize()
        assert await store.get_state("k") == "v"

    @pytest.mark.asyncio
    async def test_verify_schema_returns_true_for_valid_db(self, db_path: Path) -> None:
        """Test verify_schema on a freshly initialized database."""
        await init_database(db_path)
        assert await verify_schema(db_path) is True

    @pytest.mark.asyncio
    async def test_verify_schema_returns_false_for_empty_db(self, db_path: Path) -> None:
        """Test verify_schema on a database without tables."""
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE unrelated (id INTEGER)")
            await db.commit()
        assert await verify_schema(db_path) is False


class TestRecordOperations:
    """Tests for the namespaced JSON records behind the Repository."""

    @pytest.mark.asyncio
    async def test_put_and_get_record(self, store: DatabaseStore) -> None:
        await store.put_record("behavior", "sender_models", '{"a": 1}')
        assert await store.get_record("behavior", "sender_models") == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_put_record_replaces(self, store: DatabaseStore) -> None:
        await store.put_record("trust", "profiles", "{}")
        await store.put_record("trust", "profiles", '{"u1": {}}')
        assert await store.get_record("trust", "profiles") == '{"u1": {}}'

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, store: DatabaseStore) -> None:
        await store.put_record("behavior", "x", "1")
        await store.put_record("trust", "y", "2")
        assert await store.get_record("trust", "x") is None
        assert await store.list_record_keys("behavior") == ["x"]


class TestActionQueueOperations:
    """Tests for action queue persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get_item(self, store: DatabaseStore) -> None:
        """Test that a saved item round-trips with its prediction."""
        item = _queue_item()
        await store.save_queue_item(item)

        loaded = await store.get_queue_item("aq_1")
        assert loaded is not None
        assert loaded.status == "pending"
        assert loaded.created_at == CREATED
        assert loaded.prediction.prediction_id == "pred_aq_1"
        assert loaded.prediction.final_prediction == item.prediction.final_prediction

    @pytest.mark.asyncio
    async def test_get_nonexistent_item_returns_none(self, store: DatabaseStore) -> None:
        assert await store.get_queue_item("aq_missing") is None

    @pytest.mark.asyncio
    async def test_save_updates_status_fields(self, store: DatabaseStore) -> None:
        """Test that saving again persists the transition."""
        item = _queue_item()
        await store.save_queue_item(item)

        item.approve(modified_action="delete")
        item.prediction.resolve("modified")
        item.mark_failed("mail store offline")
        await store.save_queue_item(item)

        loaded = await store.get_queue_item("aq_1")
        assert loaded.status == "failed"
        assert loaded.modified_action == "delete"
        assert loaded.error_message == "mail store offline"
        assert loaded.resolved_at is not None
        assert loaded.prediction.user_response == "modified"

    @pytest.mark.asyncio
    async def test_list_orders_by_confidence(self, store: DatabaseStore) -> None:
        for item_id, confidence in [("aq_low", 0.45), ("aq_high", 0.8), ("aq_mid", 0.6)]:
            await store.save_queue_item(_queue_item(item_id, confidence))

        items = await store.list_queue_items(status="pending")
        assert [i.id for i in items] == ["aq_high", "aq_mid", "aq_low"]

    @pytest.mark.asyncio
    async def test_list_filters(self, store: DatabaseStore) -> None:
        await store.save_queue_item(_queue_item("aq_1", user_id="u1"))
        await store.save_queue_item(_queue_item("aq_2", user_id="u2"))
        rejected = _queue_item("aq_3", user_id="u1")
        rejected.reject()
        await store.save_queue_item(rejected)

        assert [i.id for i in await store.list_queue_items(status="pending", user_id="u1")] == ["aq_1"]
        assert [i.id for i in await store.list_queue_items(status="rejected")] == ["aq_3"]
        assert len(await store.list_queue_items(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_pending_items_before_cutoff(self, store: DatabaseStore) -> None:
        await store.save_queue_item(_queue_item("aq_old", created_at=CREATED - timedelta(days=10)))
        await store.save_queue_item(_queue_item("aq_new", created_at=CREATED))
        done = _queue_item("aq_done", created_at=CREATED - timedelta(days=10))
        done.reject()
        await store.save_queue_item(done)

        stale = await store.get_pending_items_before(CREATED - timedelta(days=7))
        assert [i.id for i in stale] == ["aq_old"]

    @pytest.mark.asyncio
    async def test_count_by_status(self, store: DatabaseStore) -> None:
        await store.save_queue_item(_queue_item("aq_1"))
        await store.save_queue_item(_queue_item("aq_2"))
        expired = _queue_item("aq_3")
        expired.expire()
        await store.save_queue_item(expired)

        assert await store.count_queue_items_by_status() == {"pending": 2, "expired": 1}


class TestUndoSnapshotOperations:
    """Tests for pre-action undo snapshots."""

    @pytest.mark.asyncio
    async def test_save_and_get_snapshot(self, store: DatabaseStore) -> None:
        snapshot_id = await store.save_undo_snapshot(
            "msg-1",
            {"thread_id": "t-1", "is_starred": True},
            "archive",
            user_id="u1",
            prediction_id="pred_1",
        )

        snapshots = await store.get_undo_snapshots(email_id="msg-1")
        assert len(snapshots) == 1
        snap = snapshots[0]
        assert snap.id == snapshot_id
        assert snap.action == "archive"
        assert snap.snapshot == {"thread_id": "t-1", "is_starred": True}
        assert snap.expires_at - snap.created_at == timedelta(days=30)
        assert not snap.undone

    @pytest.mark.asyncio
    async def test_mark_undone(self, store: DatabaseStore) -> None:
        snapshot_id = await store.save_undo_snapshot("msg-1", {}, "delete")

        assert await store.mark_snapshot_undone(snapshot_id) is True
        assert await store.mark_snapshot_undone(snapshot_id) is False
        assert await store.get_undo_snapshots() == []
        assert (await store.get_undo_snapshots(include_undone=True))[0].undone

    @pytest.mark.asyncio
    async def test_expired_snapshots_hidden_and_pruned(self, store: DatabaseStore) -> None:
        await store.save_undo_snapshot("msg-old", {}, "archive", retention_days=0)
        await store.save_undo_snapshot("msg-new", {}, "archive")

        assert [s.email_id for s in await store.get_undo_snapshots()] == ["msg-new"]
        assert await store.prune_undo_snapshots() == 1
        assert await store.prune_undo_snapshots() == 0


class TestAgentStateOperations:
    """Tests for key-value state."""

    @pytest.mark.asyncio
    async def test_set_and_get_state(self, store: DatabaseStore) -> None:
        await store.set_state("last_triage_cycle", "2026-03-02T09:30:00+00:00")
        assert await store.get_state("last_triage_cycle") == "2026-03-02T09:30:00+00:00"

    @pytest.mark.asyncio
    async def test_get_nonexistent_state(self, store: DatabaseStore) -> None:
        assert await store.get_state("missing") is None

    @pytest.mark.asyncio
    async def test_update_state(self, store: DatabaseStore) -> None:
        await store.set_state("k", "1")
        await store.set_state("k", "2")
        assert await store.get_state("k") == "2"


class TestLLMLogOperations:
    """Tests for Claude request logging."""

    @pytest.mark.asyncio
    async def test_log_llm_request(self, store: DatabaseStore) -> None:
        log_id = await store.log_llm_request(
            task_type="classify",
            model="claude-haiku-4-5-20251001",
            prompt={"messages": [{"role": "user", "content": "Email:"}]},
            response={"stop_reason": "tool_use"},
            tool_call={"category": "spam"},
            input_tokens=100,
            output_tokens=20,
            duration_ms=350,
            email_id="msg-1",
        )

        logs = await store.get_llm_logs()
        assert logs[0].id == log_id
        assert logs[0].tool_call_json == {"category": "spam"}
        assert logs[0].prompt_json["messages"][0]["role"] == "user"
        assert logs[0].duration_ms == 350
        assert logs[0].triage_cycle_id is None

    @pytest.mark.asyncio
    async def test_cycle_id_recorded_from_context(self, store: DatabaseStore) -> None:
        with correlation_scope("cycle-1"):
            await store.log_llm_request(task_type="classify", model="m", prompt={}, email_id="msg-1")
        await store.log_llm_request(task_type="classify", model="m", prompt={}, email_id="msg-2")

        logs = await store.get_llm_logs(triage_cycle_id="cycle-1")
        assert [log.email_id for log in logs] == ["msg-1"]

    @pytest.mark.asyncio
    async def test_prune_llm_logs(self, store: DatabaseStore) -> None:
        await store.log_llm_request(task_type="classify", model="m", prompt={})
        await _backdate(store.db_path, "llm_request_log", "timestamp", "2000-01-01 00:00:00")
        await store.log_llm_request(task_type="extract_actions", model="m", prompt={})

        assert await store.prune_llm_logs(retention_days=30) == 1
        assert [log.task_type for log in await store.get_llm_logs()] == ["extract_actions"]


class TestActionLogOperations:
    """Tests for the audit trail."""

    @pytest.mark.asyncio
    async def test_log_and_filter_actions(self, store: DatabaseStore) -> None:
        await store.log_action("auto_executed", email_id="msg-1", details={"action": "archive"})
        await store.log_action("rejected", email_id="msg-2", triggered_by="user")

        all_logs = await store.get_action_logs()
        assert [log.action_type for log in all_logs] == ["rejected", "auto_executed"]

        auto = await store.get_action_logs(action_type="auto_executed")
        assert auto[0].details_json == {"action": "archive"}
        assert auto[0].triggered_by == "auto"

        by_email = await store.get_action_logs(email_id="msg-2")
        assert by_email[0].triggered_by == "user"
        assert by_email[0].details_json is None


class TestErrorWrapping:
    """SQLite failures surface as DatabaseError."""

    @pytest.mark.asyncio
    async def test_uninitialized_database_raises(self, db_path: Path) -> None:
        store = DatabaseStore(db_path)
        with pytest.raises(DatabaseError, match="Failed to get state"):
            await store.get_state("anything")
