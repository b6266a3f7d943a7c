"""SQLite database schema and initialization for the BoxZero triage engine.

This module defines the database schema with 6 tables:
- records: Namespaced JSON documents behind the Repository interface
- action_queue: Predictions awaiting or having received human review
- action_log: Audit trail of auto-executions and resolutions
- undo_snapshots: Pre-action state captured before any auto-execution
- llm_request_log: Claude API call logging for debugging
- agent_state: Key-value state persistence

Usage:
    from boxzero.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/boxzero.db")
"""

import stat
from pathlib import Path

import aiosqlite

from boxzero.core.errors import DatabaseError
from boxzero.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "records",
    "action_queue",
    "action_log",
    "undo_snapshots",
    "llm_request_log",
    "agent_state",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- JSON documents (sender models, behavior events, trust profiles)
CREATE TABLE IF NOT EXISTS records (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value_json TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (namespace, key)
);

-- Predictions held for human review
CREATE TABLE IF NOT EXISTS action_queue (
    id TEXT PRIMARY KEY,                    -- 'aq_' + random hex
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    thread_id TEXT,
    account_id TEXT,
    email_subject TEXT,
    sender_email TEXT,
    prediction_id TEXT,
    predicted_action TEXT,                  -- finalPrediction.action
    confidence REAL,                        -- finalPrediction.confidence
    status TEXT DEFAULT 'pending',          -- 'pending', 'approved', 'rejected',
                                            -- 'executed', 'failed', 'expired'
    prediction_json TEXT,                   -- Full PredictionResult
    modified_action TEXT,                   -- Set when the user changed the action
    error_message TEXT,                     -- Set when status = 'failed'
    created_at DATETIME,
    resolved_at DATETIME,
    executed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_action_queue_status ON action_queue(status);
CREATE INDEX IF NOT EXISTS idx_action_queue_user_status ON action_queue(user_id, status);
CREATE INDEX IF NOT EXISTS idx_action_queue_email ON action_queue(email_id);

-- State captured before an auto-executed action, for undo
CREATE TABLE IF NOT EXISTS undo_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id TEXT NOT NULL,
    user_id TEXT,
    action TEXT,                            -- Action about to be executed
    prediction_id TEXT,
    snapshot_json TEXT,                     -- Pre-action state
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    expires_at DATETIME,
    undone INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_undo_snapshots_email ON undo_snapshots(email_id);
CREATE INDEX IF NOT EXISTS idx_undo_snapshots_expires ON undo_snapshots(expires_at);

-- Agent state persistence (last cycle timestamp, counters)
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- LLM request/response log for debugging Tier-3 predictions
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'classify', 'extract_actions'
    model TEXT,
    email_id TEXT,
    triage_cycle_id TEXT,                   -- Correlation ID for the cycle or batch
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success, error message on failure
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_email ON llm_request_log(email_id);
CREATE INDEX IF NOT EXISTS idx_llm_log_triage_cycle ON llm_request_log(triage_cycle_id);

-- Audit log of everything the engine did
CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'auto_executed', 'approved', 'rejected', 'expired', ...
    email_id TEXT,
    details_json TEXT,                      -- Prediction ID, confidence, action
    triggered_by TEXT                       -- 'auto', 'user'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_email ON action_log(email_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode and
    creates all tables and indexes.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning("wal_mode_not_enabled", actual=mode[0], db_path=str(db_path))

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only: the queue holds subjects and sender addresses
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("database_tables_missing", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
