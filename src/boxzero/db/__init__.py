"""Database layer for the BoxZero triage engine.

This module provides SQLite database access with async operations.

Usage:
    from boxzero.db import DatabaseStore, SqliteRepository

    store = DatabaseStore("data/boxzero.db")
    await store.initialize()

    await store.save_queue_item(item)
    repo = SqliteRepository(store, namespace="behavior")
"""

from boxzero.db.models import SCHEMA_VERSION, init_database, verify_schema
from boxzero.db.repository import InMemoryRepository, Repository, SqliteRepository
from boxzero.db.store import ActionLogEntry, DatabaseStore, LLMLogEntry, UndoSnapshot

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Repository
    "InMemoryRepository",
    "Repository",
    "SqliteRepository",
    # Dataclasses
    "ActionLogEntry",
    "LLMLogEntry",
    "UndoSnapshot",
]
