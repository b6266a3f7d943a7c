"""Key-value repository interface for persisted engine state.

Sender models, behavior events and trust profiles are saved as JSON
documents under string keys. The prediction logic only ever talks to the
Repository protocol, so the backend can be swapped freely.

Usage:
    from boxzero.db.repository import InMemoryRepository, SqliteRepository

    repo = SqliteRepository(store, namespace="behavior")
    await repo.save("sender_models", {"sender_a_example_com": {...}})
    data = await repo.load("sender_models")
"""

from __future__ import annotations

import copy
import json
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from boxzero.db.store import DatabaseStore


@runtime_checkable
class Repository(Protocol):
    """Async key-value store of JSON-serializable values."""

    async def load(self, key: str) -> Any | None:
        """Return the value stored under key, or None if absent."""
        ...

    async def save(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        ...

    async def keys(self) -> list[str]:
        """Return every stored key."""
        ...


class InMemoryRepository:
    """Repository backed by a dict. Values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def load(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteRepository:
    """Repository backed by the `records` table of a DatabaseStore.

    Attributes:
        namespace: Logical partition inside the records table
    """

    def __init__(self, store: DatabaseStore, namespace: str):
        self._store = store
        self.namespace = namespace

    async def load(self, key: str) -> Any | None:
        raw = await self._store.get_record(self.namespace, key)
        if raw is None:
            return None
        return json.loads(raw)

    async def save(self, key: str, value: Any) -> None:
        await self._store.put_record(self.namespace, key, json.dumps(value))

    async def keys(self) -> list[str]:
        return await self._store.list_record_keys(self.namespace)
