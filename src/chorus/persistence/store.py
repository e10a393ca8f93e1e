"""Durable store contract and an in-memory implementation.

The orchestrator treats storage as a generic keyed store with at most
read-your-writes consistency per key. No transaction spans two calls.
"""

import asyncio
from copy import deepcopy
from pathlib import Path
from typing import Any, Protocol

import orjson

from chorus.telemetry import get_logger

log = get_logger(__name__)

SESSIONS = "sessions"
TURNS = "turns"
PROVIDER_RESPONSES = "provider_responses"

COLLECTIONS = (SESSIONS, TURNS, PROVIDER_RESPONSES)


class DurableStore(Protocol):
    """Keyed record store used by the continuity layer.

    Records are plain JSON-compatible dicts with an ``id`` field.
    """

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record or None."""
        ...

    async def put(self, collection: str, record: dict[str, Any]) -> None:
        """Insert or replace one record by its ``id``."""
        ...

    async def get_responses_by_turn_id(self, turn_id: str) -> list[dict[str, Any]]:
        """All provider responses recorded for an AI turn."""
        ...

    async def get_turns_by_session_id(self, session_id: str) -> list[dict[str, Any]]:
        """All turns (user and AI) of a session in insertion order."""
        ...


class InMemoryStore:
    """Dict-backed DurableStore.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store. Supports JSON snapshots for local runs.
    """

    def __init__(self) -> None:
        """Initialize empty collections."""
        self._data: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record or None."""
        record = self._data.get(collection, {}).get(record_id)
        return deepcopy(record) if record is not None else None

    async def put(self, collection: str, record: dict[str, Any]) -> None:
        """Insert or replace one record by its ``id``.

        Raises:
            ValueError: If the record has no ``id``.
        """
        record_id = record.get("id")
        if not record_id:
            raise ValueError(f"Record for {collection} has no id")
        async with self._lock:
            self._data.setdefault(collection, {})[record_id] = deepcopy(record)

    async def get_responses_by_turn_id(self, turn_id: str) -> list[dict[str, Any]]:
        """All provider responses recorded for an AI turn."""
        return [
            deepcopy(r)
            for r in self._data[PROVIDER_RESPONSES].values()
            if r.get("ai_turn_id") == turn_id
        ]

    async def get_turns_by_session_id(self, session_id: str) -> list[dict[str, Any]]:
        """All turns of a session in insertion order."""
        return [deepcopy(t) for t in self._data[TURNS].values() if t.get("session_id") == session_id]

    def dump(self, path: Path) -> None:
        """Write a JSON snapshot of every collection.

        Args:
            path: Destination file.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(self._data, option=orjson.OPT_INDENT_2))
        log.info("store_snapshot_written", path=str(path), sessions=len(self._data[SESSIONS]))

    @classmethod
    def load(cls, path: Path) -> "InMemoryStore":
        """Restore a store from a snapshot written by ``dump``.

        Args:
            path: Snapshot file.

        Returns:
            Populated store.
        """
        store = cls()
        data = orjson.loads(path.read_bytes())
        for name in COLLECTIONS:
            store._data[name] = dict(data.get(name, {}))
        return store
