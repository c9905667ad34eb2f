from __future__ import annotations

import json
from typing import Any

from swe_worker.memory.store import MemoryStore, utc_now


class MetadataStore:
    """Per-session JSON values keyed by name (todo list, cloned repository, ...)."""

    def __init__(self, store: MemoryStore):
        self._store = store

    async def get(self, session_id: str, key: str) -> Any | None:
        row = self._store.execute(
            "SELECT value_json FROM metadata WHERE session_id = ? AND key = ? LIMIT 1",
            (session_id, key),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    async def put(self, session_id: str, key: str, value: Any) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO metadata (session_id, key, value_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (session_id, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (session_id, key, json.dumps(value, ensure_ascii=True), utc_now()),
            )
