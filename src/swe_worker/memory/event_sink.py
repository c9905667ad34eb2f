from __future__ import annotations

import asyncio
import json
from uuid import uuid4

from swe_worker.memory.store import MemoryStore, utc_now


class AsyncEventSink:
    """Batches published events into the SQLite ``events`` table."""

    def __init__(self, store: MemoryStore, *, batch_size: int = 50, flush_interval_seconds: float = 0.5):
        self._store = store
        self._batch_size = max(1, batch_size)
        self._flush_interval_seconds = max(0.05, flush_interval_seconds)
        self._queue: asyncio.Queue[tuple[str, str, dict]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def publish(self, topic: str, event: dict) -> None:
        if self._closed:
            return
        self._queue.put_nowait((topic, str(event.get("type", "unknown")), event))

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def flush(self) -> None:
        while not self._queue.empty():
            await self._flush_once()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            await self._flush_once()

    async def _flush_once(self) -> None:
        items: list[tuple[str, str, dict]] = []
        while len(items) < self._batch_size and not self._queue.empty():
            items.append(self._queue.get_nowait())
        if not items:
            return

        now = utc_now()
        params = [
            (str(uuid4()), topic, event_type, json.dumps(payload, ensure_ascii=True), now)
            for topic, event_type, payload in items
        ]
        with self._store.transaction():
            self._store.executemany(
                """
                INSERT INTO events (id, topic, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                params,
            )

    def read_topic(self, topic: str) -> list[dict]:
        rows = self._store.execute(
            "SELECT payload_json FROM events WHERE topic = ? ORDER BY created_at ASC, rowid ASC",
            (topic,),
        ).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]
