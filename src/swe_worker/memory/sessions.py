from __future__ import annotations

from typing import Protocol, runtime_checkable

from loguru import logger

from swe_worker.model_catalog import ModelConfig
from swe_worker.memory.store import MemoryStore, utc_now
from swe_worker.models import AgentStatus, InstanceStatus, Session, Usage


@runtime_checkable
class SessionStore(Protocol):
    async def get(self, session_id: str) -> Session: ...

    async def update_status(self, session_id: str, status: AgentStatus) -> None: ...

    async def update_instance_status(self, session_id: str, status: InstanceStatus) -> None: ...

    async def update_title(self, session_id: str, title: str) -> None: ...

    async def add_usage(self, session_id: str, model: ModelConfig, usage: Usage) -> None: ...


class SqliteSessionStore:
    def __init__(self, store: MemoryStore):
        self._store = store

    async def create(self, session_id: str, *, default_model: str | None = None) -> Session:
        now = utc_now()
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO sessions (id, created_at, updated_at, agent_status, instance_status, default_model)
                VALUES (?, ?, ?, 'pending', 'starting', ?)
                """,
                (session_id, now, now, default_model),
            )
        logger.info(f"Created session {session_id}")
        return await self.get(session_id)

    async def load_or_create(self, session_id: str, *, default_model: str | None = None) -> Session:
        if self._find(session_id) is not None:
            return await self.get(session_id)
        return await self.create(session_id, default_model=default_model)

    async def get(self, session_id: str) -> Session:
        session = self._find(session_id)
        if session is None:
            raise KeyError(f"Session does not exist: {session_id}")
        return session

    async def update_status(self, session_id: str, status: AgentStatus) -> None:
        self._update(session_id, "agent_status", status)

    async def update_instance_status(self, session_id: str, status: InstanceStatus) -> None:
        self._update(session_id, "instance_status", status)

    async def update_title(self, session_id: str, title: str) -> None:
        self._update(session_id, "title", title)

    async def add_usage(self, session_id: str, model: ModelConfig, usage: Usage) -> None:
        cost = model.cost(usage)
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO token_usage (
                    session_id, model, input_tokens, output_tokens,
                    cache_read_input_tokens, cache_write_input_tokens
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (session_id, model) DO UPDATE SET
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens,
                    cache_read_input_tokens = cache_read_input_tokens + excluded.cache_read_input_tokens,
                    cache_write_input_tokens = cache_write_input_tokens + excluded.cache_write_input_tokens
                """,
                (
                    session_id,
                    model.key,
                    usage.input_tokens,
                    usage.output_tokens,
                    usage.cache_read_input_tokens,
                    usage.cache_write_input_tokens,
                ),
            )
            self._store.execute(
                "UPDATE sessions SET session_cost = session_cost + ?, updated_at = ? WHERE id = ?",
                (cost, utc_now(), session_id),
            )
        logger.debug(f"Session {session_id} usage on {model.key}: +${cost:.4f}")

    def token_usage(self, session_id: str) -> dict[str, Usage]:
        rows = self._store.execute(
            "SELECT * FROM token_usage WHERE session_id = ? ORDER BY model",
            (session_id,),
        ).fetchall()
        return {
            row["model"]: Usage(
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cache_read_input_tokens=row["cache_read_input_tokens"],
                cache_write_input_tokens=row["cache_write_input_tokens"],
            )
            for row in rows
        }

    def _find(self, session_id: str) -> Session | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return Session(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            agent_status=row["agent_status"],
            instance_status=row["instance_status"],
            title=row["title"],
            default_model=row["default_model"],
            session_cost=float(row["session_cost"]),
        )

    def _update(self, session_id: str, column: str, value: str) -> None:
        with self._store.transaction():
            cursor = self._store.execute(
                f"UPDATE sessions SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, utc_now(), session_id),
            )
        if cursor.rowcount == 0:
            raise KeyError(f"Session does not exist: {session_id}")
