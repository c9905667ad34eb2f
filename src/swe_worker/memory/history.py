from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from loguru import logger

from swe_worker.content import (
    ContentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    blocks_from_json,
    blocks_to_json,
)
from swe_worker.errors import HistoryError
from swe_worker.memory.blobs import BlobStore, image_key
from swe_worker.memory.store import MemoryStore
from swe_worker.models import ConversationItem, Message

_KEY_WIDTH = 15


@runtime_checkable
class HistoryStore(Protocol):
    async def append(self, item: ConversationItem) -> None: ...

    async def append_pair(self, first: ConversationItem, second: ConversationItem) -> None: ...

    async def read_all_ordered(self, session_id: str) -> list[ConversationItem]: ...

    async def update_token_count(self, session_id: str, key: str, count: int) -> None: ...


class SequenceKeys:
    """Lexicographically sortable item keys derived from the wall clock (ms).

    Keys are zero-padded so string order equals numeric order. A pair of keys
    is ``now`` and ``now + 1``; a key never repeats within one process.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0

    def next(self, count: int = 1) -> list[str]:
        start = max(int(self._clock() * 1000), self._last + 1)
        self._last = start + count - 1
        return [str(start + i).zfill(_KEY_WIDTH) for i in range(count)]


class SqliteHistoryStore:
    def __init__(self, store: MemoryStore, blobs: BlobStore):
        self._store = store
        self._blobs = blobs

    async def append(self, item: ConversationItem) -> None:
        try:
            with self._store.transaction():
                self._insert(item)
        except Exception as ex:
            raise HistoryError(f"Failed to append item {item.key} for session {item.session_id}: {ex}") from ex

    async def append_pair(self, first: ConversationItem, second: ConversationItem) -> None:
        try:
            with self._store.transaction():
                self._insert(first)
                self._insert(second)
        except Exception as ex:
            raise HistoryError(
                f"Failed to append items {first.key}/{second.key} for session {first.session_id}: {ex}"
            ) from ex

    async def read_all_ordered(self, session_id: str) -> list[ConversationItem]:
        rows = self._store.execute(
            """
            SELECT session_id, sk, role, kind, content_json, token_count, model_override, thinking_budget
            FROM items
            WHERE session_id = ?
            ORDER BY sk ASC
            """,
            (session_id,),
        ).fetchall()
        return [
            ConversationItem(
                session_id=row["session_id"],
                key=row["sk"],
                role=row["role"],
                kind=row["kind"],
                content=blocks_from_json(json.loads(row["content_json"])),
                token_count=int(row["token_count"]),
                model_override=row["model_override"],
                thinking_budget=row["thinking_budget"],
            )
            for row in rows
        ]

    async def update_token_count(self, session_id: str, key: str, count: int) -> None:
        with self._store.transaction():
            cursor = self._store.execute(
                "UPDATE items SET token_count = ? WHERE session_id = ? AND sk = ?",
                (count, session_id, key),
            )
        if cursor.rowcount == 0:
            raise HistoryError(f"Message not found: {session_id}/{key}")

    def _insert(self, item: ConversationItem) -> None:
        content = park_images(item.session_id, item.content, self._blobs)
        self._store.execute(
            """
            INSERT INTO items (session_id, sk, role, kind, content_json, token_count, model_override, thinking_budget)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.session_id,
                item.key,
                item.role,
                item.kind,
                json.dumps(blocks_to_json(content), ensure_ascii=True),
                item.token_count,
                item.model_override,
                item.thinking_budget,
            ),
        )


def park_images(session_id: str, blocks: list[ContentBlock], blobs: BlobStore) -> list[ContentBlock]:
    """Move image bytes into the blob store, leaving references behind."""
    out: list[ContentBlock] = []
    for block in blocks:
        if isinstance(block, ImageBlock):
            out.append(_park(session_id, block, blobs))
        elif isinstance(block, ToolResultBlock):
            content = [_park(session_id, c, blobs) if isinstance(c, ImageBlock) else c for c in block.content]
            out.append(ToolResultBlock(tool_use_id=block.tool_use_id, content=content, is_error=block.is_error))
        else:
            out.append(block)
    return out


def _park(session_id: str, block: ImageBlock, blobs: BlobStore) -> ImageBlock:
    if block.data is None:
        return block
    key = block.ref or image_key(session_id, block.data, block.format)
    blobs.put(key, block.data)
    return ImageBlock(media_type=block.media_type, ref=key)


def _restore(block: ImageBlock, blobs: BlobStore) -> ImageBlock:
    if block.data is not None or block.ref is None:
        return block
    try:
        data = blobs.get(block.ref)
    except (OSError, KeyError) as ex:
        logger.warning(f"Image blob {block.ref} could not be loaded: {ex}")
        return block
    return ImageBlock(media_type=block.media_type, data=data, ref=block.ref)


def restore_images(blocks: list[ContentBlock], blobs: BlobStore) -> list[ContentBlock]:
    out: list[ContentBlock] = []
    for block in blocks:
        if isinstance(block, ImageBlock):
            out.append(_restore(block, blobs))
        elif isinstance(block, ToolResultBlock):
            content = [_restore(c, blobs) if isinstance(c, ImageBlock) else c for c in block.content]
            out.append(ToolResultBlock(tool_use_id=block.tool_use_id, content=content, is_error=block.is_error))
        elif isinstance(block, (TextBlock, ToolUseBlock, ReasoningBlock)):
            out.append(block)
    return out


def render_messages(items: list[ConversationItem], blobs: BlobStore) -> list[Message]:
    return [Message(role=item.role, content=restore_images(item.content, blobs)) for item in items]
