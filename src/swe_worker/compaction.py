from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from swe_worker.models import ConversationItem

DEFAULT_HEAD_RATIO = 0.6


@dataclass(frozen=True)
class CompactionWindow:
    items: list[ConversationItem]
    total_tokens: int

    @property
    def trimmed(self) -> bool:
        return False


@dataclass(frozen=True)
class TrimmedWindow(CompactionWindow):
    dropped: int = 0

    @property
    def trimmed(self) -> bool:
        return True


def total_tokens(items: list[ConversationItem]) -> int:
    return sum(item.token_count for item in items)


def no_op(items: list[ConversationItem]) -> CompactionWindow:
    """Return every item untouched. Never copies or mutates the items."""
    return CompactionWindow(items=items, total_tokens=total_tokens(items))


def compact(
    items: list[ConversationItem],
    budget: int,
    head_ratio: float = DEFAULT_HEAD_RATIO,
) -> CompactionWindow:
    """Fit ``items`` into ``budget`` tokens by dropping a span from the middle.

    Below budget the input is returned as-is. Otherwise a head window is taken
    from the start (the first item is always kept) and a tail window from the
    end, and the seams are repaired so a ``toolUse`` is never separated from
    its ``toolResult``.
    """
    total = total_tokens(items)
    if total < budget:
        return CompactionWindow(items=items, total_tokens=total)
    if not 0 <= head_ratio <= 1:
        raise ValueError("head_ratio must be between 0 and 1")

    logger.info(f"Applying middle-out compaction. Total tokens: {total:,}, budget: {budget:,}")

    head_limit = budget * head_ratio
    tail_limit = budget * (1 - head_ratio)

    head: list[ConversationItem] = []
    running = 0
    for index, item in enumerate(items):
        running += item.token_count
        if index == 0 or running <= head_limit:
            head.append(item)
        else:
            break

    tail: list[ConversationItem] = []
    running = 0
    for index in range(len(items) - 1, len(head) - 1, -1):
        item = items[index]
        running += item.token_count
        if running <= tail_limit:
            tail.append(item)
        else:
            break
    tail.reverse()

    # Adjacent windows have no seam: a pair straddling them is still whole.
    if len(head) + len(tail) < len(items):
        if head and head[-1].kind == "toolUse":
            head.pop()
        if tail and tail[0].kind == "toolResult":
            tail.pop(0)

    window = head + tail
    kept = total_tokens(window)
    logger.info(
        f"Middle-out compaction kept {len(window)}/{len(items)} items, "
        f"{kept:,} tokens (head={len(head)}, tail={len(tail)})"
    )
    return TrimmedWindow(items=window, total_tokens=kept, dropped=len(items) - len(window))
