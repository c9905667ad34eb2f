import unittest

from swe_worker.compaction import compact, no_op, total_tokens
from swe_worker.content import TextBlock
from swe_worker.models import ConversationItem


def _item(index: int, tokens: int = 100, kind: str = "assistant") -> ConversationItem:
    role = "user" if kind in ("userMessage", "toolResult") else "assistant"
    return ConversationItem(
        session_id="s1",
        key=str(index).zfill(4),
        role=role,
        kind=kind,
        content=[TextBlock(text=f"item {index}")],
        token_count=tokens,
    )


def _keys(items: list[ConversationItem]) -> list[int]:
    return [int(item.key) for item in items]


class CompactionTests(unittest.TestCase):
    def test_under_budget_returns_input_unchanged(self) -> None:
        items = [_item(i, 10) for i in range(5)]
        window = compact(items, 500)

        self.assertIs(items, window.items)
        self.assertEqual(50, window.total_tokens)
        self.assertFalse(window.trimmed)

    def test_no_op_never_copies(self) -> None:
        items = [_item(i, 1000) for i in range(3)]
        window = no_op(items)

        self.assertIs(items, window.items)
        self.assertEqual(3000, window.total_tokens)

    def test_middle_out_keeps_head_and_tail(self) -> None:
        items = [_item(i) for i in range(10)]
        window = compact(items, 500, 0.6)

        self.assertTrue(window.trimmed)
        self.assertEqual([0, 1, 2, 8, 9], _keys(window.items))
        self.assertEqual(500, window.total_tokens)

    def test_trailing_tool_use_in_head_is_dropped(self) -> None:
        items = [_item(i) for i in range(10)]
        items[2] = _item(2, kind="toolUse")
        items[3] = _item(3, kind="toolResult")
        window = compact(items, 500, 0.6)

        self.assertEqual([0, 1, 8, 9], _keys(window.items))
        self.assertEqual(400, window.total_tokens)

    def test_leading_tool_result_in_tail_is_dropped(self) -> None:
        items = [_item(i) for i in range(10)]
        items[7] = _item(7, kind="toolUse")
        items[8] = _item(8, kind="toolResult")
        window = compact(items, 500, 0.6)

        self.assertEqual([0, 1, 2, 9], _keys(window.items))
        self.assertEqual(400, window.total_tokens)

    def test_pair_across_adjacent_windows_is_kept(self) -> None:
        items = [_item(i) for i in range(10)]
        items[5] = _item(5, kind="toolUse")
        items[6] = _item(6, kind="toolResult")
        window = compact(items, 1000, 0.6)

        self.assertEqual(list(range(10)), _keys(window.items))
        self.assertEqual(1000, window.total_tokens)

    def test_oversized_first_tool_use_keeps_its_result(self) -> None:
        items = [_item(0, 10_000, kind="toolUse"), _item(1, 10, kind="toolResult"), _item(2, 10)]
        window = compact(items, 1000, 0.6)

        self.assertEqual([0, 1, 2], _keys(window.items))

    def test_first_item_is_always_kept(self) -> None:
        items = [_item(0, 10_000)] + [_item(i, 10) for i in range(1, 6)]
        window = compact(items, 1000, 0.6)

        self.assertEqual(0, _keys(window.items)[0])
        self.assertEqual([0, 1, 2, 3, 4, 5], _keys(window.items))

    def test_compacting_a_compacted_window_is_stable(self) -> None:
        items = [_item(i) for i in range(10)]
        first = compact(items, 500, 0.6)
        second = compact(first.items, 600, 0.6)

        self.assertEqual(_keys(first.items), _keys(second.items))
        self.assertFalse(second.trimmed)

    def test_is_deterministic(self) -> None:
        items = [_item(i, 50 + i * 7) for i in range(30)]
        self.assertEqual(_keys(compact(items, 700).items), _keys(compact(items, 700).items))

    def test_pair_never_split(self) -> None:
        kinds = ["userMessage"] + ["toolUse", "toolResult"] * 10 + ["assistant"]
        items = [_item(i, 100, kind) for i, kind in enumerate(kinds)]
        for budget in range(200, 2200, 100):
            window = compact(items, budget)
            positions = {id(item): index for index, item in enumerate(items)}
            for index, item in enumerate(window.items):
                original = positions[id(item)]
                if item.kind == "toolUse":
                    self.assertLess(index + 1, len(window.items), budget)
                    self.assertEqual(original + 1, positions[id(window.items[index + 1])], budget)
                if item.kind == "toolResult":
                    self.assertGreater(index, 0, budget)
                    self.assertEqual(original - 1, positions[id(window.items[index - 1])], budget)

    def test_total_tokens(self) -> None:
        self.assertEqual(0, total_tokens([]))
        self.assertEqual(300, total_tokens([_item(0), _item(1), _item(2)]))

    def test_invalid_head_ratio_raises(self) -> None:
        with self.assertRaises(ValueError):
            compact([_item(i) for i in range(10)], 100, 1.5)


if __name__ == "__main__":
    unittest.main()
