import asyncio
import unittest

from swe_worker.model_catalog import get_model_config
from swe_worker.models import Usage
from tests.memory.base import MemoryStoreTestCase


class SqliteSessionStoreTests(MemoryStoreTestCase):
    def test_create_sets_initial_statuses(self) -> None:
        session = asyncio.run(self._sessions.get("s1"))
        self.assertEqual("pending", session.agent_status)
        self.assertEqual("starting", session.instance_status)
        self.assertIsNone(session.title)
        self.assertEqual(0.0, session.session_cost)

    def test_load_or_create_returns_existing(self) -> None:
        async def scenario():
            await self._sessions.update_title("s1", "Fix CI")
            return await self._sessions.load_or_create("s1", default_model="opus4.1")

        session = asyncio.run(scenario())
        self.assertEqual("Fix CI", session.title)
        self.assertIsNone(session.default_model)

    def test_status_updates(self) -> None:
        async def scenario():
            await self._sessions.update_status("s1", "working")
            await self._sessions.update_instance_status("s1", "running")
            return await self._sessions.get("s1")

        session = asyncio.run(scenario())
        self.assertEqual("working", session.agent_status)
        self.assertEqual("running", session.instance_status)

    def test_get_missing_session_raises(self) -> None:
        with self.assertRaises(KeyError):
            asyncio.run(self._sessions.get("missing"))

    def test_update_missing_session_raises(self) -> None:
        with self.assertRaises(KeyError):
            asyncio.run(self._sessions.update_status("missing", "working"))

    def test_add_usage_accumulates_tokens_and_cost(self) -> None:
        model = get_model_config("sonnet4.5")
        usage = Usage(input_tokens=1000, output_tokens=100, cache_read_input_tokens=10, cache_write_input_tokens=5)

        async def scenario():
            await self._sessions.add_usage("s1", model, usage)
            await self._sessions.add_usage("s1", model, usage)
            return await self._sessions.get("s1")

        session = asyncio.run(scenario())
        totals = self._sessions.token_usage("s1")["sonnet4.5"]
        self.assertEqual(2000, totals.input_tokens)
        self.assertEqual(200, totals.output_tokens)
        self.assertEqual(20, totals.cache_read_input_tokens)
        self.assertEqual(10, totals.cache_write_input_tokens)
        self.assertAlmostEqual(2 * model.cost(usage), session.session_cost)


if __name__ == "__main__":
    unittest.main()
