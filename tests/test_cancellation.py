import asyncio
import unittest

from swe_worker.cancellation import CancellationCoordinator, CancellationToken


class CancellationTokenTests(unittest.TestCase):
    def test_complete_cancel_runs_cleanup_once(self) -> None:
        calls: list[str] = []

        async def cleanup() -> None:
            calls.append("cleanup")

        token = CancellationToken()
        token.cancel(cleanup)

        async def scenario() -> None:
            await token.complete_cancel()
            await token.complete_cancel()

        asyncio.run(scenario())
        self.assertTrue(token.is_cancelled)
        self.assertEqual(["cleanup"], calls)

    def test_cancel_without_callback_keeps_previous(self) -> None:
        calls: list[str] = []

        async def cleanup() -> None:
            calls.append("cleanup")

        token = CancellationToken()
        token.cancel(cleanup)
        token.cancel()
        asyncio.run(token.complete_cancel())

        self.assertEqual(["cleanup"], calls)

    def test_complete_cancel_without_callback(self) -> None:
        token = CancellationToken()
        token.cancel()
        asyncio.run(token.complete_cancel())
        self.assertTrue(token.is_cancelled)


class CancellationCoordinatorTests(unittest.TestCase):
    def test_cancel_all_flags_unfinished_handles(self) -> None:
        coordinator = CancellationCoordinator()
        running = coordinator.start("s1")
        done = coordinator.start("s1")
        other = coordinator.start("s2")
        coordinator.finish(done)

        count = coordinator.cancel_all("s1")

        self.assertEqual(1, count)
        self.assertTrue(running.token.is_cancelled)
        self.assertFalse(done.token.is_cancelled)
        self.assertFalse(other.token.is_cancelled)
        self.assertEqual([running], coordinator.handles("s1"))

    def test_cancel_all_twice_runs_cleanup_once_per_handle(self) -> None:
        calls: list[str] = []

        async def cleanup() -> None:
            calls.append("cleanup")

        coordinator = CancellationCoordinator()
        first = coordinator.start("s1")
        second = coordinator.start("s1")
        coordinator.cancel_all("s1", cleanup)
        coordinator.cancel_all("s1", cleanup)

        async def scenario() -> None:
            for handle in (first, second, first):
                await handle.token.complete_cancel()

        asyncio.run(scenario())
        self.assertEqual(["cleanup", "cleanup"], calls)

    def test_coordinator_never_runs_cleanup_itself(self) -> None:
        calls: list[str] = []

        async def cleanup() -> None:
            calls.append("cleanup")

        coordinator = CancellationCoordinator()
        coordinator.start("s1")
        coordinator.cancel_all("s1", cleanup)
        self.assertEqual([], calls)

    def test_is_busy_and_wait_idle(self) -> None:
        coordinator = CancellationCoordinator()

        async def scenario() -> None:
            handle = coordinator.start("s1")

            async def turn() -> None:
                await asyncio.sleep(0.01)
                coordinator.finish(handle)

            handle.task = asyncio.create_task(turn())
            self.assertTrue(coordinator.is_busy("s1"))
            await coordinator.wait_idle("s1")
            self.assertFalse(coordinator.is_busy("s1"))

        asyncio.run(scenario())

    def test_cancel_all_for_unknown_session(self) -> None:
        self.assertEqual(0, CancellationCoordinator().cancel_all("missing"))


if __name__ == "__main__":
    unittest.main()
