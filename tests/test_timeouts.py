import asyncio
import math
import unittest

from chatmux.errors import InvalidTimeoutError, ProviderTimeoutError
from chatmux.timeouts import CancellationToken, RequestTracker, race, validate_timeout


class ValidateTimeoutTests(unittest.TestCase):
    def test_absent_returns_default(self) -> None:
        self.assertEqual(validate_timeout(None, 1000, 60000, 30000), 30000)

    def test_in_range_is_returned_unchanged(self) -> None:
        for value in (1000, 1500.5, 60000):
            self.assertEqual(validate_timeout(value, 1000, 60000, 30000), value)

    def test_rejections_carry_codes(self) -> None:
        cases = [
            ("soon", "INVALID_TIMEOUT"),
            (math.nan, "INVALID_TIMEOUT"),
            (True, "INVALID_TIMEOUT"),
            (999, "TIMEOUT_TOO_SHORT"),
            (-5, "TIMEOUT_TOO_SHORT"),
            (60001, "TIMEOUT_TOO_LONG"),
            (math.inf, "TIMEOUT_TOO_LONG"),
        ]
        for value, code in cases:
            with self.subTest(value=value):
                with self.assertRaises(InvalidTimeoutError) as ctx:
                    validate_timeout(value, 1000, 60000, 30000)
                self.assertEqual(ctx.exception.code, code)

    def test_result_always_within_bounds(self) -> None:
        for value in (None, 1, 10, 250, 1000, 4999, 5000):
            try:
                result = validate_timeout(value, 10, 5000, 100)
            except InvalidTimeoutError:
                continue
            self.assertGreaterEqual(result, 10)
            self.assertLessEqual(result, 5000)


class RequestTrackerTests(unittest.TestCase):
    def test_entry_removed_on_success_and_error(self) -> None:
        async def scenario() -> None:
            tracker = RequestTracker("stub")
            with tracker.track(1000) as context:
                self.assertIn(context.request_id, tracker)
                self.assertTrue(context.request_id.startswith("stub-"))
            self.assertEqual(len(tracker), 0)

            with self.assertRaises(RuntimeError):
                with tracker.track(1000) as context:
                    raise RuntimeError("boom")
            self.assertNotIn(context.request_id, tracker)
            self.assertIsNone(context.timer)

        asyncio.run(scenario())

    def test_timer_fires_token(self) -> None:
        async def scenario() -> str | None:
            tracker = RequestTracker("stub")
            with tracker.track(5) as context:
                await asyncio.wait_for(context.token.wait(), 1)
                return context.token.reason

        self.assertEqual(asyncio.run(scenario()), "timeout")

    def test_cleanup_cancels_live_contexts_and_is_idempotent(self) -> None:
        async def scenario() -> None:
            tracker = RequestTracker("stub")
            with tracker.track(10_000) as context:
                tracker.cleanup()
                tracker.cleanup()
                self.assertEqual(len(tracker), 0)
                self.assertTrue(context.token.cancelled)
                self.assertEqual(context.token.reason, "cleanup")

        asyncio.run(scenario())


class RaceTests(unittest.TestCase):
    def test_returns_result_when_work_finishes_first(self) -> None:
        async def scenario() -> int:
            async def work() -> int:
                await asyncio.sleep(0)
                return 7

            return await race(work(), CancellationToken(), provider="stub")

        self.assertEqual(asyncio.run(scenario()), 7)

    def test_timeout_cancels_pending_work(self) -> None:
        cancelled = []

        async def scenario() -> None:
            async def work() -> None:
                try:
                    await asyncio.sleep(3600)
                except asyncio.CancelledError:
                    cancelled.append(True)
                    raise

            token = CancellationToken()
            token.cancel_after(5)
            await race(work(), token, provider="stub", timeout_ms=5)

        with self.assertRaises(ProviderTimeoutError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(cancelled, [True])
        self.assertIn("timed out after 5ms", str(ctx.exception))

    def test_external_cancel_reports_reason(self) -> None:
        async def scenario() -> None:
            token = CancellationToken()
            asyncio.get_running_loop().call_soon(token.cancel, "cancelled by caller")
            await race(asyncio.sleep(3600), token, provider="stub")

        with self.assertRaises(ProviderTimeoutError) as ctx:
            asyncio.run(scenario())
        self.assertIn("Request was cancelled by caller", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
