"""Tests for the retry/backoff pacer and request contexts."""

import unittest

import requests

from backend import CancelledError
from context import Context
from pacer import Pacer, should_retry


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code
        self.closed = False

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingJitter:
    """Records the (low, high) jitter window and sleeps for nothing."""

    def __init__(self):
        self.windows = []

    def __call__(self, low: float, high: float) -> float:
        self.windows.append((low, high))
        return 0.0


def scripted(*outcomes):
    """Build an attempt function that replays outcomes (responses or exceptions) in order."""
    calls = []

    def attempt():
        outcome = outcomes[len(calls)]
        calls.append(outcome)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    attempt.calls = calls
    return attempt


class TestShouldRetry(unittest.TestCase):
    def setUp(self):
        self.ctx = Context()

    def test_server_error_retried(self):
        self.assertTrue(should_retry(self.ctx, FakeResponse(500), None))
        self.assertTrue(should_retry(self.ctx, FakeResponse(503), None))

    def test_client_error_not_retried(self):
        self.assertFalse(should_retry(self.ctx, FakeResponse(404), None))
        self.assertFalse(should_retry(self.ctx, FakeResponse(401), None))

    def test_success_not_retried(self):
        self.assertFalse(should_retry(self.ctx, FakeResponse(200), None))

    def test_missing_response_retried(self):
        self.assertTrue(should_retry(self.ctx, None, None))

    def test_transient_errors_retried(self):
        self.assertTrue(should_retry(self.ctx, None, requests.ConnectionError("refused")))
        self.assertTrue(should_retry(self.ctx, None, requests.Timeout("slow")))

    def test_cancelled_context_raises(self):
        self.ctx.cancel()
        with self.assertRaises(CancelledError):
            should_retry(self.ctx, None, requests.ConnectionError("refused"))

    def test_expired_deadline_raises(self):
        clock = FakeClock()
        ctx = Context(5, clock=clock)
        clock.now = 5
        with self.assertRaises(CancelledError):
            should_retry(ctx, FakeResponse(503), None)


class TestPacer(unittest.TestCase):
    def test_returns_first_success(self):
        ok = FakeResponse(200)
        attempt = scripted(ok)
        self.assertIs(Pacer().call(Context(), attempt), ok)
        self.assertEqual(len(attempt.calls), 1)

    def test_retries_transient_then_succeeds(self):
        jitter = RecordingJitter()
        busy, ok = FakeResponse(503), FakeResponse(200)
        attempt = scripted(requests.ConnectionError("reset"), busy, ok)

        self.assertIs(Pacer(jitter=jitter).call(Context(), attempt), ok)
        self.assertEqual(len(attempt.calls), 3)
        self.assertTrue(busy.closed)
        self.assertEqual(len(jitter.windows), 2)
        self.assertAlmostEqual(jitter.windows[0][0], 0.005)
        self.assertAlmostEqual(jitter.windows[0][1], 0.01)
        self.assertAlmostEqual(jitter.windows[1][1], 0.02)

    def test_client_error_returned_without_retry(self):
        missing = FakeResponse(404)
        attempt = scripted(missing)
        self.assertIs(Pacer().call(Context(), attempt), missing)
        self.assertEqual(len(attempt.calls), 1)

    def test_backoff_doubles_up_to_max(self):
        delays = Pacer().delays()
        got = [next(delays) for _ in range(12)]
        expected = [0.01, 0.02, 0.04, 0.08, 0.16, 0.32, 0.64, 1.28, 2.56, 3.2, 3.2, 3.2]
        for g, e in zip(got, expected):
            self.assertAlmostEqual(g, e)

    def test_cancel_during_attempt_stops_retrying(self):
        ctx = Context()

        def attempt():
            ctx.cancel()
            raise requests.ConnectionError("reset")

        with self.assertRaises(CancelledError):
            Pacer(jitter=RecordingJitter()).call(ctx, attempt)

    def test_response_closed_when_cancelled_after_arrival(self):
        ctx = Context()
        ok = FakeResponse(200)

        def attempt():
            ctx.cancel()
            return ok

        with self.assertRaises(CancelledError):
            Pacer(jitter=RecordingJitter()).call(ctx, attempt)
        self.assertTrue(ok.closed)

    def test_deadline_bounds_retries(self):
        clock = FakeClock()
        ctx = Context(2.5, clock=clock)
        calls = []

        def attempt():
            calls.append(clock.now)
            clock.now += 1
            return FakeResponse(502)

        with self.assertRaises(CancelledError):
            Pacer(jitter=RecordingJitter()).call(ctx, attempt)
        self.assertEqual(len(calls), 3)

    def test_invalid_settings(self):
        with self.assertRaises(ValueError):
            Pacer(min_sleep=0)
        with self.assertRaises(ValueError):
            Pacer(min_sleep=1, max_sleep=0.5)
        with self.assertRaises(ValueError):
            Pacer(decay=0.5)


class TestContext(unittest.TestCase):
    def test_no_deadline(self):
        ctx = Context()
        self.assertIsNone(ctx.remaining())
        self.assertFalse(ctx.done())

    def test_remaining_counts_down(self):
        clock = FakeClock(100)
        ctx = Context(10, clock=clock)
        clock.now = 104
        self.assertAlmostEqual(ctx.remaining(), 6)
        clock.now = 120
        self.assertEqual(ctx.remaining(), 0)
        self.assertTrue(ctx.done())

    def test_sleep_after_cancel_raises(self):
        ctx = Context()
        ctx.cancel()
        with self.assertRaises(CancelledError):
            ctx.sleep(10)


if __name__ == "__main__":
    unittest.main()
