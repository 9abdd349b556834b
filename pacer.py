"""Retry and exponential backoff around remote API calls."""

import logging
import random
from typing import Callable

import requests

from backend import CancelledError
from context import Context

logger = logging.getLogger(__name__)

MIN_SLEEP = 0.01
MAX_SLEEP = 3.2
DECAY_CONSTANT = 2

TRANSIENT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def _default_jitter(low: float, high: float) -> float:
    return random.uniform(low, high)


def is_transient(error: BaseException | None) -> bool:
    """Network failures worth another attempt."""
    return isinstance(error, TRANSIENT_ERRORS)


def should_retry(ctx: Context, response: requests.Response | None, error: BaseException | None) -> bool:
    """Decide whether a remote call should be attempted again.

    A cancelled or expired context is never retried: its CancelledError is
    raised here, ahead of any other classification. Otherwise the call is
    retried on a transient error, a missing response, or a 5xx status.
    """
    ctx.check()
    return is_transient(error) or response is None or response.status_code >= 500


class Pacer:
    """Calls a function until it succeeds, backing off exponentially between attempts.

    The delay starts at ``min_sleep``, is multiplied by ``decay`` after each
    retry and capped at ``max_sleep``. Each actual sleep is drawn from
    [delay/2, delay] by ``jitter``. There is no attempt limit; the context's
    deadline is the only bound.
    """

    def __init__(
        self,
        min_sleep: float = MIN_SLEEP,
        max_sleep: float = MAX_SLEEP,
        decay: float = DECAY_CONSTANT,
        jitter: Callable[[float, float], float] | None = None,
    ):
        if min_sleep <= 0 or max_sleep < min_sleep:
            raise ValueError("Pacer needs 0 < min_sleep <= max_sleep")
        if decay < 1:
            raise ValueError("Pacer decay must be at least 1")
        self.min_sleep = min_sleep
        self.max_sleep = max_sleep
        self.decay = decay
        self._jitter = jitter or _default_jitter

    def delays(self):
        """Yield the un-jittered backoff delays, forever."""
        delay = self.min_sleep
        while True:
            yield delay
            delay = min(delay * self.decay, self.max_sleep)

    def call(self, ctx: Context, attempt: Callable[[], requests.Response]) -> requests.Response:
        """Run attempt() under the retry policy and return its final response.

        Non-retryable responses (including 4xx) are returned as-is; the
        caller decides what they mean. A non-retryable error is re-raised.
        """
        for tries, delay in enumerate(self.delays(), start=1):
            ctx.check()
            response, error = None, None
            try:
                response = attempt()
            except requests.RequestException as e:
                error = e
            try:
                retry = should_retry(ctx, response, error)
            except CancelledError:
                if response is not None:
                    response.close()
                raise
            if not retry:
                if error is not None:
                    raise error
                return response

            reason = error if error is not None else f"HTTP {response.status_code}"
            if response is not None:
                response.close()
            pause = self._jitter(delay / 2, delay)
            logger.debug("Retrying remote call after attempt %d in %.3fs: %s", tries, pause, reason)
            ctx.sleep(pause)
