"""
Polling schedule.

Client-side "ask again later" loops share one contract: an interval, an
attempt budget and a stop condition. The loop only reads; whatever it calls
(usually a sweep or a job lookup) does the writing.

Used by:
  - the background sweeper thread (SWEEP_INTERVAL_SECONDS > 0)
  - GET /jobs/{id}/watch (sweeps, then re-reads the job, each tick)

`backoff_delays` is the retry budget for provider calls that failed
transiently (status checks in the sweep, create calls in the submitter).
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .. import fallback_limiter, metrics

logger = logging.getLogger(__name__)


def backoff_delays(retries: int, base: float, cap: float) -> list[float]:
    """Sleep before each retry: base, 2*base, 4*base ... never above cap."""
    return [min(base * (2 ** n), cap) for n in range(retries)]


@dataclass(frozen=True)
class PollSchedule:
    interval: float
    max_attempts: int

    def __post_init__(self):
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


def poll_until(
    fetch: Callable[[], Any],
    is_done: Callable[[Any], bool],
    schedule: PollSchedule,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[Any, int, bool]:
    """
    Call ``fetch`` until ``is_done`` holds or the budget runs out.

    Returns (last_result, attempts_used, done). The first fetch happens
    immediately; ``interval`` is slept between fetches, never after the last.
    """
    result = None
    for attempt in range(1, schedule.max_attempts + 1):
        result = fetch()
        if is_done(result):
            return result, attempt, True
        if attempt < schedule.max_attempts:
            sleep(schedule.interval)
    return result, schedule.max_attempts, False


class Sweeper:
    """Daemon thread that runs a sweep every ``interval`` seconds until stopped."""

    def __init__(self, sweep: Callable[[], Any], interval: float):
        self.sweep = sweep
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Sweeper thread started (every {self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sweeper thread stopped")

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Background sweep failed: {e}", exc_info=True)
                metrics.record_error("sweeper", type(e).__name__, str(e))
            fallback_limiter.cleanup_expired()
