import threading
import time
from contextlib import contextmanager


class RateLimiter:
    """
    Caps concurrent provider calls and spaces out their start times.

    Used by the provider connectors around every outbound request; a Gmail
    connector allows 5 concurrent calls 200ms apart, Outlook 3 calls 1s apart.
    """

    def __init__(self, max_concurrent: int, min_delay_ms: int, sleep=time.sleep, clock=time.monotonic):
        self.max_concurrent = max_concurrent
        self.min_delay = min_delay_ms / 1000.0
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._last_start = None
        self._sleep = sleep
        self._clock = clock

    def _wait_for_slot(self):
        with self._lock:
            now = self._clock()
            if self._last_start is not None:
                wait = self._last_start + self.min_delay - now
                if wait > 0:
                    self._sleep(wait)
                    now = self._clock()
            self._last_start = now

    @contextmanager
    def limit(self):
        self._semaphore.acquire()
        try:
            self._wait_for_slot()
            yield
        finally:
            self._semaphore.release()
