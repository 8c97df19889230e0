"""Bounded pool of reusable objects with periodic trimming."""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ObjectPool(Generic[T]):
    """Pool of expensive-to-build objects.

    Released objects are reused most-recent-first. Up to ``max_retain``
    objects are kept; the excess spills into a fallback pool holding at most
    ``fallback_size`` objects (oldest dropped first), so bursts do not force
    rebuilds. Every ``cleanup_interval`` seconds a daemon thread trims the
    retained list down to ``min_retain``.

    After ``close()`` release is a no-op and acquire always builds a fresh
    object.
    """

    def __init__(
        self,
        factory: Callable[[], T],
        max_retain: int,
        min_retain: int,
        cleanup_interval: float,
        fallback_size: Optional[int] = None,
        reset: Optional[Callable[[T], None]] = None,
    ):
        if min_retain < 0 or max_retain < min_retain:
            raise ValueError("Expected 0 <= min_retain <= max_retain")
        if cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")

        self._factory = factory
        self._reset = reset
        self.max_retain = max_retain
        self.min_retain = min_retain
        self.cleanup_interval = cleanup_interval

        self._lock = threading.Lock()
        self._entries: List[T] = []
        self._fallback: Deque[T] = deque(maxlen=fallback_size if fallback_size is not None else max(1, max_retain * 2))
        self._closed = False
        self.last_cleaned = time.monotonic()

        self._stop_event = threading.Event()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_worker, name="object-pool-cleanup", daemon=True
        )
        self._cleanup_thread.start()

    def _cleanup_worker(self) -> None:
        while not self._stop_event.wait(self.cleanup_interval):
            with self._lock:
                if self._closed:
                    return
                self._trim()

    def _trim(self) -> None:
        # Caller holds the lock.
        self.last_cleaned = time.monotonic()
        excess = len(self._entries) - self.min_retain
        if excess > 0:
            del self._entries[-excess:]
            logger.debug(f"Trimmed {excess} pooled object(s)")

    def cleanup(self) -> None:
        """Trim retained objects to ``min_retain`` now."""
        with self._lock:
            if not self._closed:
                self._trim()

    def acquire(self) -> T:
        with self._lock:
            if self._entries:
                return self._entries.pop()
            if self._fallback:
                return self._fallback.pop()
        return self._factory()

    def release(self, item: Optional[T]) -> None:
        if item is None:
            return
        if self._reset is not None:
            self._reset(item)

        with self._lock:
            if self._closed:
                return
            self._entries.append(item)
            if len(self._entries) > self.max_retain:
                self._fallback.append(self._entries.pop())

    @contextmanager
    def borrowed(self):
        """Acquire an object for the duration of a ``with`` block."""
        item = self.acquire()
        try:
            yield item
        finally:
            self.release(item)

    def size(self) -> int:
        """Number of retained objects, not counting the fallback pool."""
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._entries.clear()
            self._fallback.clear()
        self._stop_event.set()

    @property
    def closed(self) -> bool:
        return self._closed
