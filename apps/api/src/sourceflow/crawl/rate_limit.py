from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from threading import BoundedSemaphore, Lock
import time
from typing import Callable
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass
class _DomainState:
    semaphore: BoundedSemaphore
    interval: float
    next_slot: float = 0.0
    lock: Lock = field(default_factory=Lock)


class DomainRateLimiter:
    """Per-domain concurrency cap plus a minimum spacing between request starts.

    Callers over the limit wait for a slot; requests are never dropped.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 2,
        min_interval_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._max_concurrency = max_concurrency
        self._min_interval = max(0.0, min_interval_seconds)
        self._sleep = sleep
        self._monotonic = monotonic
        self._domains: dict[str, _DomainState] = {}
        self._lock = Lock()

    def _state(self, domain: str) -> _DomainState:
        with self._lock:
            state = self._domains.get(domain)
            if state is None:
                state = _DomainState(
                    semaphore=BoundedSemaphore(self._max_concurrency),
                    interval=self._min_interval,
                )
                self._domains[domain] = state
            return state

    def set_crawl_delay(self, url: str, delay_seconds: float | None) -> None:
        if delay_seconds is None:
            return
        state = self._state(urlparse(url).netloc)
        with state.lock:
            state.interval = max(self._min_interval, delay_seconds)

    def interval_for(self, url: str) -> float:
        return self._state(urlparse(url).netloc).interval

    @contextmanager
    def acquire(self, url: str) -> Iterator[None]:
        domain = urlparse(url).netloc
        state = self._state(domain)
        state.semaphore.acquire()
        try:
            with state.lock:
                now = self._monotonic()
                start = max(now, state.next_slot)
                state.next_slot = start + state.interval
            wait = start - now
            if wait > 0:
                logger.debug("rate limiting domain=%s wait_s=%.2f", domain, wait)
                self._sleep(wait)
            yield
        finally:
            state.semaphore.release()
