from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 5.0
    max_seconds: float = 300.0

    def delay(self, retry_count: int) -> timedelta:
        """Delay before the next attempt, given the retries already spent."""
        seconds = self.base_seconds * (2 ** max(0, retry_count))
        return timedelta(seconds=min(seconds, self.max_seconds))
