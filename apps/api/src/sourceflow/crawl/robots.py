from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from threading import Lock
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

from sourceflow.crawl.fetcher import PageFetcher
from sourceflow.errors import PipelineError
from sourceflow.scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)

ROBOTS_CACHE_TTL = timedelta(hours=24)


@dataclass
class _CachedRobots:
    parser: RobotFileParser
    fetched_at: datetime


class RobotsPolicy:
    """robots.txt decisions, cached per scheme and host."""

    def __init__(
        self,
        fetcher: PageFetcher,
        *,
        user_agent: str,
        clock: Clock | None = None,
        ttl: timedelta = ROBOTS_CACHE_TTL,
    ) -> None:
        self._fetcher = fetcher
        self._user_agent = user_agent
        self._clock = clock or SystemClock()
        self._ttl = ttl
        self._cache: dict[str, _CachedRobots] = {}
        self._lock = Lock()

    def allowed(self, url: str) -> bool:
        return self._parser_for(url).can_fetch(self._user_agent, url)

    def crawl_delay(self, url: str) -> float | None:
        delay = self._parser_for(url).crawl_delay(self._user_agent)
        return float(delay) if delay is not None else None

    def _parser_for(self, url: str) -> RobotFileParser:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        now = self._clock.now()

        with self._lock:
            cached = self._cache.get(origin)
            if cached is not None and now - cached.fetched_at < self._ttl:
                return cached.parser

        parser = self._load(origin)
        with self._lock:
            self._cache[origin] = _CachedRobots(parser=parser, fetched_at=now)
        return parser

    def _load(self, origin: str) -> RobotFileParser:
        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser(robots_url)
        try:
            response = self._fetcher.fetch(robots_url)
        except PipelineError as exc:
            logger.warning("robots.txt unavailable url=%s error=%s; allowing", robots_url, exc)
            parser.allow_all = True
            return parser

        if response.status_code in (401, 403):
            parser.disallow_all = True
        elif response.status_code >= 400:
            parser.allow_all = True
        else:
            parser.parse(response.text.splitlines())
        parser.modified()
        return parser

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
