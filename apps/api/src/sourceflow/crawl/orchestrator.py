from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.chunking.chunker import content_hash
from sourceflow.chunking.compression import compress
from sourceflow.crawl.fetcher import FetchResponse, PageFetcher, raise_for_status
from sourceflow.crawl.links import extract_links, html_to_text, normalize_url, same_host
from sourceflow.crawl.patterns import should_crawl
from sourceflow.crawl.rate_limit import DomainRateLimiter
from sourceflow.crawl.robots import RobotsPolicy
from sourceflow.errors import IntegrityError, PermanentFailure, PipelineError, SourceCancelled
from sourceflow.events import EventBus, PageChanged, publish_after_commit
from sourceflow.models import SourcePageRecord, SourceRecord, new_id
from sourceflow.payloads import CrawlOptions, CrawlPagePayload
from sourceflow.queue import JobQueue
from sourceflow.scheduling import Clock, SystemClock
from sourceflow.types import JobType, PageStatus, SourceType, WorkflowStatus
from sourceflow.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

ROBOTS_DISALLOWED = "robots-disallowed"

_PAGE_EDGES: dict[PageStatus, frozenset[PageStatus]] = {
    PageStatus.PENDING: frozenset({PageStatus.IN_PROGRESS, PageStatus.FAILED}),
    PageStatus.IN_PROGRESS: frozenset({PageStatus.COMPLETED, PageStatus.FAILED}),
    PageStatus.COMPLETED: frozenset(),
    PageStatus.FAILED: frozenset(),
}
_RESETTABLE = frozenset({PageStatus.COMPLETED, PageStatus.FAILED})


@dataclass
class DiscoveryResult:
    source_id: str
    discovered: list[tuple[str, int]] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    enqueued: int = 0
    skipped_existing: int = 0

    def as_dict(self) -> dict[str, int | str]:
        return {
            "source_id": self.source_id,
            "discovered": len(self.discovered),
            "blocked": len(self.blocked),
            "enqueued": self.enqueued,
            "skipped_existing": self.skipped_existing,
        }


def load_live_parent(session: Session, parent_id: str | None) -> SourceRecord:
    """Return the parent Source, refusing missing or removed parents."""
    parent = session.get(SourceRecord, parent_id) if parent_id else None
    if parent is None:
        raise IntegrityError(f"parent source {parent_id} does not exist")
    if parent.workflow_status == WorkflowStatus.REMOVED.value:
        raise IntegrityError(f"parent source {parent_id} has been removed")
    return parent


class CrawlOrchestrator:
    def __init__(
        self,
        engine: Engine,
        *,
        fetcher: PageFetcher,
        robots: RobotsPolicy,
        limiter: DomainRateLimiter,
        queue: JobQueue,
        workflow: WorkflowStateMachine,
        bus: EventBus,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._fetcher = fetcher
        self._robots = robots
        self._limiter = limiter
        self._queue = queue
        self._workflow = workflow
        self._bus = bus
        self._clock = clock or SystemClock()

    def discover(self, source_id: str, options: CrawlOptions) -> DiscoveryResult:
        """Walk the site breadth-first and register every page worth crawling.

        Network I/O happens outside any database transaction. Each new URL
        gets a pending SourcePage and one crawl_page job; robots-blocked URLs
        are recorded as failed pages with no job.
        """
        with Session(self._engine) as session, session.begin():
            source = self._load_crawlable_source(session, source_id)
            if source.workflow_status != WorkflowStatus.CRAWLING.value:
                self._workflow.transition(session, source, WorkflowStatus.CRAWLING)
            root_url = normalize_url(source.url or "")

        result = DiscoveryResult(source_id=source_id)
        if options.mode == "single_page":
            if options.respect_robots and not self._robots.allowed(root_url):
                result.blocked.append(root_url)
            else:
                result.discovered.append((root_url, 0))
        else:
            self._walk(root_url, options, result)

        with Session(self._engine) as session, session.begin():
            source = self._load_crawlable_source(session, source_id)
            existing = set(
                session.scalars(
                    select(SourcePageRecord.url).where(SourcePageRecord.parent_source_id == source.id)
                ).all()
            )
            for url, depth in result.discovered:
                if url in existing:
                    result.skipped_existing += 1
                    continue
                page = self._add_page(session, source, url, depth, PageStatus.PENDING)
                self._queue.enqueue(
                    JobType.CRAWL_PAGE,
                    page.id,
                    payload=CrawlPagePayload(url=url, depth=depth, respect_robots=options.respect_robots),
                    session=session,
                )
                result.enqueued += 1
            for url in result.blocked:
                if url in existing:
                    result.skipped_existing += 1
                    continue
                self._add_page(session, source, url, 0, PageStatus.FAILED, error=ROBOTS_DISALLOWED)

        logger.info(
            "discovery finished source_id=%s discovered=%s blocked=%s enqueued=%s",
            source_id,
            len(result.discovered),
            len(result.blocked),
            result.enqueued,
        )
        return result

    def _walk(self, root_url: str, options: CrawlOptions, result: DiscoveryResult) -> None:
        frontier: deque[tuple[str, int]] = deque([(root_url, 0)])
        seen = {root_url}

        while frontier and len(result.discovered) + len(result.blocked) < options.max_pages:
            url, depth = frontier.popleft()
            if options.respect_robots and not self._robots.allowed(url):
                result.blocked.append(url)
                continue
            result.discovered.append((url, depth))
            if depth >= options.max_depth:
                continue

            try:
                response = self._fetch(url, respect_robots=options.respect_robots)
            except PipelineError:
                if url == root_url:
                    raise
                logger.warning("discovery fetch failed url=%s; not following its links", url, exc_info=True)
                continue

            for link in extract_links(response.text, response.url):
                if link in seen or not same_host(link, root_url):
                    continue
                seen.add(link)
                if should_crawl(link, options.include_paths, options.exclude_paths):
                    frontier.append((link, depth + 1))

    def _fetch(self, url: str, *, respect_robots: bool) -> FetchResponse:
        if respect_robots:
            self._limiter.set_crawl_delay(url, self._robots.crawl_delay(url))
        with self._limiter.acquire(url):
            response = self._fetcher.fetch(url)
        raise_for_status(response)
        return response

    def crawl_page(self, page_id: str, payload: CrawlPagePayload) -> dict[str, object]:
        with Session(self._engine) as session, session.begin():
            page = self._load_page(session, page_id)
            parent = load_live_parent(session, page.parent_source_id)
            if parent.pending_deletion:
                raise SourceCancelled(f"source {parent.id} is pending deletion")
            parent_id = parent.id
            status = PageStatus(page.status)
            if status in _RESETTABLE:
                return {"page_id": page_id, "skipped": status.value}
            if status is PageStatus.PENDING:
                self._move_page(session, page, PageStatus.IN_PROGRESS)
                page.started_at = self._clock.now()
            url = page.url

        if payload.respect_robots and not self._robots.allowed(url):
            self.mark_page_failed(page_id, ROBOTS_DISALLOWED)
            return {"page_id": page_id, "status": PageStatus.FAILED.value, "error": ROBOTS_DISALLOWED}

        response = self._fetch(url, respect_robots=payload.respect_robots)
        if not response.is_html:
            raise PermanentFailure(f"unsupported content type {response.content_type!r} for {url}")

        _, text = html_to_text(response.text)
        raw = response.text.encode("utf-8")
        capture = compress(raw)

        with Session(self._engine) as session, session.begin():
            page = self._load_page(session, page_id)
            parent = load_live_parent(session, page.parent_source_id)
            if parent.pending_deletion:
                raise SourceCancelled(f"source {parent.id} is pending deletion")
            if page.status != PageStatus.IN_PROGRESS.value:
                return {"page_id": page_id, "skipped": page.status}

            page.content = text
            page.content_hash = content_hash(text)
            page.raw_capture = capture
            page.content_size = len(raw)
            page.compressed_size = len(capture)
            page.error_message = None
            page.completed_at = self._clock.now()
            self._move_page(session, page, PageStatus.COMPLETED)

        logger.info(
            "page crawled page_id=%s url=%s bytes=%s compressed=%s",
            page_id,
            url,
            len(raw),
            len(capture),
        )
        return {
            "page_id": page_id,
            "status": PageStatus.COMPLETED.value,
            "content_size": len(raw),
            "compressed_size": len(capture),
            "source_id": parent_id,
        }

    def mark_page_failed(self, page_id: str, error: str) -> bool:
        with Session(self._engine) as session, session.begin():
            page = session.get(SourcePageRecord, page_id)
            if page is None or PageStatus(page.status) not in (PageStatus.PENDING, PageStatus.IN_PROGRESS):
                return False
            page.error_message = error
            page.completed_at = self._clock.now()
            self._move_page(session, page, PageStatus.FAILED)
        logger.warning("page failed page_id=%s error=%s", page_id, error)
        return True

    def note_page_retry(self, page_id: str, error: str) -> None:
        with Session(self._engine) as session, session.begin():
            page = session.get(SourcePageRecord, page_id)
            if page is None:
                return
            page.retry_count += 1
            page.error_message = error
            page.updated_at = self._clock.now()

    def reset_pages_for_recrawl(
        self,
        session: Session,
        source: SourceRecord,
        *,
        respect_robots: bool = True,
        urls: list[str] | None = None,
    ) -> int:
        """Send finished pages back to pending and enqueue one crawl job each.

        With `urls`, only those pages are touched; unknown URLs get a new page.
        """
        pages = session.scalars(
            select(SourcePageRecord).where(SourcePageRecord.parent_source_id == source.id)
        ).all()
        by_url = {page.url: page for page in pages}
        targets = [normalize_url(url) for url in urls] if urls is not None else list(by_url)

        enqueued = 0
        for url in targets:
            page = by_url.get(url)
            if page is None:
                page = self._add_page(session, source, url, 0, PageStatus.PENDING)
            elif PageStatus(page.status) in _RESETTABLE:
                page.status = PageStatus.PENDING.value
                page.error_message = None
                page.retry_count = 0
                page.started_at = None
                page.completed_at = None
                page.updated_at = self._clock.now()
                publish_after_commit(
                    session,
                    self._bus,
                    PageChanged(page_id=page.id, parent_source_id=source.id, status=page.status),
                )
            elif PageStatus(page.status) is PageStatus.IN_PROGRESS:
                continue
            self._queue.enqueue(
                JobType.CRAWL_PAGE,
                page.id,
                payload=CrawlPagePayload(url=page.url, depth=page.depth, respect_robots=respect_robots),
                session=session,
            )
            enqueued += 1
        return enqueued

    def _load_crawlable_source(self, session: Session, source_id: str) -> SourceRecord:
        source = session.get(SourceRecord, source_id)
        if source is None:
            raise IntegrityError(f"source {source_id} does not exist")
        if source.pending_deletion:
            raise SourceCancelled(f"source {source_id} is pending deletion")
        if source.source_type != SourceType.WEBSITE.value or not source.url:
            raise PermanentFailure(f"source {source_id} is not a website source")
        return source

    def _load_page(self, session: Session, page_id: str) -> SourcePageRecord:
        page = session.get(SourcePageRecord, page_id)
        if page is None:
            raise IntegrityError(f"source page {page_id} does not exist")
        return page

    def _add_page(
        self,
        session: Session,
        source: SourceRecord,
        url: str,
        depth: int,
        status: PageStatus,
        *,
        error: str | None = None,
    ) -> SourcePageRecord:
        now = self._clock.now()
        page = SourcePageRecord(
            id=new_id(),
            parent_source_id=source.id,
            url=url,
            depth=depth,
            status=status.value,
            error_message=error,
            completed_at=now if status is PageStatus.FAILED else None,
            created_at=now,
            updated_at=now,
        )
        session.add(page)
        session.flush()
        publish_after_commit(
            session,
            self._bus,
            PageChanged(page_id=page.id, parent_source_id=source.id, status=status.value, created=True),
        )
        return page

    def _move_page(self, session: Session, page: SourcePageRecord, target: PageStatus) -> None:
        current = PageStatus(page.status)
        if target not in _PAGE_EDGES[current]:
            raise IntegrityError(f"page {page.id} cannot move from {current.value} to {target.value}")
        page.status = target.value
        page.updated_at = self._clock.now()
        publish_after_commit(
            session,
            self._bus,
            PageChanged(page_id=page.id, parent_source_id=page.parent_source_id, status=target.value),
        )
