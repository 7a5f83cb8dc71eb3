from __future__ import annotations

import logging
import socket
from typing import Any, Callable
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.aggregator import StatusAggregator
from sourceflow.chunking.chunker import format_qa
from sourceflow.config import Settings
from sourceflow.crawl.fetcher import HttpxFetcher, PageFetcher
from sourceflow.crawl.links import normalize_url, same_host
from sourceflow.crawl.orchestrator import CrawlOrchestrator
from sourceflow.crawl.rate_limit import DomainRateLimiter
from sourceflow.crawl.robots import RobotsPolicy
from sourceflow.embedding.client import EmbeddingClient, HashEmbeddingClient, HttpEmbeddingClient
from sourceflow.embedding.generator import EmbeddingGenerator
from sourceflow.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    PermanentFailure,
    RateLimitedError,
    ValidationError,
)
from sourceflow.events import EventBus, PageChanged, SourceChanged, publish_after_commit
from sourceflow.handlers import JobHandlers, clear_error_metadata
from sourceflow.models import SourceRecord, new_id
from sourceflow.payloads import AggregatePayload, ChunkPayload, CrawlOptions, DeletePayload, DiscoverPayload
from sourceflow.pool import WorkerPool
from sourceflow.queue import JobQueue, QueueStats
from sourceflow.scheduling import BackoffPolicy, Clock, SystemClock
from sourceflow.types import JobType, SourceType, WorkflowStatus
from sourceflow.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

_ACTIVE_CRAWL = (WorkflowStatus.CREATED.value, WorkflowStatus.CRAWLING.value)
_BUSY = frozenset({WorkflowStatus.CREATED, WorkflowStatus.CRAWLING, WorkflowStatus.TRAINING})
_RETRAINABLE = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.TRAINED, WorkflowStatus.ERROR})


def validate_url(url: str) -> str:
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"invalid url {url!r}: expected an absolute http(s) URL")
    return normalize_url(url)


class Pipeline:
    """Entry point for every externally invocable operation."""

    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        *,
        fetcher: PageFetcher | None = None,
        embedding_client: EmbeddingClient | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.clock = clock or SystemClock()
        self.bus = EventBus()
        self.stats = QueueStats()
        self.queue = JobQueue(
            engine,
            clock=self.clock,
            backoff=BackoffPolicy(settings.retry_base_seconds, settings.retry_max_seconds),
            default_max_retries=settings.job_max_retries,
            stats=self.stats,
        )
        self.workflow = WorkflowStateMachine(self.bus, self.clock)

        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or HttpxFetcher(
            user_agent=settings.crawl_user_agent,
            timeout_seconds=settings.crawl_timeout_seconds,
        )
        limiter_kwargs: dict[str, Any] = {} if sleep is None else {"sleep": sleep}
        self.orchestrator = CrawlOrchestrator(
            engine,
            fetcher=self.fetcher,
            robots=RobotsPolicy(self.fetcher, user_agent=settings.crawl_user_agent, clock=self.clock),
            limiter=DomainRateLimiter(
                max_concurrency=settings.crawl_domain_concurrency,
                min_interval_seconds=settings.crawl_min_interval_seconds,
                **limiter_kwargs,
            ),
            queue=self.queue,
            workflow=self.workflow,
            bus=self.bus,
            clock=self.clock,
        )
        self.aggregator = StatusAggregator(
            engine,
            workflow=self.workflow,
            queue=self.queue,
            auto_train=settings.auto_train,
            clock=self.clock,
        )
        self.handlers = JobHandlers(
            engine,
            orchestrator=self.orchestrator,
            aggregator=self.aggregator,
            embedder=EmbeddingGenerator(
                embedding_client or build_embedding_client(settings),
                batch_size=settings.embed_batch_size,
            ),
            queue=self.queue,
            workflow=self.workflow,
            clock=self.clock,
        )
        self.pool = WorkerPool(
            self.queue,
            self.handlers,
            worker_id=worker_id or f"api-{socket.gethostname()}",
            batch_size=settings.worker_batch_size,
            concurrency=settings.worker_concurrency,
            bus=self.bus,
        )
        self._unsubscribe = self.bus.subscribe(self._on_page_changed, event_types=(PageChanged,))

    def close(self) -> None:
        self._unsubscribe()
        if self._owns_fetcher and isinstance(self.fetcher, HttpxFetcher):
            self.fetcher.close()

    def _on_page_changed(self, event: PageChanged) -> None:
        self.queue.enqueue(
            JobType.AGGREGATE_STATUS,
            event.parent_source_id,
            payload=AggregatePayload(trigger="page_event"),
        )

    def _get_source(self, session: Session, source_id: str) -> SourceRecord:
        source = session.get(SourceRecord, source_id)
        if source is None:
            raise NotFoundError(f"source {source_id} not found")
        return source

    def _new_source(self, session: Session, **values: Any) -> SourceRecord:
        now = self.clock.now()
        source = SourceRecord(
            id=new_id(),
            workflow_status=WorkflowStatus.CREATED.value,
            created_at=now,
            updated_at=now,
            **values,
        )
        session.add(source)
        session.flush()
        publish_after_commit(
            session,
            self.bus,
            SourceChanged(source_id=source.id, workflow_status=source.workflow_status, created=True),
        )
        return source

    def initiate_crawl(
        self,
        agent_id: str,
        url: str,
        options: CrawlOptions | None = None,
        *,
        title: str | None = None,
    ) -> dict[str, Any]:
        """Register a website source and queue its discovery.

        A URL the agent already owns is recrawled instead of duplicated.
        """
        options = options or CrawlOptions(
            max_pages=self.settings.crawl_max_pages,
            max_depth=self.settings.crawl_max_depth,
            respect_robots=self.settings.crawl_respect_robots,
        )
        root_url = validate_url(url)

        with Session(self.engine) as session, session.begin():
            existing = session.scalar(
                select(SourceRecord)
                .where(SourceRecord.agent_id == agent_id)
                .where(SourceRecord.source_type == SourceType.WEBSITE.value)
                .where(SourceRecord.url == root_url)
                .where(SourceRecord.pending_deletion.is_(False))
                .where(SourceRecord.workflow_status != WorkflowStatus.REMOVED.value)
                .limit(1)
            )
            existing_id = existing.id if existing is not None else None

        if existing_id is not None:
            if options.mode == "single_page":
                return self.recrawl_page(existing_id, root_url, options=options)
            return self.recrawl_source(existing_id, options=options)

        with Session(self.engine) as session, session.begin():
            active = session.scalar(
                select(func.count(SourceRecord.id))
                .where(SourceRecord.agent_id == agent_id)
                .where(SourceRecord.source_type == SourceType.WEBSITE.value)
                .where(SourceRecord.workflow_status.in_(_ACTIVE_CRAWL))
                .where(SourceRecord.pending_deletion.is_(False))
            )
            if (active or 0) >= self.settings.max_active_crawls_per_agent:
                raise RateLimitedError(
                    f"agent {agent_id} already has {active} active crawls "
                    f"(limit {self.settings.max_active_crawls_per_agent})"
                )

            source = self._new_source(
                session,
                agent_id=agent_id,
                source_type=SourceType.WEBSITE.value,
                title=title or root_url,
                url=root_url,
                metadata_json={"crawl_options": options.model_dump(mode="json")},
            )
            job_id = self.queue.enqueue(
                JobType.DISCOVER,
                source.id,
                payload=DiscoverPayload(options=options),
                session=session,
            )
            result = {"source_id": source.id, "job_id": job_id, "workflow_status": source.workflow_status}

        logger.info("crawl initiated agent_id=%s source_id=%s url=%s", agent_id, result["source_id"], root_url)
        return result

    def create_source(
        self,
        agent_id: str,
        source_type: SourceType,
        *,
        title: str | None = None,
        url: str | None = None,
        content: str | None = None,
        question: str | None = None,
        answer: str | None = None,
        options: CrawlOptions | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if source_type is SourceType.WEBSITE:
            if not url:
                raise ValidationError("website sources require a url")
            return self.initiate_crawl(agent_id, url, options, title=title)

        if source_type is SourceType.QA:
            if not (question and question.strip()) or not (answer and answer.strip()):
                raise ValidationError("qa sources require a question and an answer")
            content = format_qa(question, answer)
        if not content or not content.strip():
            raise ValidationError(f"{source_type.value} sources require content")

        with Session(self.engine) as session, session.begin():
            source = self._new_source(
                session,
                agent_id=agent_id,
                source_type=source_type.value,
                title=title,
                content=content,
                original_size=len(content.encode("utf-8")),
                metadata_json=dict(metadata or {}),
            )
            self.workflow.transition(session, source, WorkflowStatus.COMPLETED)
            job_id = None
            if self.settings.auto_train:
                job_id = self.queue.enqueue(
                    JobType.CHUNK,
                    source.id,
                    payload=ChunkPayload(reason="created"),
                    session=session,
                )
            result = {"source_id": source.id, "job_id": job_id, "workflow_status": source.workflow_status}

        logger.info(
            "source created agent_id=%s source_id=%s type=%s",
            agent_id,
            result["source_id"],
            source_type.value,
        )
        return result

    def recrawl_source(self, source_id: str, *, options: CrawlOptions | None = None) -> dict[str, Any]:
        """Reset every finished page of a website Source and crawl them again."""
        return self._recrawl(source_id, options=options, urls=None)

    def recrawl_page(
        self,
        source_id: str,
        url: str,
        *,
        options: CrawlOptions | None = None,
    ) -> dict[str, Any]:
        """Crawl one URL of a website Source again.

        The existing SourcePage for `url` goes back to pending with exactly
        one crawl_page job; a URL the Source has never seen gets a new page.
        The URL must be on the Source's host.
        """
        page_url = validate_url(url)
        with Session(self.engine) as session:
            source = self._get_source(session, source_id)
            if source.url and not same_host(page_url, source.url):
                raise ValidationError(f"{page_url} is not on the host of source {source_id}")
        return self._recrawl(source_id, options=options, urls=[page_url])

    def _recrawl(
        self,
        source_id: str,
        *,
        options: CrawlOptions | None,
        urls: list[str] | None,
    ) -> dict[str, Any]:
        with Session(self.engine) as session, session.begin():
            source = self._get_source(session, source_id)
            if source.pending_deletion:
                raise ConflictError(f"source {source_id} is pending deletion")
            if source.source_type != SourceType.WEBSITE.value:
                raise ValidationError("only website sources can be recrawled")
            status = WorkflowStatus(source.workflow_status)
            if status in _BUSY:
                raise ConflictError(f"source {source_id} is already {status.value.lower()}")

            stored = (source.metadata_json or {}).get("crawl_options")
            options = options or (CrawlOptions.model_validate(stored) if stored else CrawlOptions())
            self.workflow.transition(session, source, WorkflowStatus.CRAWLING, explicit=True)
            clear_error_metadata(source)
            metadata = dict(source.metadata_json or {})
            if urls is None:
                metadata["crawl_options"] = options.model_dump(mode="json")
                metadata.pop("recrawl_target_urls", None)
            else:
                metadata["recrawl_target_urls"] = urls
            source.metadata_json = metadata

            enqueued = self.orchestrator.reset_pages_for_recrawl(
                session,
                source,
                respect_robots=options.respect_robots,
                urls=urls,
            )
            job_id = None
            if enqueued == 0 and urls is None:
                job_id = self.queue.enqueue(
                    JobType.DISCOVER,
                    source.id,
                    payload=DiscoverPayload(options=options),
                    session=session,
                )
            result = {
                "source_id": source.id,
                "job_id": job_id,
                "pages_requeued": enqueued,
                "workflow_status": source.workflow_status,
            }

        logger.info("recrawl requested source_id=%s pages=%s urls=%s", source_id, enqueued, urls or "all")
        return result

    def trigger_job_processing(self, max_jobs: int = 10) -> dict[str, Any]:
        if max_jobs <= 0:
            raise ValidationError("max_jobs must be > 0")
        summary = self.pool.drain(max_jobs)
        return {**summary.as_dict(), "stats": self.stats.snapshot()}

    def trigger_status_aggregation(self, parent_source_id: str) -> dict[str, Any]:
        with Session(self.engine) as session:
            self._get_source(session, parent_source_id)
        return self.aggregator.aggregate(parent_source_id).as_dict()

    def start_retraining(self, agent_id: str) -> dict[str, Any]:
        """Queue a fresh chunk + embed pass for every trainable source of an agent."""
        with Session(self.engine) as session, session.begin():
            sources = session.scalars(
                select(SourceRecord)
                .where(SourceRecord.agent_id == agent_id)
                .where(SourceRecord.pending_deletion.is_(False))
                .where(SourceRecord.workflow_status != WorkflowStatus.REMOVED.value)
                .order_by(SourceRecord.created_at.asc(), SourceRecord.id.asc())
            ).all()
            source_ids = [source.id for source in sources]

            if any(source.workflow_status == WorkflowStatus.TRAINING.value for source in sources) or (
                self.queue.has_active([JobType.CHUNK, JobType.EMBED], source_ids, session=session)
            ):
                raise ConflictError(f"training already in progress for agent {agent_id}")

            job_ids: list[str] = []
            skipped: list[str] = []
            for source in sources:
                if not self._is_retrainable(source):
                    skipped.append(source.id)
                    continue
                try:
                    self.workflow.transition(session, source, WorkflowStatus.TRAINING, explicit=True)
                except InvalidTransition as exc:
                    metadata = dict(source.metadata_json or {})
                    metadata["training_error"] = str(exc)
                    source.metadata_json = metadata
                    skipped.append(source.id)
                    continue
                clear_error_metadata(source)
                job_ids.append(
                    self.queue.enqueue(
                        JobType.CHUNK,
                        source.id,
                        payload=ChunkPayload(reason="retrain"),
                        session=session,
                    )
                )

        logger.info("retraining started agent_id=%s sources=%s skipped=%s", agent_id, len(job_ids), len(skipped))
        return {"agent_id": agent_id, "sources": len(job_ids), "job_ids": job_ids, "skipped": skipped}

    def _is_retrainable(self, source: SourceRecord) -> bool:
        status = WorkflowStatus(source.workflow_status)
        if status not in _RETRAINABLE:
            return False
        if source.source_type == SourceType.WEBSITE.value:
            return status is not WorkflowStatus.ERROR or source.completed_pages > 0
        return bool(source.content)

    def request_removal(self, source_id: str, *, requested_by: str | None = None) -> dict[str, Any]:
        with Session(self.engine) as session, session.begin():
            source = self._get_source(session, source_id)
            if source.workflow_status == WorkflowStatus.REMOVED.value:
                return {"source_id": source.id, "job_id": None, "workflow_status": source.workflow_status}

            source.pending_deletion = True
            if source.workflow_status != WorkflowStatus.PENDING_REMOVAL.value:
                self.workflow.transition(session, source, WorkflowStatus.PENDING_REMOVAL)
            job_id = self.queue.enqueue(
                JobType.DELETE,
                source.id,
                payload=DeletePayload(requested_by=requested_by),
                session=session,
            )
            result = {"source_id": source.id, "job_id": job_id, "workflow_status": source.workflow_status}

        logger.info("removal requested source_id=%s job_id=%s", source_id, result["job_id"])
        return result

    def recover_stuck_jobs(self) -> dict[str, Any]:
        recovery = self.queue.recover_stuck(self.settings.stuck_job_timeout_seconds)
        for job in recovery.exhausted:
            self.handlers.on_failure(
                job,
                PermanentFailure(f"job {job.id} exceeded retries after being stuck"),
                permanent=True,
            )
        return {
            "requeued": len(recovery.requeued),
            "failed": len(recovery.exhausted),
            "recovered_jobs": self.stats.snapshot()["recovered_jobs"],
        }


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embed_fallback_dimensions > 0:
        return HashEmbeddingClient(dimensions=settings.embed_fallback_dimensions)
    return HttpEmbeddingClient(
        base_url=settings.embed_base_url,
        model=settings.embed_model,
        timeout_seconds=settings.embed_timeout_seconds,
        dimensions=settings.embed_dimensions or None,
    )
