from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.aggregator import StatusAggregator
from sourceflow.chunking.service import clear_chunks, rebuild_chunks
from sourceflow.crawl.orchestrator import CrawlOrchestrator
from sourceflow.embedding.generator import EmbeddingGenerator
from sourceflow.errors import (
    IntegrityError,
    InvalidTransition,
    PipelineError,
    SourceCancelled,
    ValidationError,
)
from sourceflow.models import SourcePageRecord, SourceRecord
from sourceflow.payloads import (
    AggregatePayload,
    ChunkPayload,
    CrawlPagePayload,
    DeletePayload,
    DiscoverPayload,
    EmbedPayload,
    parse_payload,
)
from sourceflow.queue import ClaimedJob, JobQueue
from sourceflow.scheduling import Clock, SystemClock
from sourceflow.types import JobType, WorkflowStatus
from sourceflow.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

# A permanent failure of these steps leaves the Source unusable.
CRITICAL_JOB_TYPES = frozenset({JobType.DISCOVER, JobType.CHUNK, JobType.EMBED})
ERROR_METADATA_KEYS = ("last_error", "last_error_job_type", "failed_at")

Handler = Callable[[ClaimedJob, Any], dict[str, Any]]


def clear_error_metadata(source: SourceRecord) -> None:
    if not source.metadata_json:
        return
    metadata = {key: value for key, value in source.metadata_json.items() if key not in ERROR_METADATA_KEYS}
    if metadata != source.metadata_json:
        source.metadata_json = metadata


class JobHandlers:
    """Executes one claimed job per call and reports failures back to its owner."""

    def __init__(
        self,
        engine: Engine,
        *,
        orchestrator: CrawlOrchestrator,
        aggregator: StatusAggregator,
        embedder: EmbeddingGenerator,
        queue: JobQueue,
        workflow: WorkflowStateMachine,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._orchestrator = orchestrator
        self._aggregator = aggregator
        self._embedder = embedder
        self._queue = queue
        self._workflow = workflow
        self._clock = clock or SystemClock()
        self._dispatch: dict[JobType, Handler] = {
            JobType.DISCOVER: self._discover,
            JobType.CRAWL_PAGE: self._crawl_page,
            JobType.CHUNK: self._chunk,
            JobType.EMBED: self._embed,
            JobType.AGGREGATE_STATUS: self._aggregate,
            JobType.DELETE: self._delete,
        }

    def handle(self, job: ClaimedJob) -> dict[str, Any]:
        try:
            job_type = JobType(job.job_type)
            payload = parse_payload(job.job_type, job.payload_json)
        except (ValueError, PayloadValidationError) as exc:
            raise ValidationError(f"invalid job {job.id}: {exc}") from exc

        try:
            return self._dispatch[job_type](job, payload)
        except SourceCancelled as exc:
            logger.info("job skipped job_id=%s job_type=%s reason=%s", job.id, job.job_type, exc)
            return {"skipped": "pending_deletion", "target_id": job.target_id}

    def on_failure(self, job: ClaimedJob, error: BaseException, *, permanent: bool) -> None:
        """Surface a failed attempt to the page or Source that owns the job."""
        message = str(error) or type(error).__name__
        job_type = JobType(job.job_type)

        if job_type is JobType.CRAWL_PAGE:
            if permanent:
                self._orchestrator.mark_page_failed(job.target_id, message)
            else:
                self._orchestrator.note_page_retry(job.target_id, message)
            return

        if not permanent or isinstance(error, IntegrityError):
            return
        self._surface_source_error(
            job.target_id,
            job_type,
            message,
            move_to_error=job_type in CRITICAL_JOB_TYPES,
        )

    def _surface_source_error(
        self,
        source_id: str,
        job_type: JobType,
        message: str,
        *,
        move_to_error: bool,
    ) -> None:
        with Session(self._engine) as session, session.begin():
            source = session.get(SourceRecord, source_id)
            if source is None:
                return
            metadata = dict(source.metadata_json or {})
            metadata.update(
                last_error=message,
                last_error_job_type=job_type.value,
                failed_at=self._clock.now().isoformat(),
            )
            source.metadata_json = metadata
            if not move_to_error or source.pending_deletion:
                return
            if (
                job_type is JobType.DISCOVER
                and source.workflow_status == WorkflowStatus.CRAWLING.value
                and source.previous_status in (WorkflowStatus.COMPLETED.value, WorkflowStatus.TRAINED.value)
            ):
                # A failed recrawl keeps the content the Source already had.
                self._workflow.rollback(session, source)
                return
            try:
                self._workflow.transition(session, source, WorkflowStatus.ERROR)
            except InvalidTransition:
                logger.warning(
                    "source not moved to ERROR source_id=%s status=%s",
                    source_id,
                    source.workflow_status,
                )

    def _live_source(self, session: Session, source_id: str) -> SourceRecord:
        source = session.get(SourceRecord, source_id)
        if source is None:
            raise IntegrityError(f"source {source_id} does not exist")
        if source.workflow_status == WorkflowStatus.REMOVED.value:
            raise IntegrityError(f"source {source_id} has been removed")
        if source.pending_deletion:
            raise SourceCancelled(f"source {source_id} is pending deletion")
        return source

    def _discover(self, job: ClaimedJob, payload: DiscoverPayload) -> dict[str, Any]:
        return self._orchestrator.discover(job.target_id, payload.options).as_dict()

    def _crawl_page(self, job: ClaimedJob, payload: CrawlPagePayload) -> dict[str, Any]:
        return self._orchestrator.crawl_page(job.target_id, payload)

    def _chunk(self, job: ClaimedJob, payload: ChunkPayload) -> dict[str, Any]:
        with Session(self._engine) as session, session.begin():
            source = self._live_source(session, job.target_id)
            if source.workflow_status != WorkflowStatus.TRAINING.value:
                self._workflow.transition(session, source, WorkflowStatus.TRAINING)
            summary = rebuild_chunks(session, source)
            self._queue.enqueue(JobType.EMBED, source.id, payload=EmbedPayload(), session=session)
            result = summary.as_dict()
        result["reason"] = payload.reason
        return result

    def _embed(self, job: ClaimedJob, payload: EmbedPayload) -> dict[str, Any]:
        with Session(self._engine) as session, session.begin():
            source = self._live_source(session, job.target_id)
            if source.workflow_status == WorkflowStatus.TRAINED.value:
                return {"source_id": source.id, "skipped": WorkflowStatus.TRAINED.value}
            if source.workflow_status != WorkflowStatus.TRAINING.value:
                raise InvalidTransition(source.id, source.workflow_status, WorkflowStatus.TRAINED.value)

            created = self._embedder.embed_missing(session, source.id, batch_size=payload.batch_size)
            clear_error_metadata(source)
            metadata = dict(source.metadata_json or {})
            metadata.update(
                embedding_model=self._embedder.model,
                trained_at=self._clock.now().isoformat(),
            )
            source.metadata_json = metadata
            self._workflow.transition(session, source, WorkflowStatus.TRAINED)
            return {"source_id": source.id, "embeddings": created, "model": self._embedder.model}

    def _aggregate(self, job: ClaimedJob, payload: AggregatePayload) -> dict[str, Any]:
        result = self._aggregator.aggregate(job.target_id).as_dict()
        result["trigger"] = payload.trigger
        return result

    def _delete(self, job: ClaimedJob, payload: DeletePayload) -> dict[str, Any]:
        """Remove a Source's derived data, leaving a tombstone row behind."""
        with Session(self._engine) as session, session.begin():
            source = session.get(SourceRecord, job.target_id)
            if source is None:
                raise IntegrityError(f"source {job.target_id} does not exist")
            if source.workflow_status == WorkflowStatus.REMOVED.value:
                return {"source_id": source.id, "skipped": WorkflowStatus.REMOVED.value}
            if source.workflow_status != WorkflowStatus.PENDING_REMOVAL.value:
                source.pending_deletion = True
                self._workflow.transition(session, source, WorkflowStatus.PENDING_REMOVAL)

            page_ids = list(
                session.scalars(
                    select(SourcePageRecord.id).where(SourcePageRecord.parent_source_id == source.id)
                ).all()
            )
            cancelled = self._queue.cancel_for_targets(
                [source.id, *page_ids],
                "source removed",
                session=session,
            )
            chunks = clear_chunks(session, source.id)
            pages = session.execute(
                delete(SourcePageRecord)
                .where(SourcePageRecord.parent_source_id == source.id)
                .execution_options(synchronize_session=False)
            ).rowcount

            source.content = None
            source.original_size = 0
            source.compressed_size = 0
            self._workflow.transition(session, source, WorkflowStatus.REMOVED)

        logger.info(
            "source removed source_id=%s pages=%s chunks=%s cancelled_jobs=%s requested_by=%s",
            job.target_id,
            pages,
            chunks,
            cancelled,
            payload.requested_by,
        )
        return {"source_id": job.target_id, "pages": pages, "chunks": chunks, "cancelled_jobs": cancelled}


def is_retryable(error: BaseException) -> bool:
    """Classify a handler exception; anything unclassified is retried."""
    if isinstance(error, PipelineError):
        return error.retryable
    return True

