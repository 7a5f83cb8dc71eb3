"""Roll page outcomes up into their parent Source.

The parent's status while crawling is derived purely from its pages:
all settled with at least one success is COMPLETED, all settled with none
is ERROR, anything else in motion is CRAWLING.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.chunking.compression import compression_ratio
from sourceflow.errors import IntegrityError
from sourceflow.models import SourcePageRecord, SourceRecord
from sourceflow.payloads import ChunkPayload
from sourceflow.queue import JobQueue
from sourceflow.scheduling import Clock, SystemClock
from sourceflow.types import JobType, PageStatus, WorkflowStatus
from sourceflow.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

_DRIVABLE = frozenset({WorkflowStatus.CREATED, WorkflowStatus.CRAWLING})
_INACTIVE = frozenset({WorkflowStatus.PENDING_REMOVAL, WorkflowStatus.REMOVED})


@dataclass(frozen=True)
class PageCounts:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    content_size: int = 0
    compressed_size: int = 0
    chunks_created: int = 0

    @property
    def settled(self) -> int:
        return self.completed + self.failed

    @property
    def progress(self) -> int:
        if self.total == 0:
            return 0
        return round(self.settled / self.total * 100)


@dataclass(frozen=True)
class AggregationResult:
    source_id: str
    workflow_status: str | None
    progress: int
    counts: PageCounts
    changed: bool
    skipped: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "workflow_status": self.workflow_status,
            "progress": self.progress,
            "total_pages": self.counts.total,
            "completed_pages": self.counts.completed,
            "failed_pages": self.counts.failed,
            "in_progress_pages": self.counts.in_progress,
            "changed": self.changed,
            "skipped": self.skipped,
        }


def derive_status(counts: PageCounts) -> WorkflowStatus | None:
    if counts.total == 0:
        return None
    if counts.settled == counts.total:
        return WorkflowStatus.COMPLETED if counts.completed > 0 else WorkflowStatus.ERROR
    if counts.settled + counts.in_progress > 0:
        return WorkflowStatus.CRAWLING
    return None


def count_pages(session: Session, parent_id: str) -> PageCounts:
    rows = session.execute(
        select(
            SourcePageRecord.status,
            func.count(SourcePageRecord.id),
            func.coalesce(func.sum(SourcePageRecord.content_size), 0),
            func.coalesce(func.sum(SourcePageRecord.compressed_size), 0),
            func.coalesce(func.sum(SourcePageRecord.chunks_created), 0),
        )
        .where(SourcePageRecord.parent_source_id == parent_id)
        .group_by(SourcePageRecord.status)
    ).all()

    by_status: dict[str, int] = {}
    content_size = compressed_size = chunks_created = 0
    for status, count, content, compressed, chunks in rows:
        by_status[status] = int(count)
        content_size += int(content)
        compressed_size += int(compressed)
        chunks_created += int(chunks)

    return PageCounts(
        total=sum(by_status.values()),
        pending=by_status.get(PageStatus.PENDING.value, 0),
        in_progress=by_status.get(PageStatus.IN_PROGRESS.value, 0),
        completed=by_status.get(PageStatus.COMPLETED.value, 0),
        failed=by_status.get(PageStatus.FAILED.value, 0),
        content_size=content_size,
        compressed_size=compressed_size,
        chunks_created=chunks_created,
    )


class StatusAggregator:
    def __init__(
        self,
        engine: Engine,
        *,
        workflow: WorkflowStateMachine,
        queue: JobQueue,
        auto_train: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._workflow = workflow
        self._queue = queue
        self._auto_train = auto_train
        self._clock = clock or SystemClock()

    def aggregate(self, parent_id: str) -> AggregationResult:
        """Recompute the parent's rollup; write only what actually differs.

        Everything is re-read inside the write transaction, so concurrent
        runs converge on the same values and a repeat run is a no-op.
        """
        with Session(self._engine) as session, session.begin():
            parent = session.scalar(
                select(SourceRecord).where(SourceRecord.id == parent_id).with_for_update()
            )
            if parent is None:
                raise IntegrityError(f"parent source {parent_id} does not exist")

            current = WorkflowStatus(parent.workflow_status)
            if parent.pending_deletion or current in _INACTIVE:
                return AggregationResult(
                    source_id=parent_id,
                    workflow_status=current.value,
                    progress=parent.progress,
                    counts=PageCounts(),
                    changed=False,
                    skipped="pending_deletion",
                )

            counts = count_pages(session, parent_id)
            if counts.total == 0:
                return AggregationResult(
                    source_id=parent_id,
                    workflow_status=current.value,
                    progress=parent.progress,
                    counts=counts,
                    changed=False,
                )

            changed = self._refresh_counters(parent, counts)
            derived = derive_status(counts)
            reached_completed = False
            if current in _DRIVABLE and derived is not None and derived is not current:
                if current is WorkflowStatus.CREATED and derived is WorkflowStatus.COMPLETED:
                    self._workflow.transition(session, parent, WorkflowStatus.CRAWLING)
                self._workflow.transition(session, parent, derived)
                changed = True
                reached_completed = derived is WorkflowStatus.COMPLETED
                if derived is WorkflowStatus.ERROR:
                    self._record_all_failed(parent)

            if reached_completed and self._auto_train:
                self._queue.enqueue(
                    JobType.CHUNK,
                    parent.id,
                    payload=ChunkPayload(reason="crawl_completed"),
                    session=session,
                )

            if changed:
                parent.updated_at = self._clock.now()
                logger.info(
                    "source aggregated source_id=%s status=%s progress=%s completed=%s failed=%s total=%s",
                    parent_id,
                    parent.workflow_status,
                    counts.progress,
                    counts.completed,
                    counts.failed,
                    counts.total,
                )

            return AggregationResult(
                source_id=parent_id,
                workflow_status=parent.workflow_status,
                progress=counts.progress,
                counts=counts,
                changed=changed,
            )

    def _refresh_counters(self, parent: SourceRecord, counts: PageCounts) -> bool:
        desired: dict[str, Any] = {
            "progress": counts.progress,
            "total_pages": counts.total,
            "completed_pages": counts.completed,
            "failed_pages": counts.failed,
            "original_size": counts.content_size,
            "compressed_size": counts.compressed_size,
        }
        changed = False
        for name, value in desired.items():
            if getattr(parent, name) != value:
                setattr(parent, name, value)
                changed = True

        metadata = dict(parent.metadata_json or {})
        rollup = {
            "compression_ratio": compression_ratio(counts.content_size, counts.compressed_size),
            "chunks_created": counts.chunks_created,
        }
        if any(metadata.get(key) != value for key, value in rollup.items()):
            metadata.update(rollup)
            parent.metadata_json = metadata
            changed = True
        return changed

    def _record_all_failed(self, parent: SourceRecord) -> None:
        metadata = dict(parent.metadata_json or {})
        metadata.update(
            last_error="every page failed to crawl",
            last_error_job_type=JobType.CRAWL_PAGE.value,
            failed_at=self._clock.now().isoformat(),
        )
        parent.metadata_json = metadata
