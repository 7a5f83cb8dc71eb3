"""Durable background job queue backed by the `background_jobs` table.

The claim is a conditional update (`... WHERE status = 'pending'`), so two
workers racing for the same row cannot both win. PostgreSQL additionally
skips rows another transaction has locked while selecting candidates.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from threading import Lock
from typing import Any

from pydantic import BaseModel
from sqlalchemy import and_, exists, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.models import BackgroundJobRecord, new_id
from sourceflow.payloads import dump_payload
from sourceflow.scheduling import BackoffPolicy, Clock, SystemClock
from sourceflow.types import JOB_PRIORITY, JobStatus, JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    target_id: str
    priority: int
    retry_count: int
    max_retries: int
    payload_json: dict[str, Any] | None
    claimed_by: str | None
    claimed_at: datetime | None


@dataclass(frozen=True)
class FailOutcome:
    job_id: str
    status: JobStatus | None
    retry_count: int
    retry_at: datetime | None = None

    @property
    def stale(self) -> bool:
        return self.status is None

    @property
    def permanent(self) -> bool:
        return self.status is JobStatus.FAILED


@dataclass(frozen=True)
class RecoveryResult:
    requeued: list[str]
    exhausted: list[ClaimedJob]


@dataclass
class QueueStats:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    recovered_jobs: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "claimed": self.claimed,
                "completed": self.completed,
                "retried": self.retried,
                "failed": self.failed,
                "recovered_jobs": self.recovered_jobs,
            }


def _to_claimed(record: BackgroundJobRecord) -> ClaimedJob:
    return ClaimedJob(
        id=record.id,
        job_type=record.job_type,
        target_id=record.target_id,
        priority=record.priority,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        payload_json=record.payload_json,
        claimed_by=record.claimed_by,
        claimed_at=record.claimed_at,
    )


def _held_by(job: ClaimedJob):
    return and_(
        BackgroundJobRecord.id == job.id,
        BackgroundJobRecord.status == JobStatus.PROCESSING.value,
        BackgroundJobRecord.claimed_by == job.claimed_by,
        BackgroundJobRecord.claimed_at == job.claimed_at,
    )


class JobQueue:
    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        default_max_retries: int = 3,
        stats: QueueStats | None = None,
    ) -> None:
        self._engine = engine
        self._clock = clock or SystemClock()
        self._backoff = backoff or BackoffPolicy()
        self._default_max_retries = default_max_retries
        self.stats = stats or QueueStats()

    @contextmanager
    def _scope(self, session: Session | None) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with Session(self._engine) as own_session, own_session.begin():
            yield own_session

    def enqueue(
        self,
        job_type: JobType,
        target_id: str,
        *,
        priority: int | None = None,
        payload: BaseModel | None = None,
        max_retries: int | None = None,
        session: Session | None = None,
    ) -> str:
        """Insert a pending job unless one is already pending for the same target."""
        now = self._clock.now()
        with self._scope(session) as scoped:
            existing = scoped.scalar(
                select(BackgroundJobRecord.id)
                .where(BackgroundJobRecord.job_type == job_type.value)
                .where(BackgroundJobRecord.target_id == target_id)
                .where(BackgroundJobRecord.status == JobStatus.PENDING.value)
                .limit(1)
            )
            if existing is not None:
                logger.debug(
                    "enqueue deduplicated job_type=%s target_id=%s job_id=%s",
                    job_type.value,
                    target_id,
                    existing,
                )
                return existing

            job = BackgroundJobRecord(
                id=new_id(),
                job_type=job_type.value,
                target_id=target_id,
                status=JobStatus.PENDING.value,
                priority=priority if priority is not None else JOB_PRIORITY[job_type],
                retry_count=0,
                max_retries=max_retries if max_retries is not None else self._default_max_retries,
                payload_json=dump_payload(payload),
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            scoped.add(job)
            scoped.flush()
            logger.info(
                "job enqueued job_id=%s job_type=%s target_id=%s priority=%s",
                job.id,
                job.job_type,
                target_id,
                job.priority,
            )
            return job.id

    def claim(self, worker_id: str, batch_size: int) -> list[ClaimedJob]:
        if batch_size <= 0:
            return []

        now = self._clock.now()
        with Session(self._engine) as session, session.begin():
            candidates = (
                select(BackgroundJobRecord.id)
                .where(BackgroundJobRecord.status == JobStatus.PENDING.value)
                .where(BackgroundJobRecord.available_at <= now)
                .order_by(
                    BackgroundJobRecord.priority.asc(),
                    BackgroundJobRecord.created_at.asc(),
                    BackgroundJobRecord.id.asc(),
                )
                .limit(batch_size)
            )
            if self._engine.dialect.name == "postgresql":
                candidates = candidates.with_for_update(skip_locked=True)

            claimed_ids: list[str] = []
            for job_id in session.scalars(candidates).all():
                result = session.execute(
                    update(BackgroundJobRecord)
                    .where(BackgroundJobRecord.id == job_id)
                    .where(BackgroundJobRecord.status == JobStatus.PENDING.value)
                    .values(
                        status=JobStatus.PROCESSING.value,
                        claimed_by=worker_id,
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)

            if not claimed_ids:
                return []

            records = session.scalars(
                select(BackgroundJobRecord)
                .where(BackgroundJobRecord.id.in_(claimed_ids))
                .order_by(BackgroundJobRecord.priority.asc(), BackgroundJobRecord.created_at.asc())
            ).all()
            jobs = [_to_claimed(record) for record in records]

        self.stats.increment("claimed", len(jobs))
        logger.debug("jobs claimed worker_id=%s count=%s", worker_id, len(jobs))
        return jobs

    def complete(self, job: ClaimedJob, result: dict[str, Any] | None = None) -> bool:
        now = self._clock.now()
        with Session(self._engine) as session, session.begin():
            updated = session.execute(
                update(BackgroundJobRecord)
                .where(_held_by(job))
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=result,
                    error=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        if updated.rowcount != 1:
            logger.warning("stale completion ignored job_id=%s worker_id=%s", job.id, job.claimed_by)
            return False

        self.stats.increment("completed")
        return True

    def fail(
        self,
        job: ClaimedJob,
        error: str,
        *,
        retryable: bool = True,
        retry_after: float | None = None,
    ) -> FailOutcome:
        """Record a failed attempt.

        Below the retry cap a retryable job goes back to pending with an
        exponential backoff; otherwise it becomes failed for good.
        `retry_after` (seconds, e.g. from a Retry-After header) is a floor
        on the backoff delay.
        """
        now = self._clock.now()
        with Session(self._engine) as session, session.begin():
            record = session.scalar(select(BackgroundJobRecord).where(_held_by(job)))
            if record is None:
                logger.warning("stale failure ignored job_id=%s worker_id=%s", job.id, job.claimed_by)
                return FailOutcome(job_id=job.id, status=None, retry_count=job.retry_count)

            max_retries = record.max_retries
            previous_retries = record.retry_count
            next_retries = min(previous_retries + 1, max_retries)
            requeue = retryable and next_retries < max_retries
            retry_at = None
            if requeue:
                delay = self._backoff.delay(previous_retries)
                if retry_after is not None:
                    delay = max(delay, timedelta(seconds=retry_after))
                retry_at = now + delay

            values: dict[str, Any] = {
                "retry_count": next_retries,
                "error": error,
                "updated_at": now,
            }
            if requeue:
                values.update(
                    status=JobStatus.PENDING.value,
                    available_at=retry_at,
                    claimed_by=None,
                    claimed_at=None,
                )
            else:
                values.update(status=JobStatus.FAILED.value, finished_at=now)

            updated = session.execute(
                update(BackgroundJobRecord)
                .where(_held_by(job))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                return FailOutcome(job_id=job.id, status=None, retry_count=job.retry_count)

        if requeue:
            self.stats.increment("retried")
            logger.info(
                "job requeued job_id=%s attempts=%s/%s retry_at=%s error=%s",
                job.id,
                next_retries,
                max_retries,
                retry_at.isoformat() if retry_at else None,
                error,
            )
            return FailOutcome(
                job_id=job.id,
                status=JobStatus.PENDING,
                retry_count=next_retries,
                retry_at=retry_at,
            )

        self.stats.increment("failed")
        logger.warning(
            "job failed permanently job_id=%s job_type=%s attempts=%s/%s error=%s",
            job.id,
            job.job_type,
            next_retries,
            max_retries,
            error,
        )
        return FailOutcome(job_id=job.id, status=JobStatus.FAILED, retry_count=next_retries)

    def recover_stuck(self, timeout: timedelta | float) -> RecoveryResult:
        """Requeue jobs whose worker has held them longer than `timeout`."""
        if not isinstance(timeout, timedelta):
            timeout = timedelta(seconds=timeout)
        now = self._clock.now()
        cutoff = now - timeout

        requeued: list[str] = []
        exhausted: list[ClaimedJob] = []
        with Session(self._engine) as session, session.begin():
            stuck = session.scalars(
                select(BackgroundJobRecord)
                .where(BackgroundJobRecord.status == JobStatus.PROCESSING.value)
                .where(BackgroundJobRecord.claimed_at < cutoff)
                .order_by(BackgroundJobRecord.claimed_at.asc())
            ).all()

            for record in stuck:
                snapshot = _to_claimed(record)
                next_retries = min(record.retry_count + 1, record.max_retries)
                give_up = next_retries >= record.max_retries
                values: dict[str, Any] = {
                    "retry_count": next_retries,
                    "claimed_by": None,
                    "claimed_at": None,
                    "updated_at": now,
                    "error": f"recovered after worker timeout (claimed by {record.claimed_by})",
                }
                if give_up:
                    values.update(status=JobStatus.FAILED.value, finished_at=now)
                else:
                    values.update(status=JobStatus.PENDING.value, available_at=now)

                updated = session.execute(
                    update(BackgroundJobRecord)
                    .where(_held_by(snapshot))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount != 1:
                    continue
                if give_up:
                    exhausted.append(snapshot)
                else:
                    requeued.append(record.id)

        if requeued:
            self.stats.increment("recovered_jobs", len(requeued))
        if exhausted:
            self.stats.increment("failed", len(exhausted))
        if requeued or exhausted:
            logger.warning(
                "stuck jobs recovered requeued=%s exhausted=%s timeout_s=%s",
                len(requeued),
                len(exhausted),
                timeout.total_seconds(),
            )
        return RecoveryResult(requeued=requeued, exhausted=exhausted)

    def cancel_for_targets(
        self,
        target_ids: Iterable[str],
        reason: str,
        *,
        session: Session | None = None,
    ) -> int:
        ids = list(target_ids)
        if not ids:
            return 0
        now = self._clock.now()
        with self._scope(session) as scoped:
            result = scoped.execute(
                update(BackgroundJobRecord)
                .where(BackgroundJobRecord.target_id.in_(ids))
                .where(BackgroundJobRecord.status == JobStatus.PENDING.value)
                .values(status=JobStatus.FAILED.value, error=reason, finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    def has_active(
        self,
        job_types: Iterable[JobType],
        target_ids: Iterable[str],
        *,
        session: Session | None = None,
    ) -> bool:
        ids = list(target_ids)
        if not ids:
            return False
        with self._scope(session) as scoped:
            return bool(
                scoped.scalar(
                    select(
                        exists()
                        .where(BackgroundJobRecord.job_type.in_([job_type.value for job_type in job_types]))
                        .where(BackgroundJobRecord.target_id.in_(ids))
                        .where(
                            BackgroundJobRecord.status.in_(
                                [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
                            )
                        )
                    )
                )
            )
