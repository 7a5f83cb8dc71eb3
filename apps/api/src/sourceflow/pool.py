from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from sourceflow.errors import IntegrityError, PipelineError
from sourceflow.events import EventBus, JobFinished
from sourceflow.handlers import is_retryable
from sourceflow.queue import ClaimedJob, JobQueue
from sourceflow.types import JobStatus, JobType

logger = logging.getLogger(__name__)


class JobRunner(Protocol):
    def handle(self, job: ClaimedJob) -> dict[str, Any]: ...

    def on_failure(self, job: ClaimedJob, error: BaseException, *, permanent: bool) -> None: ...


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    job_type: str
    target_id: str
    status: str
    error: str | None = None


@dataclass
class DrainSummary:
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    stale: int = 0
    outcomes: list[JobOutcome] = field(default_factory=list)

    def add(self, outcome: JobOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.status == JobStatus.COMPLETED.value:
            self.completed += 1
        elif outcome.status == JobStatus.PENDING.value:
            self.retried += 1
        elif outcome.status == JobStatus.FAILED.value:
            self.failed += 1
        else:
            self.stale += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "stale": self.stale,
        }


class WorkerPool:
    """Claims batches from the queue and runs them on a bounded thread pool.

    No handler exception escapes: every one is routed to `JobQueue.fail`.
    """

    def __init__(
        self,
        queue: JobQueue,
        runner: JobRunner,
        *,
        worker_id: str,
        batch_size: int = 5,
        concurrency: int = 4,
        bus: EventBus | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self._queue = queue
        self._runner = runner
        self._worker_id = worker_id
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._bus = bus

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run_once(self, max_jobs: int | None = None) -> list[JobOutcome]:
        limit = self._batch_size if max_jobs is None else min(self._batch_size, max_jobs)
        jobs = self._queue.claim(self._worker_id, limit)
        if not jobs:
            return []
        if len(jobs) == 1:
            return [self._execute(jobs[0])]

        with ThreadPoolExecutor(
            max_workers=min(self._concurrency, len(jobs)),
            thread_name_prefix=f"{self._worker_id}-job",
        ) as executor:
            return list(executor.map(self._execute, jobs))

    def drain(self, max_jobs: int = 100) -> DrainSummary:
        """Process jobs until none are claimable or `max_jobs` have run."""
        summary = DrainSummary()
        while summary.processed < max_jobs:
            outcomes = self.run_once(max_jobs - summary.processed)
            if not outcomes:
                break
            for outcome in outcomes:
                summary.add(outcome)
        return summary

    def _execute(self, job: ClaimedJob) -> JobOutcome:
        try:
            result = self._runner.handle(job)
        except Exception as exc:
            return self._handle_failure(job, exc)

        if not self._queue.complete(job, result):
            return JobOutcome(job.id, job.job_type, job.target_id, "stale")

        logger.info("job completed job_id=%s job_type=%s target_id=%s", job.id, job.job_type, job.target_id)
        self._publish(job, JobStatus.COMPLETED, (result or {}).get("source_id"))
        return JobOutcome(job.id, job.job_type, job.target_id, JobStatus.COMPLETED.value)

    def _handle_failure(self, job: ClaimedJob, exc: Exception) -> JobOutcome:
        retryable = is_retryable(exc)
        message = str(exc) or type(exc).__name__
        if isinstance(exc, IntegrityError):
            logger.error("job integrity failure job_id=%s job_type=%s error=%s", job.id, job.job_type, message)
        elif retryable:
            logger.warning(
                "job attempt failed job_id=%s job_type=%s error=%s",
                job.id,
                job.job_type,
                message,
                exc_info=not isinstance(exc, PipelineError),
            )
        else:
            logger.error("job failed job_id=%s job_type=%s error=%s", job.id, job.job_type, message)

        outcome = self._queue.fail(
            job,
            message,
            retryable=retryable,
            retry_after=getattr(exc, "retry_after", None),
        )
        if outcome.stale:
            return JobOutcome(job.id, job.job_type, job.target_id, "stale", message)

        try:
            self._runner.on_failure(job, exc, permanent=outcome.permanent)
        except Exception:
            logger.exception("failure reporting failed job_id=%s job_type=%s", job.id, job.job_type)

        if outcome.permanent:
            self._publish(job, JobStatus.FAILED, None)
        return JobOutcome(job.id, job.job_type, job.target_id, outcome.status.value, message)

    def _publish(self, job: ClaimedJob, status: JobStatus, source_id: str | None) -> None:
        if self._bus is None:
            return
        if source_id is None and job.job_type != JobType.CRAWL_PAGE.value:
            source_id = job.target_id
        self._bus.publish(
            JobFinished(
                job_id=job.id,
                job_type=job.job_type,
                target_id=job.target_id,
                status=status.value,
                source_id=source_id,
            )
        )
