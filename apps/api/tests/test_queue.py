from datetime import timedelta
from threading import Barrier, Thread

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from sourceflow.models import BackgroundJobRecord
from sourceflow.payloads import ChunkPayload
from sourceflow.queue import ClaimedJob, JobQueue
from sourceflow.scheduling import BackoffPolicy
from sourceflow.types import JobStatus, JobType


@pytest.fixture
def queue(engine: Engine, clock) -> JobQueue:
    return JobQueue(engine, clock=clock, backoff=BackoffPolicy(5, 300), default_max_retries=3)


def _job(engine: Engine, job_id: str) -> BackgroundJobRecord:
    with Session(engine) as session:
        job = session.get(BackgroundJobRecord, job_id)
        assert job is not None
        session.expunge(job)
        return job


def test_enqueue_is_idempotent_per_type_and_target(queue: JobQueue, engine: Engine) -> None:
    first = queue.enqueue(JobType.CHUNK, "src-1", payload=ChunkPayload(reason="created"))
    again = queue.enqueue(JobType.CHUNK, "src-1")
    other_type = queue.enqueue(JobType.EMBED, "src-1")
    other_target = queue.enqueue(JobType.CHUNK, "src-2")

    assert again == first
    assert len({first, other_type, other_target}) == 3
    stored = _job(engine, first)
    assert stored.status == "pending"
    assert stored.priority == 6
    assert stored.payload_json == {"job_type": "chunk", "reason": "created"}


def test_claim_orders_by_priority(queue: JobQueue) -> None:
    queue.enqueue(JobType.EMBED, "src-1")
    queue.enqueue(JobType.CRAWL_PAGE, "page-1")
    delete_id = queue.enqueue(JobType.DELETE, "src-2")

    claimed = queue.claim("worker-a", 1)

    assert [job.id for job in claimed] == [delete_id]
    assert claimed[0].claimed_by == "worker-a"
    assert [job.job_type for job in queue.claim("worker-a", 5)] == ["crawl_page", "embed"]
    assert queue.claim("worker-a", 5) == []


def test_retryable_failure_backs_off_until_the_cap(queue: JobQueue, engine: Engine, clock) -> None:
    job_id = queue.enqueue(JobType.EMBED, "src-1")

    (job,) = queue.claim("worker-a", 1)
    outcome = queue.fail(job, "embedding service down")
    assert outcome.status is JobStatus.PENDING
    assert outcome.retry_count == 1
    assert outcome.retry_at == clock.now() + timedelta(seconds=5)
    assert queue.claim("worker-a", 1) == []

    clock.advance(5)
    (job,) = queue.claim("worker-a", 1)
    outcome = queue.fail(job, "embedding service down")
    assert outcome.retry_count == 2
    assert outcome.retry_at == clock.now() + timedelta(seconds=10)

    clock.advance(10)
    (job,) = queue.claim("worker-a", 1)
    outcome = queue.fail(job, "embedding service down")

    assert outcome.permanent
    stored = _job(engine, job_id)
    assert stored.status == "failed"
    assert stored.retry_count == 3
    assert stored.retry_count <= stored.max_retries
    assert stored.error == "embedding service down"
    assert stored.finished_at is not None


def test_non_retryable_failure_is_final(queue: JobQueue, engine: Engine) -> None:
    job_id = queue.enqueue(JobType.CRAWL_PAGE, "page-1")
    (job,) = queue.claim("worker-a", 1)

    outcome = queue.fail(job, "HTTP 404", retryable=False)

    assert outcome.permanent
    assert _job(engine, job_id).retry_count == 1


def test_retry_after_is_a_floor_on_the_backoff(queue: JobQueue, clock) -> None:
    queue.enqueue(JobType.CRAWL_PAGE, "page-1")
    queue.enqueue(JobType.CRAWL_PAGE, "page-2")
    slow, quick = sorted(queue.claim("worker-a", 2), key=lambda job: job.target_id)

    assert queue.fail(slow, "HTTP 429", retry_after=120).retry_at == clock.now() + timedelta(seconds=120)
    assert queue.fail(quick, "HTTP 503", retry_after=1).retry_at == clock.now() + timedelta(seconds=5)


def test_only_one_of_many_concurrent_claimers_wins(queue: JobQueue) -> None:
    queue.enqueue(JobType.DISCOVER, "src-1")
    workers = 8
    barrier = Barrier(workers)
    results: list[list[ClaimedJob]] = []

    def _claim(index: int) -> None:
        barrier.wait()
        results.append(queue.claim(f"worker-{index}", 1))

    threads = [Thread(target=_claim, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [claimed for claimed in results if claimed]
    assert len(results) == workers
    assert len(winners) == 1


def test_complete_records_result(queue: JobQueue, engine: Engine) -> None:
    job_id = queue.enqueue(JobType.AGGREGATE_STATUS, "src-1")
    (job,) = queue.claim("worker-a", 1)

    assert queue.complete(job, {"progress": 100})

    stored = _job(engine, job_id)
    assert stored.status == "completed"
    assert stored.result_json == {"progress": 100}
    assert queue.stats.snapshot()["completed"] == 1


def test_recover_stuck_requeues_and_ignores_late_completion(queue: JobQueue, engine: Engine, clock) -> None:
    job_id = queue.enqueue(JobType.CRAWL_PAGE, "page-1")
    (job,) = queue.claim("worker-a", 1)

    clock.advance(120)
    assert queue.recover_stuck(300).requeued == []

    clock.advance(200)
    result = queue.recover_stuck(timedelta(seconds=300))

    assert result.requeued == [job_id]
    stored = _job(engine, job_id)
    assert stored.status == "pending"
    assert stored.retry_count == 1
    assert stored.claimed_by is None
    assert queue.stats.snapshot()["recovered_jobs"] == 1
    assert queue.complete(job, {"late": True}) is False


def test_recover_stuck_fails_jobs_at_the_retry_cap(queue: JobQueue, engine: Engine, clock) -> None:
    job_id = queue.enqueue(JobType.DISCOVER, "src-1", max_retries=1)
    queue.claim("worker-a", 1)

    clock.advance(301)
    result = queue.recover_stuck(300)

    assert result.requeued == []
    assert [job.id for job in result.exhausted] == [job_id]
    assert _job(engine, job_id).status == "failed"


def test_cancel_and_has_active(queue: JobQueue) -> None:
    queue.enqueue(JobType.CHUNK, "src-1")
    queue.enqueue(JobType.CRAWL_PAGE, "page-1")

    assert queue.has_active([JobType.CHUNK, JobType.EMBED], ["src-1"])
    assert not queue.has_active([JobType.EMBED], ["src-1"])

    assert queue.cancel_for_targets(["src-1", "page-1"], "source removed") == 2
    assert not queue.has_active([JobType.CHUNK], ["src-1"])


def test_backoff_policy_doubles_and_caps() -> None:
    policy = BackoffPolicy(base_seconds=5, max_seconds=60)

    assert policy.delay(0) == timedelta(seconds=5)
    assert policy.delay(1) == timedelta(seconds=10)
    assert policy.delay(2) == timedelta(seconds=20)
    assert policy.delay(10) == timedelta(seconds=60)
