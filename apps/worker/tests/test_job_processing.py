from datetime import timedelta
from threading import Event

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from sourceflow.models import BackgroundJobRecord, SourceRecord
from sourceflow.types import SourceType
from sourceflow_worker.main import _get_poll_seconds, _get_worker_id, run_iteration, run_worker_loop


class _StopWhenIdle(Event):
    """Stops the loop the first time it would sleep for lack of work."""

    def wait(self, timeout: float | None = None) -> bool:
        self.set()
        return True


def _create_notes(pipeline, count: int) -> list[str]:
    return [
        pipeline.create_source(
            "agent-1",
            SourceType.TEXT,
            content=f"Shift note {index}: the cooling tower fans were inspected and their belts re-tensioned.",
        )["source_id"]
        for index in range(count)
    ]


def test_run_iteration_claims_one_batch(pipeline) -> None:
    _create_notes(pipeline, 3)

    assert run_iteration(pipeline) == 2
    assert run_iteration(pipeline) == 2
    assert run_iteration(pipeline) == 2
    assert run_iteration(pipeline) == 0


def test_worker_loop_drains_until_idle(pipeline, engine) -> None:
    source_ids = _create_notes(pipeline, 3)

    totals = run_worker_loop(pipeline, _StopWhenIdle(), poll_seconds=1, recovery_seconds=60)

    assert totals == {"processed": 6, "recovered": 0}
    with Session(engine) as session:
        statuses = session.scalars(select(SourceRecord.workflow_status).where(SourceRecord.id.in_(source_ids))).all()
    assert statuses == ["TRAINED", "TRAINED", "TRAINED"]


def test_worker_loop_recovers_stuck_jobs_first(pipeline, engine) -> None:
    (source_id,) = _create_notes(pipeline, 1)
    (stuck,) = pipeline.queue.claim("crashed-worker", 1)
    with Session(engine) as session, session.begin():
        session.execute(
            update(BackgroundJobRecord)
            .where(BackgroundJobRecord.id == stuck.id)
            .values(claimed_at=stuck.claimed_at - timedelta(hours=1))
        )

    totals = run_worker_loop(pipeline, _StopWhenIdle(), poll_seconds=1, recovery_seconds=60)

    assert totals["recovered"] == 1
    with Session(engine) as session:
        source = session.get(SourceRecord, source_id)
        assert source.workflow_status == "TRAINED"


def test_worker_env_defaults(monkeypatch) -> None:
    monkeypatch.delenv("WORKER_ID", raising=False)
    monkeypatch.setenv("WORKER_POLL_SECONDS", "0")

    assert _get_worker_id() == "worker-1"
    assert _get_poll_seconds() == 1
