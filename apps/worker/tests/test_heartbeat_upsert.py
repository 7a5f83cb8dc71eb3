from datetime import datetime, timezone
from threading import Event

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session

from sourceflow.models import WorkerHeartbeatRecord
from sourceflow_worker import main as worker_main
from sourceflow_worker.main import _upsert_heartbeat, send_heartbeat_once


def test_upsert_heartbeat_inserts_and_updates_single_row(tmp_path) -> None:
    sqlite_db_path = tmp_path / "heartbeat-tests.db"
    engine = create_engine(f"sqlite+pysqlite:///{sqlite_db_path}")

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                CREATE TABLE worker_heartbeats (
                    worker_id VARCHAR(64) PRIMARY KEY,
                    last_heartbeat TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )

    _upsert_heartbeat(engine, "worker-test", datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc))
    _upsert_heartbeat(engine, "worker-test", datetime(2026, 1, 1, 0, 1, 0, tzinfo=timezone.utc))

    with engine.connect() as connection:
        row_count = connection.execute(text("SELECT COUNT(*) FROM worker_heartbeats")).scalar_one()
        last_heartbeat = connection.execute(
            text("SELECT last_heartbeat FROM worker_heartbeats WHERE worker_id = :worker_id"),
            {"worker_id": "worker-test"},
        ).scalar_one()

    assert row_count == 1
    assert "2026-01-01 00:01:00" in str(last_heartbeat)
    engine.dispose()


def test_send_heartbeat_once_writes_the_model_table(engine) -> None:
    assert send_heartbeat_once(engine, "worker-a") is True
    assert send_heartbeat_once(engine, "worker-a") is True

    with Session(engine) as session:
        rows = session.scalars(select(WorkerHeartbeatRecord)).all()

    assert [row.worker_id for row in rows] == ["worker-a"]


def test_send_heartbeat_once_gives_up_when_stopped(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'no-table.db'}")
    stop_event = Event()
    delays: list[float] = []

    def fake_sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) == 3:
            stop_event.set()

    monkeypatch.setenv("WORKER_DB_RETRY_BASE_SECONDS", "1")
    monkeypatch.setenv("WORKER_DB_RETRY_MAX_SECONDS", "2")
    monkeypatch.setattr(worker_main, "sleep", fake_sleep)

    assert send_heartbeat_once(engine, "worker-a", stop_event=stop_event) is False
    assert len(delays) == 3
    assert 1.0 <= delays[0] < 1.3
    assert 2.0 <= delays[2] < 2.5
    engine.dispose()
