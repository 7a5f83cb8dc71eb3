from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from random import random
import signal
from threading import Event, Thread
from time import monotonic, sleep
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from sourceflow.config import get_settings
from sourceflow.db import build_engine
from sourceflow.logging_config import setup_logging
from sourceflow.pipeline import Pipeline

logger = logging.getLogger("sourceflow_worker")


def _get_worker_id() -> str:
    return os.getenv("WORKER_ID", "worker-1")


def _get_heartbeat_seconds() -> int:
    value = os.getenv("WORKER_HEARTBEAT_SECONDS", "30")
    return max(1, int(value))


def _get_poll_seconds() -> int:
    value = os.getenv("WORKER_POLL_SECONDS", "5")
    return max(1, int(value))


def _get_recovery_seconds() -> int:
    value = os.getenv("WORKER_RECOVERY_SECONDS", "60")
    return max(1, int(value))


def _get_retry_base_seconds() -> float:
    value = os.getenv("WORKER_DB_RETRY_BASE_SECONDS", "1")
    return max(0.1, float(value))


def _get_retry_max_seconds() -> float:
    value = os.getenv("WORKER_DB_RETRY_MAX_SECONDS", "30")
    return max(0.5, float(value))


def _upsert_heartbeat(engine: Engine, worker_id: str, now: datetime) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO worker_heartbeats (worker_id, last_heartbeat, updated_at)
                VALUES (:worker_id, :last_heartbeat, CURRENT_TIMESTAMP)
                ON CONFLICT(worker_id) DO UPDATE
                SET last_heartbeat = EXCLUDED.last_heartbeat,
                    updated_at = CURRENT_TIMESTAMP
                """
            ),
            {
                "worker_id": worker_id,
                "last_heartbeat": now,
            },
        )


def send_heartbeat_once(
    engine: Engine,
    worker_id: str,
    *,
    stop_event: Event | None = None,
) -> bool:
    now = datetime.now(timezone.utc)
    base = _get_retry_base_seconds()
    max_delay = _get_retry_max_seconds()
    delay = base
    attempt = 1

    while stop_event is None or not stop_event.is_set():
        try:
            _upsert_heartbeat(engine, worker_id, now)
            logger.debug("heartbeat upserted worker_id=%s at=%s", worker_id, now.isoformat())
            return True
        except Exception as exc:
            logger.warning(
                "heartbeat upsert failed attempt=%s error=%r; retrying in %.1fs",
                attempt,
                exc,
                delay,
            )
            sleep(delay + random() * 0.2 * delay)
            delay = min(delay * 2, max_delay)
            attempt += 1
    return False


def _heartbeat_loop(engine: Engine, worker_id: str, interval_seconds: int, stop_event: Event) -> None:
    while not stop_event.is_set():
        send_heartbeat_once(engine, worker_id, stop_event=stop_event)
        stop_event.wait(interval_seconds)


def run_iteration(pipeline: Pipeline) -> int:
    """Claim and run one batch; returns how many jobs were attempted."""
    return len(pipeline.pool.run_once())


def run_worker_loop(
    pipeline: Pipeline,
    stop_event: Event,
    *,
    poll_seconds: float,
    recovery_seconds: float,
    clock: Callable[[], float] = monotonic,
) -> dict[str, Any]:
    processed = 0
    recovered = 0
    next_recovery = clock()

    while not stop_event.is_set():
        if clock() >= next_recovery:
            recovery = pipeline.recover_stuck_jobs()
            recovered += recovery["requeued"] + recovery["failed"]
            if recovery["requeued"] or recovery["failed"]:
                logger.info("stuck jobs recovered requeued=%s failed=%s", recovery["requeued"], recovery["failed"])
            next_recovery = clock() + recovery_seconds

        attempted = run_iteration(pipeline)
        processed += attempted
        if attempted == 0:
            stop_event.wait(poll_seconds)

    return {"processed": processed, "recovered": recovered}


def _install_signal_handlers(stop_event: Event) -> None:
    def _stop(signum: int, _frame: Any) -> None:
        logger.info("worker stopping signal=%s", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    worker_id = _get_worker_id()
    heartbeat_seconds = _get_heartbeat_seconds()
    engine = build_engine(settings.database_url, echo=settings.db_echo)
    pipeline = Pipeline(settings, engine, worker_id=worker_id)

    stop_event = Event()
    _install_signal_handlers(stop_event)
    heartbeat_thread = Thread(
        target=_heartbeat_loop,
        args=(engine, worker_id, heartbeat_seconds, stop_event),
        daemon=True,
    )
    heartbeat_thread.start()
    logger.info("worker started worker_id=%s concurrency=%s", worker_id, settings.worker_concurrency)

    try:
        totals = run_worker_loop(
            pipeline,
            stop_event,
            poll_seconds=_get_poll_seconds(),
            recovery_seconds=_get_recovery_seconds(),
        )
    finally:
        stop_event.set()
        pipeline.close()
        engine.dispose()
    logger.info("worker stopped worker_id=%s processed=%s recovered=%s", worker_id, totals["processed"], totals["recovered"])


if __name__ == "__main__":
    main()
