from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from sourceflow.config import Settings, get_settings
from sourceflow.db import Base, build_engine
from sourceflow.embedding.client import HashEmbeddingClient
from sourceflow.pipeline import Pipeline


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Settings]:
    sqlite_db_path = tmp_path / "worker-tests.db"
    monkeypatch.setenv("SOURCEFLOW_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("SOURCEFLOW_AUTO_TRAIN", "true")
    monkeypatch.setenv("WORKER_BATCH_SIZE", "2")
    monkeypatch.setenv("WORKER_CONCURRENCY", "1")
    monkeypatch.setenv("EMBED_FALLBACK_DIMENSIONS", "8")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def pipeline(settings: Settings, engine: Engine) -> Iterator[Pipeline]:
    pipeline = Pipeline(
        settings,
        engine,
        embedding_client=HashEmbeddingClient(dimensions=8),
        worker_id="worker-test",
    )
    yield pipeline
    pipeline.close()
