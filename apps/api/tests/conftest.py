from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from sourceflow.config import Settings, get_settings
from sourceflow.crawl.fetcher import FetchResponse
from sourceflow.db import Base, build_engine, get_engine
from sourceflow.embedding.client import HashEmbeddingClient
from sourceflow.main import app, get_pipeline
from sourceflow.pipeline import Pipeline


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class FakeFetcher:
    """Serves canned HTML; unknown URLs answer 404, robots.txt included."""

    def __init__(self) -> None:
        self.pages: dict[str, str] = {}
        self.statuses: dict[str, int] = {}
        self.robots: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.retry_after: dict[str, float] = {}
        self.requests: list[str] = []

    def fetch(self, url: str) -> FetchResponse:
        self.requests.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url.endswith("/robots.txt"):
            body = self.robots.get(url)
            if body is None:
                return FetchResponse(url=url, status_code=404, text="", content_type="text/plain")
            status = self.statuses.get(url, 200)
            return FetchResponse(url=url, status_code=status, text=body, content_type="text/plain")

        status = self.statuses.get(url, 200 if url in self.pages else 404)
        return FetchResponse(
            url=url,
            status_code=status,
            text=self.pages.get(url, ""),
            content_type="text/html; charset=utf-8",
            retry_after=self.retry_after.get(url),
        )

    def add_page(self, url: str, body: str, *, links: tuple[str, ...] = (), status: int = 200) -> None:
        self.pages[url] = html_page(url, body, links)
        if status != 200:
            self.statuses[url] = status

    def page_requests(self, url: str) -> int:
        return self.requests.count(url)


def html_page(title: str, body: str, links: tuple[str, ...] = ()) -> str:
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><nav>{anchors}</nav><main><p>{body}</p></main>"
        f"<footer>Copyright 2026 Example Corp. All rights reserved.</footer></body></html>"
    )


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_pipeline.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_pipeline.cache_clear()
    app.dependency_overrides.clear()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    sqlite_db_path = tmp_path / "sourceflow-tests.db"
    monkeypatch.setenv("SOURCEFLOW_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("SOURCEFLOW_DB_ECHO", "false")
    monkeypatch.delenv("SOURCEFLOW_API_KEY", raising=False)
    monkeypatch.setenv("SOURCEFLOW_AUTO_TRAIN", "true")
    monkeypatch.setenv("JOB_MAX_RETRIES", "3")
    monkeypatch.setenv("JOB_RETRY_BASE_SECONDS", "5")
    monkeypatch.setenv("JOB_RETRY_MAX_SECONDS", "300")
    monkeypatch.setenv("WORKER_BATCH_SIZE", "5")
    monkeypatch.setenv("WORKER_CONCURRENCY", "1")
    monkeypatch.setenv("CRAWL_MIN_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("EMBED_FALLBACK_DIMENSIONS", "16")
    return get_settings()


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def make_pipeline(
    settings: Settings,
    engine: Engine,
    clock: ManualClock,
    fetcher: FakeFetcher,
) -> Iterator[Callable[..., Pipeline]]:
    created: list[Pipeline] = []

    def _make(pipeline_settings: Settings | None = None, **overrides: Any) -> Pipeline:
        kwargs: dict[str, Any] = {
            "fetcher": fetcher,
            "embedding_client": HashEmbeddingClient(dimensions=16),
            "clock": clock,
            "sleep": lambda _seconds: None,
            "worker_id": "test-worker",
        }
        kwargs.update(overrides)
        pipeline = Pipeline(pipeline_settings or settings, engine, **kwargs)
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


@pytest.fixture
def pipeline(make_pipeline: Callable[..., Pipeline]) -> Pipeline:
    return make_pipeline()


@pytest.fixture
def client(pipeline: Pipeline) -> Iterator[TestClient]:
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    with TestClient(app) as test_client:
        yield test_client
