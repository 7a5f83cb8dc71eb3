import pytest

from sourceflow.config import get_settings


def test_settings_read_explicit_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOURCEFLOW_DATABASE_URL", "sqlite+pysqlite:///data/sourceflow.db")
    monkeypatch.setenv("SOURCEFLOW_API_KEY", "  secret  ")
    monkeypatch.setenv("CRAWL_MAX_PAGES", "25")
    monkeypatch.setenv("CRAWL_RESPECT_ROBOTS", "no")
    monkeypatch.setenv("CRAWL_MIN_INTERVAL_SECONDS", "0.25")

    settings = get_settings()

    assert settings.database_url == "sqlite+pysqlite:///data/sourceflow.db"
    assert settings.api_key == "secret"
    assert settings.crawl_max_pages == 25
    assert settings.crawl_respect_robots is False
    assert settings.crawl_min_interval_seconds == 0.25


def test_settings_defaults_and_minimums(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SOURCEFLOW_API_KEY", raising=False)
    monkeypatch.delenv("JOB_MAX_RETRIES", raising=False)
    monkeypatch.delenv("SOURCEFLOW_AUTO_TRAIN", raising=False)
    monkeypatch.setenv("WORKER_CONCURRENCY", "0")
    monkeypatch.setenv("EMBED_FALLBACK_DIMENSIONS", "-3")

    settings = get_settings()

    assert settings.api_key is None
    assert settings.job_max_retries == 3
    assert settings.auto_train is True
    assert settings.worker_concurrency == 1
    assert settings.embed_fallback_dimensions == 0


def test_settings_are_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRAWL_MAX_DEPTH", "2")
    first = get_settings()
    monkeypatch.setenv("CRAWL_MAX_DEPTH", "7")

    assert get_settings() is first
    get_settings.cache_clear()
    assert get_settings().crawl_max_depth == 7
