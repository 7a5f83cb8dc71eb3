from datetime import timedelta

import httpx
import pytest

from sourceflow.crawl import DomainRateLimiter, HttpxFetcher, RobotsPolicy, extract_links, html_to_text
from sourceflow.crawl.fetcher import FetchResponse, raise_for_status
from sourceflow.crawl.links import normalize_url, same_host
from sourceflow.crawl.patterns import compile_pattern, is_default_excluded, matches_any, should_crawl
from sourceflow.errors import PermanentFailure, TransientError
from sourceflow.payloads import CrawlOptions


def test_normalize_url_drops_fragment_and_lowercases_host() -> None:
    assert normalize_url("HTTPS://Docs.Example.com#top") == "https://docs.example.com/"
    assert normalize_url("https://docs.example.com/Guide?page=2#x") == "https://docs.example.com/Guide?page=2"
    assert same_host("https://DOCS.example.com/a", "https://docs.example.com/")
    assert not same_host("https://blog.example.com/a", "https://docs.example.com/")


def test_extract_links_resolves_relative_and_skips_non_http() -> None:
    html = """
    <a href="/guide">Guide</a>
    <a href="faq#answers">FAQ</a>
    <a href="/guide">Guide again</a>
    <a href="mailto:ops@example.com">Mail</a>
    <a href="javascript:void(0)">Nothing</a>
    <a href="https://other.example.org/x">Elsewhere</a>
    """

    assert extract_links(html, "https://docs.example.com/start/") == [
        "https://docs.example.com/guide",
        "https://docs.example.com/start/faq",
        "https://other.example.org/x",
    ]


def test_html_to_text_removes_layout_chrome() -> None:
    html = (
        "<html><head><title> Pump Guide </title><style>p {}</style></head>"
        "<body><nav>Home | About</nav><main><h1>Pumps</h1><p>Check   the seals.</p></main>"
        "<script>track()</script><footer>Copyright</footer></body></html>"
    )

    title, text = html_to_text(html)

    assert title == "Pump Guide"
    assert text == "Pumps\nCheck the seals."


def test_glob_and_regex_patterns_match_case_insensitively() -> None:
    assert matches_any("/Docs/intro", ["/docs/*"])
    assert not matches_any("/blog/docs/intro", ["/docs/*"])
    assert matches_any("/blog/2024/post", ["/\\d{4}/"])
    assert matches_any("/page1", ["/page?"])
    assert not matches_any("/anything", ["   "])


def test_invalid_regex_pattern_is_rejected() -> None:
    with pytest.raises(ValueError):
        compile_pattern("/[unclosed/")
    with pytest.raises(ValueError):
        CrawlOptions(include_paths=["/(oops/"])


def test_default_excludes_skip_assets_and_admin_paths() -> None:
    assert is_default_excluded("https://example.com/static/app.js")
    assert is_default_excluded("https://example.com/wp-admin/options.php")
    assert is_default_excluded("https://example.com/feed/")
    assert is_default_excluded("https://example.com/files/manual.PDF")
    assert not is_default_excluded("https://example.com/docs/setup")


def test_should_crawl_applies_excludes_before_includes() -> None:
    include = ["/docs/*"]
    exclude = ["/docs/internal/*"]

    assert should_crawl("https://example.com/docs/setup", include, exclude)
    assert not should_crawl("https://example.com/docs/internal/keys", include, exclude)
    assert not should_crawl("https://example.com/blog/news", include, exclude)
    assert should_crawl("https://example.com/blog/news", [], [])


def test_raise_for_status_classifies_http_errors() -> None:
    raise_for_status(FetchResponse(url="u", status_code=200, text=""))
    for status in (408, 429, 500, 503):
        with pytest.raises(TransientError):
            raise_for_status(FetchResponse(url="u", status_code=status, text=""))
    for status in (400, 404, 410):
        with pytest.raises(PermanentFailure):
            raise_for_status(FetchResponse(url="u", status_code=status, text=""))

    with pytest.raises(TransientError) as busy:
        raise_for_status(FetchResponse(url="u", status_code=429, text="", retry_after=30.0))
    assert busy.value.retry_after == 30.0


def test_httpx_fetcher_maps_responses_and_network_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/down":
            raise httpx.ConnectError("connection refused", request=request)
        assert request.headers["user-agent"] == "sourceflow-test"
        return httpx.Response(
            429,
            headers={"content-type": "text/html", "retry-after": "12"},
            text="<p>slow down</p>",
        )

    client = httpx.Client(transport=httpx.MockTransport(handler), headers={"User-Agent": "sourceflow-test"})
    fetcher = HttpxFetcher(user_agent="ignored", client=client)

    response = fetcher.fetch("https://example.com/busy")
    assert response.status_code == 429
    assert response.retry_after == 12.0
    assert response.is_html

    with pytest.raises(TransientError):
        fetcher.fetch("https://example.com/down")
    fetcher.close()


def test_robots_policy_caches_per_origin(fetcher, clock) -> None:
    fetcher.robots["https://example.com/robots.txt"] = "User-agent: *\nDisallow: /private\nCrawl-delay: 2\n"
    robots = RobotsPolicy(fetcher, user_agent="sourceflow-bot", clock=clock, ttl=timedelta(hours=1))

    assert robots.allowed("https://example.com/docs")
    assert not robots.allowed("https://example.com/private/keys")
    assert robots.crawl_delay("https://example.com/docs") == 2.0
    assert fetcher.page_requests("https://example.com/robots.txt") == 1

    clock.advance(3601)
    robots.allowed("https://example.com/docs")
    assert fetcher.page_requests("https://example.com/robots.txt") == 2


def test_robots_policy_fallbacks(fetcher, clock) -> None:
    fetcher.statuses["https://locked.example.com/robots.txt"] = 403
    fetcher.robots["https://locked.example.com/robots.txt"] = ""
    fetcher.errors["https://flaky.example.com/robots.txt"] = TransientError("timeout")
    robots = RobotsPolicy(fetcher, user_agent="sourceflow-bot", clock=clock)

    assert robots.allowed("https://missing.example.com/anything")
    assert not robots.allowed("https://locked.example.com/anything")
    assert robots.allowed("https://flaky.example.com/anything")
    assert robots.crawl_delay("https://missing.example.com/anything") is None


def test_rate_limiter_spaces_requests_per_domain() -> None:
    now = [100.0]
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    limiter = DomainRateLimiter(
        max_concurrency=2,
        min_interval_seconds=1.0,
        sleep=fake_sleep,
        monotonic=lambda: now[0],
    )

    with limiter.acquire("https://a.example.com/1"):
        pass
    with limiter.acquire("https://a.example.com/2"):
        pass
    with limiter.acquire("https://b.example.com/1"):
        pass

    assert sleeps == [1.0]

    limiter.set_crawl_delay("https://a.example.com/", 5.0)
    limiter.set_crawl_delay("https://a.example.com/", None)
    assert limiter.interval_for("https://a.example.com/x") == 5.0
    assert limiter.interval_for("https://b.example.com/x") == 1.0


def test_rate_limiter_rejects_zero_concurrency() -> None:
    with pytest.raises(ValueError):
        DomainRateLimiter(max_concurrency=0)
