from sourceflow.crawl.fetcher import FetchResponse, HttpxFetcher, PageFetcher
from sourceflow.crawl.links import extract_links, html_to_text, normalize_url
from sourceflow.crawl.patterns import should_crawl
from sourceflow.crawl.rate_limit import DomainRateLimiter
from sourceflow.crawl.robots import RobotsPolicy

__all__ = [
    "DomainRateLimiter",
    "FetchResponse",
    "HttpxFetcher",
    "PageFetcher",
    "RobotsPolicy",
    "extract_links",
    "html_to_text",
    "normalize_url",
    "should_crawl",
]
