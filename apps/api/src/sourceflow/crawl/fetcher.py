from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

import httpx

from sourceflow.errors import PermanentFailure, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status_code: int
    text: str
    content_type: str = "text/html"
    retry_after: float | None = None

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower() or not self.content_type


class PageFetcher(Protocol):
    def fetch(self, url: str) -> FetchResponse: ...


def raise_for_status(response: FetchResponse) -> None:
    """Map an HTTP status onto the pipeline's retry classification."""
    status = response.status_code
    if status < 400:
        return
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        raise TransientError(f"HTTP {status} fetching {response.url}", retry_after=response.retry_after)
    raise PermanentFailure(f"HTTP {status} fetching {response.url}")


def parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpxFetcher:
    def __init__(
        self,
        *,
        user_agent: str,
        timeout_seconds: float = 15.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(
            headers={"User-Agent": user_agent},
            timeout=timeout_seconds,
            follow_redirects=True,
        )

    def fetch(self, url: str) -> FetchResponse:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as exc:
            raise TransientError(f"timeout fetching {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"network error fetching {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise PermanentFailure(f"failed fetching {url}: {exc}") from exc

        logger.debug("fetched url=%s status=%s", url, response.status_code)
        return FetchResponse(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type", ""),
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    def close(self) -> None:
        self._client.close()
