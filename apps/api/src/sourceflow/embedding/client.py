from __future__ import annotations

import hashlib
import math
import re
from typing import Any, Protocol

import httpx

from sourceflow.crawl.fetcher import parse_retry_after
from sourceflow.errors import PermanentFailure, TransientError

_TERM_PATTERN = re.compile(r"\w+")
# Buckets each term is hashed into.
_BUCKETS_PER_TERM = 4


class EmbeddingClient(Protocol):
    model: str

    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class HttpEmbeddingClient:
    """Client for an OpenAI-compatible `/embeddings` endpoint (Ollama, vLLM, ...).

    Timeouts, connection errors, 429 and 5xx answers raise `TransientError`
    so the embed job is retried; other 4xx answers and malformed payloads
    raise `PermanentFailure`. With `dimensions` set, every vector must have
    exactly that many components.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        dimensions: int | None = None,
    ) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/embeddings"
        self.model = model
        self._timeout_seconds = timeout_seconds
        self._dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            response = httpx.post(
                self._endpoint,
                json={"model": self.model, "input": texts},
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"embedding request to {self._endpoint} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"embedding service unreachable at {self._endpoint}: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(
                f"embedding service answered HTTP {status} for model {self.model}",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 400:
            raise PermanentFailure(f"embedding service rejected model {self.model} with HTTP {status}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentFailure(f"embedding service returned invalid JSON: {exc}") from exc
        return self._parse_vectors(payload, expected=len(texts))

    def _parse_vectors(self, payload: Any, *, expected: int) -> list[list[float]]:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise PermanentFailure("embeddings payload has no data list")
        if len(data) != expected:
            raise PermanentFailure(f"embeddings payload has {len(data)} vectors, expected {expected}")

        # Servers may answer out of order; `index` is authoritative when present.
        if all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in data):
            data = sorted(data, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for position, item in enumerate(data):
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise PermanentFailure(f"embeddings payload item {position} has no vector")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise PermanentFailure(f"embeddings payload item {position} is not numeric") from exc

        width = self._dimensions or len(vectors[0])
        for position, vector in enumerate(vectors):
            if len(vector) != width:
                raise PermanentFailure(
                    f"embedding {position} from model {self.model} has {len(vector)} dimensions, expected {width}"
                )
        return vectors


def hashed_term_vector(text: str, *, dimensions: int) -> list[float]:
    """Feature-hash the lowercase terms of `text` into a unit vector.

    Texts sharing vocabulary share components, so cosine similarity stays
    meaningful without a model. A text with no word characters is hashed
    as a single term.
    """
    if dimensions <= 0:
        raise ValueError("dimensions must be > 0")

    vector = [0.0] * dimensions
    terms = _TERM_PATTERN.findall(text.lower()) or [text]
    for term in terms:
        digest = hashlib.blake2b(term.encode("utf-8"), digest_size=_BUCKETS_PER_TERM * 4 + 1).digest()
        sign = 1.0 if digest[-1] & 1 else -1.0
        for offset in range(0, _BUCKETS_PER_TERM * 4, 4):
            bucket = int.from_bytes(digest[offset:offset + 4], "big") % dimensions
            vector[bucket] += sign

    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


class HashEmbeddingClient:
    """Offline embedder built on `hashed_term_vector`."""

    def __init__(self, *, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions
        self.model = f"hashed-terms-{dimensions}"

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [hashed_term_vector(text, dimensions=self._dimensions) for text in texts]
