from __future__ import annotations

from functools import lru_cache
import re
from urllib.parse import urlparse

DEFAULT_EXCLUDES = (
    re.compile(r"^/feed/?$", re.IGNORECASE),
    re.compile(r"^/comments/feed/?$", re.IGNORECASE),
    re.compile(r"\.(js|css|scss|sass|less|map|woff2?|ttf|eot|otf)$", re.IGNORECASE),
    re.compile(r"\.(jpe?g|png|gif|svg|webp|ico|bmp|tiff|avif)$", re.IGNORECASE),
    re.compile(r"\.(pdf|docx?|xlsx?|pptx?|zip|rar|tar|gz)$", re.IGNORECASE),
    re.compile(r"\.(json|xml|csv|txt|log)$", re.IGNORECASE),
    re.compile(r"\.(mp4|mp3|wav|avi|mov|webm|flv|mkv|wmv)$", re.IGNORECASE),
    re.compile(r"/wp-(admin|content|json)/", re.IGNORECASE),
    re.compile(r"/(api|admin)/", re.IGNORECASE),
    re.compile(r"/(login|logout|register|dashboard)", re.IGNORECASE),
    re.compile(r"/(search|filter)\?", re.IGNORECASE),
)


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a user pattern: ``/regex/`` or a glob with ``*`` and ``?``.

    Raises ``ValueError`` for an empty pattern or an invalid regex.
    """
    stripped = pattern.strip()
    if not stripped:
        raise ValueError("empty pattern")

    if len(stripped) > 1 and stripped.startswith("/") and stripped.endswith("/"):
        try:
            return re.compile(stripped[1:-1], re.IGNORECASE)
        except re.error as exc:
            raise ValueError(f"invalid regex pattern {pattern!r}: {exc}") from exc

    translated = re.escape(stripped).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{translated}$", re.IGNORECASE)


def _is_regex(pattern: str) -> bool:
    stripped = pattern.strip()
    return len(stripped) > 1 and stripped.startswith("/") and stripped.endswith("/")


def matches_any(path: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if not pattern.strip():
            continue
        compiled = compile_pattern(pattern)
        if _is_regex(pattern):
            if compiled.search(path):
                return True
        elif compiled.match(path):
            return True
    return False


def url_path(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or "/"
    return f"{path}?{parsed.query}" if parsed.query else path


def is_default_excluded(url: str) -> bool:
    path = url_path(url)
    return any(pattern.search(path) for pattern in DEFAULT_EXCLUDES)


def should_crawl(url: str, include_paths: list[str], exclude_paths: list[str]) -> bool:
    path = url_path(url)
    if is_default_excluded(url):
        return False
    if exclude_paths and matches_any(path, exclude_paths):
        return False
    active_includes = [pattern for pattern in include_paths if pattern.strip()]
    if active_includes and not matches_any(path, active_includes):
        return False
    return True
