from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import math
import re
from typing import Any

from sourceflow.types import ChunkQuality, SourceType

TARGET_TOKENS: dict[SourceType, int] = {
    SourceType.TEXT: 500,
    SourceType.QA: 200,
    SourceType.WEBSITE: 400,
    SourceType.FILE: 600,
}

MIN_CHUNK_CHARS = 25
MEDIUM_QUALITY_CHARS = 100
MIN_MEANINGFUL_WORDS = 5

BOILERPLATE_PATTERNS = (
    re.compile(r"\bcookies?\b", re.IGNORECASE),
    re.compile(r"\bprivacy policy\b", re.IGNORECASE),
    re.compile(r"\bterms of service\b", re.IGNORECASE),
    re.compile(r"\bcopyright\b", re.IGNORECASE),
    re.compile(r"\ball rights reserved\b", re.IGNORECASE),
    re.compile("©"),
    re.compile(r"\bloading\b", re.IGNORECASE),
    re.compile(r"\bplease wait\b", re.IGNORECASE),
)

_LINE_BREAKS = re.compile(r"\r?\n+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE = re.compile(r"\s+")

_DOWNGRADE = {
    ChunkQuality.HIGH: ChunkQuality.MEDIUM,
    ChunkQuality.MEDIUM: ChunkQuality.LOW,
    ChunkQuality.LOW: ChunkQuality.LOW,
}


@dataclass(frozen=True)
class ChunkCandidate:
    text: str
    token_count: int
    quality: ChunkQuality
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


def target_tokens_for(source_type: SourceType) -> int:
    return TARGET_TOKENS[source_type]


def split_sentences(text: str) -> list[str]:
    sentences: list[str] = []
    for line in _LINE_BREAKS.split(text):
        for sentence in _SENTENCE_END.split(line):
            normalized = _WHITESPACE.sub(" ", sentence).strip()
            if normalized:
                sentences.append(normalized)
    return sentences


def _split_oversized(sentence: str, max_chars: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for word in sentence.split(" "):
        while len(word) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_chars:
            pieces.append(current)
            current = word
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def _meaningful_words(text: str) -> int:
    count = 0
    for word in _WHITESPACE.split(text):
        stripped = word.strip(".,;:!?()[]{}\"'")
        if len(stripped) > 3 and not stripped.replace(".", "").replace(",", "").isdigit():
            count += 1
    return count


def score_quality(text: str) -> tuple[ChunkQuality, dict[str, Any]]:
    """Classify a chunk candidate as high, medium or low quality."""
    length = len(text.strip())
    if length < MIN_CHUNK_CHARS:
        return ChunkQuality.LOW, {"reason": "too_short", "length": length}

    quality = ChunkQuality.MEDIUM if length < MEDIUM_QUALITY_CHARS else ChunkQuality.HIGH
    meaningful = _meaningful_words(text)
    boilerplate = any(pattern.search(text) for pattern in BOILERPLATE_PATTERNS)
    if meaningful < MIN_MEANINGFUL_WORDS:
        quality = _DOWNGRADE[quality]
    if boilerplate:
        quality = _DOWNGRADE[quality]

    return quality, {
        "length": length,
        "meaningful_words": meaningful,
        "boilerplate": boilerplate,
    }


def _pack_sentences(sentences: list[str], target_tokens: int) -> list[str]:
    max_chars = target_tokens * 4
    chunks: list[str] = []
    current = ""

    for sentence in sentences:
        parts = [sentence] if estimate_tokens(sentence) <= target_tokens else _split_oversized(sentence, max_chars)
        for part in parts:
            candidate = f"{current} {part}" if current else part
            if estimate_tokens(candidate) > target_tokens:
                chunks.append(current)
                current = part
            else:
                current = candidate

    if current:
        chunks.append(current)
    return chunks


def chunk_text(
    text: str,
    source_type: SourceType,
    *,
    target_tokens: int | None = None,
) -> list[ChunkCandidate]:
    """Split `text` into sentence-aligned chunks and drop the low quality ones.

    Identical chunk texts (by normalized content hash) are returned once.
    A Q&A source that would otherwise produce nothing yields one forced
    chunk holding the whole text.
    """
    target = target_tokens or target_tokens_for(source_type)
    if target <= 0:
        raise ValueError("target_tokens must be > 0")

    candidates: list[ChunkCandidate] = []
    seen: set[str] = set()
    for packed in _pack_sentences(split_sentences(text), target):
        quality, quality_meta = score_quality(packed)
        if quality is ChunkQuality.LOW:
            continue
        digest = content_hash(packed)
        if digest in seen:
            continue
        seen.add(digest)
        candidates.append(
            ChunkCandidate(
                text=packed,
                token_count=estimate_tokens(packed),
                quality=quality,
                content_hash=digest,
                metadata={"quality": quality_meta},
            )
        )

    if not candidates and source_type is SourceType.QA and text.strip():
        forced = text.strip()
        candidates.append(
            ChunkCandidate(
                text=forced,
                token_count=estimate_tokens(forced),
                quality=ChunkQuality.MEDIUM,
                content_hash=content_hash(forced),
                metadata={"is_force_created": True},
            )
        )

    return candidates


def format_qa(question: str, answer: str) -> str:
    return f"Q: {question.strip()}\nA: {answer.strip()}"
