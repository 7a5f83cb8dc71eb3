from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from sourceflow.chunking.chunker import ChunkCandidate, chunk_text
from sourceflow.models import ChunkRecord, EmbeddingRecord, SourcePageRecord, SourceRecord, new_id
from sourceflow.types import PageStatus, SourceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkingSummary:
    source_id: str
    chunks: int
    pages: int
    force_created: int

    def as_dict(self) -> dict[str, int | str]:
        return {
            "source_id": self.source_id,
            "chunks": self.chunks,
            "pages": self.pages,
            "force_created": self.force_created,
        }


def clear_chunks(session: Session, source_id: str) -> int:
    """Delete a Source's embeddings and chunks, embeddings first."""
    chunk_ids = select(ChunkRecord.id).where(ChunkRecord.source_id == source_id)
    session.execute(
        delete(EmbeddingRecord)
        .where(EmbeddingRecord.chunk_id.in_(chunk_ids))
        .execution_options(synchronize_session=False)
    )
    result = session.execute(
        delete(ChunkRecord)
        .where(ChunkRecord.source_id == source_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def rebuild_chunks(session: Session, source: SourceRecord) -> ChunkingSummary:
    """Replace every chunk of `source` with a fresh chunking of its content.

    Website sources are chunked page by page from completed pages; other
    types chunk `source.content`. A text seen twice within the Source is
    stored once.
    """
    clear_chunks(session, source.id)
    source_type = SourceType(source.source_type)

    segments: list[tuple[SourcePageRecord | None, list[ChunkCandidate]]] = []
    if source_type is SourceType.WEBSITE:
        pages = session.scalars(
            select(SourcePageRecord)
            .where(SourcePageRecord.parent_source_id == source.id)
            .where(SourcePageRecord.status == PageStatus.COMPLETED.value)
            .order_by(SourcePageRecord.depth.asc(), SourcePageRecord.created_at.asc(), SourcePageRecord.id.asc())
        ).all()
        for page in pages:
            segments.append((page, chunk_text(page.content or "", source_type)))
    else:
        segments.append((None, chunk_text(source.content or "", source_type)))

    seen: set[str] = set()
    index = 0
    force_created = 0
    for page, candidates in segments:
        created_for_page = 0
        for candidate in candidates:
            if candidate.content_hash in seen:
                continue
            seen.add(candidate.content_hash)
            metadata = dict(candidate.metadata)
            if page is not None:
                metadata["url"] = page.url
            session.add(
                ChunkRecord(
                    id=new_id(),
                    source_id=source.id,
                    page_id=page.id if page is not None else None,
                    chunk_index=index,
                    content=candidate.text,
                    token_count=candidate.token_count,
                    quality=candidate.quality.value,
                    content_hash=candidate.content_hash,
                    metadata_json=metadata,
                )
            )
            index += 1
            created_for_page += 1
            if metadata.get("is_force_created"):
                force_created += 1
        if page is not None:
            page.chunks_created = created_for_page

    session.flush()
    summary = ChunkingSummary(
        source_id=source.id,
        chunks=index,
        pages=sum(1 for page, _ in segments if page is not None),
        force_created=force_created,
    )
    logger.info(
        "chunks rebuilt source_id=%s chunks=%s pages=%s forced=%s",
        source.id,
        summary.chunks,
        summary.pages,
        summary.force_created,
    )
    return summary
