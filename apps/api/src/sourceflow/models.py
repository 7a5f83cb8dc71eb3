from datetime import datetime
from typing import Any
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from sourceflow.db import Base, UTCDateTime


def new_id() -> str:
    return uuid.uuid4().hex


class SourceRecord(Base):
    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        server_default=text("'CREATED'"),
    )
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    parent_source_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("sources.id"),
        nullable=True,
    )
    original_size: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    compressed_size: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    pending_deletion: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    completed_pages: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    failed_pages: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class SourcePageRecord(Base):
    __tablename__ = "source_pages"
    __table_args__ = (UniqueConstraint("parent_source_id", "url", name="uq_source_pages_parent_url"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    parent_source_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sources.id"),
        nullable=False,
        index=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'pending'"))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_capture: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    content_size: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    compressed_size: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), default=0
    )
    chunks_created: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class BackgroundJobRecord(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_claim", "status", "available_at", "priority", "created_at"),
        Index("ix_background_jobs_type_target", "job_type", "target_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("5"), default=5)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"), default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("3"), default=3)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ChunkRecord(Base):
    __tablename__ = "chunks"
    __table_args__ = (UniqueConstraint("source_id", "chunk_index", name="uq_chunks_source_index"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sources.id"),
        nullable=False,
        index=True,
    )
    page_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("source_pages.id", ondelete="SET NULL"),
        nullable=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    quality: Mapped[str] = mapped_column(String(16), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class EmbeddingRecord(Base):
    __tablename__ = "embeddings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    chunk_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("chunks.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WorkerHeartbeatRecord(Base):
    __tablename__ = "worker_heartbeats"

    worker_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_heartbeat: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
