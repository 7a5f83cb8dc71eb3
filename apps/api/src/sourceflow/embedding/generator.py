from __future__ import annotations

from array import array
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from sourceflow.embedding.client import EmbeddingClient
from sourceflow.errors import PermanentFailure
from sourceflow.models import ChunkRecord, EmbeddingRecord, new_id

logger = logging.getLogger(__name__)


def encode_vector(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def decode_vector(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


class EmbeddingGenerator:
    def __init__(self, client: EmbeddingClient, *, batch_size: int = 32) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._client = client
        self._batch_size = batch_size

    @property
    def model(self) -> str:
        return self._client.model

    def embed_missing(self, session: Session, source_id: str, *, batch_size: int | None = None) -> int:
        """Embed every chunk of `source_id` that has no embedding yet.

        Chunks that already carry an embedding are left alone, so running the
        same embed job twice is harmless. Client errors propagate with their
        own retry classification.
        """
        size = batch_size or self._batch_size
        pending = session.scalars(
            select(ChunkRecord)
            .outerjoin(EmbeddingRecord, EmbeddingRecord.chunk_id == ChunkRecord.id)
            .where(ChunkRecord.source_id == source_id)
            .where(EmbeddingRecord.id.is_(None))
            .order_by(ChunkRecord.chunk_index.asc())
        ).all()

        width: int | None = None
        created = 0
        for start in range(0, len(pending), size):
            batch = pending[start:start + size]
            vectors = self._client.embed_texts([chunk.content for chunk in batch])
            if len(vectors) != len(batch):
                raise PermanentFailure(
                    f"embedding client returned {len(vectors)} vectors for {len(batch)} chunks"
                )

            for chunk, vector in zip(batch, vectors):
                width = width or len(vector)
                if not vector or len(vector) != width:
                    raise PermanentFailure(
                        f"model {self.model} returned {len(vector)} dimensions for chunk {chunk.id}, expected {width}"
                    )
                session.add(
                    EmbeddingRecord(
                        id=new_id(),
                        chunk_id=chunk.id,
                        model=self._client.model,
                        dimensions=len(vector),
                        vector=encode_vector(vector),
                    )
                )
            session.flush()
            created += len(batch)

        logger.info("embeddings created source_id=%s count=%s model=%s", source_id, created, self.model)
        return created
