from sourceflow.embedding.client import (
    EmbeddingClient,
    HashEmbeddingClient,
    HttpEmbeddingClient,
    hashed_term_vector,
)
from sourceflow.embedding.generator import EmbeddingGenerator

__all__ = [
    "EmbeddingClient",
    "EmbeddingGenerator",
    "HashEmbeddingClient",
    "HttpEmbeddingClient",
    "hashed_term_vector",
]
