from sourceflow.chunking.chunker import ChunkCandidate, chunk_text, content_hash, estimate_tokens
from sourceflow.chunking.compression import compress, decompress

__all__ = ["ChunkCandidate", "chunk_text", "compress", "content_hash", "decompress", "estimate_tokens"]
