from app.repository.base import ChunkRemoval, DocumentRepository, UsageStats
from app.repository.factory import get_repository

__all__ = ["ChunkRemoval", "DocumentRepository", "UsageStats", "get_repository"]
