"""
Repository Factory

The rest of the app only imports get_repository() — never the concrete
class. Tests override the FastAPI dependency with an in-memory fake.

Usage in a FastAPI route (via dependency):
    repo: DocumentRepository = Depends(get_repository)
"""

from __future__ import annotations

from functools import lru_cache

from app.repository.base import DocumentRepository


@lru_cache(maxsize=1)
def get_repository() -> DocumentRepository:
    """Process-wide repository bound to the configured database."""
    from app.repository.sql import SQLDocumentRepository
    return SQLDocumentRepository()
