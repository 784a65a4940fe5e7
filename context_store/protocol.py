"""
Protocol definitions for document storage backends.

Callers depend on the capability set, not on SQLite:
- DocumentStore (local SQLite file) implements it
- tests substitute in-memory fakes
"""

from typing import Optional, Protocol, runtime_checkable

from .types import Document, SearchHit, SearchQuery


@runtime_checkable
class StorageProtocol(Protocol):
    """
    The storage capability set.

    Implemented by:
    - DocumentStore (SQLite + FTS5)
    """

    def put(self, document: Document) -> Document: ...

    def get_by_key(self, project: str, key: str) -> Optional[Document]: ...

    def search(self, query: SearchQuery) -> list[SearchHit]: ...
