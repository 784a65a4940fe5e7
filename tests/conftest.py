"""
Shared pytest fixtures for context store tests.

Provides a fresh on-disk store per test and a document factory with a
controllable clock.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from context_store.document_store import DocumentStore
from context_store.types import Document, SearchHit, SearchQuery, SourceType


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path for a store file inside a per-test directory."""
    return tmp_path / "store" / "db.sqlite"


@pytest.fixture
def store(db_path: Path):
    """A freshly migrated DocumentStore, closed after the test."""
    s = DocumentStore(db_path)
    yield s
    s.close()


@pytest.fixture
def now() -> datetime:
    """Current time truncated to the second, for readable offsets."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def make_doc(now):
    """
    Factory for version-1 documents.

    Example:
        doc = make_doc(key="notes", body="rust async", age=timedelta(hours=1))
    """
    def _make(
        body: str = "some body text",
        *,
        project: str = "demo",
        key: Optional[str] = None,
        tags: Optional[list[str]] = None,
        title: Optional[str] = None,
        namespace: Optional[str] = None,
        source: SourceType = SourceType.AGENT,
        ttl_seconds: Optional[int] = None,
        age: timedelta = timedelta(0),
    ) -> Document:
        return Document.new(
            project,
            body,
            key=key,
            tags=tags,
            title=title,
            namespace=namespace,
            source=source,
            ttl_seconds=ttl_seconds,
            now=now - age,
        )
    return _make


class MemoryStorage:
    """
    In-memory StorageProtocol implementation.

    Substring match instead of FTS; no ranking beyond recency. Used to
    check that callers can work against the protocol alone.
    """

    def __init__(self):
        self.docs: dict[str, Document] = {}

    def put(self, document: Document) -> Document:
        self.docs[document.id] = document
        return document

    def get_by_key(self, project: str, key: str) -> Optional[Document]:
        for doc in self.docs.values():
            if doc.project == project and doc.key == key and doc.is_visible():
                return doc
        return None

    def search(self, query: SearchQuery) -> list[SearchHit]:
        hits = [
            SearchHit(document=d, score=0.0)
            for d in self.docs.values()
            if d.is_visible()
            and (query.project is None or d.project == query.project)
            and query.text.casefold() in d.body.casefold()
        ]
        hits.sort(key=lambda h: h.document.updated_at, reverse=True)
        return hits[:query.limit] if query.limit is not None else hits


@pytest.fixture
def memory_storage():
    return MemoryStorage()
