"""
Context Store

A local-first document store for short text artifacts, with full-text
search and whole-file replication to a remote directory.

Quick Start:
    from context_store import DocumentStore, Document, SearchQuery

    store = DocumentStore(Path("~/.context-store/db.sqlite").expanduser())
    store.put(Document.new("myproject", "Use tokio for the runtime", key="runtime"))
    hits = store.search(SearchQuery(text="tokio", project="myproject"))

CLI Usage:
    context-store put --key runtime --body "Use tokio for the runtime"
    context-store find tokio
    context-store sync push --remote /mnt/shared/context

Environment Variables:
    CONTEXT_STORE_PATH  - Override default store location (~/.context-store)
    CONTEXT_PROJECT     - Default project name
    CONTEXT_VERBOSE     - Set to 1 for debug logging
"""

from .document_store import DocumentStore
from .errors import (
    ConstraintViolation,
    ContextStoreError,
    CorruptionError,
    DivergenceError,
    InvalidQuery,
    LockContention,
    NotFoundError,
    StorageIOError,
)
from .protocol import StorageProtocol
from .sync import SyncConfig, SyncMeta, SyncResult, SyncState, SyncStatus
from .types import Document, GcResult, SearchHit, SearchQuery, SourceType, VersionInfo

__version__ = "0.1.0"
__all__ = [
    "ConstraintViolation",
    "ContextStoreError",
    "CorruptionError",
    "DivergenceError",
    "Document",
    "DocumentStore",
    "GcResult",
    "InvalidQuery",
    "LockContention",
    "NotFoundError",
    "SearchHit",
    "SearchQuery",
    "SourceType",
    "StorageIOError",
    "StorageProtocol",
    "SyncConfig",
    "SyncMeta",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "VersionInfo",
]
