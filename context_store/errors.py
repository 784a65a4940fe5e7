"""
Error types and error logging for the context store.

Store and sync operations raise one of the exceptions below; nothing is
swallowed to produce a partial result. The CLI logs full stack traces to a
file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import get_store_path


class ContextStoreError(Exception):
    """Base class for all context store errors."""


class NotFoundError(ContextStoreError, LookupError):
    """A requested document, store file or metadata file does not exist."""


class ConstraintViolation(ContextStoreError):
    """A stored invariant would be (or has been) broken.

    Raised for a duplicate visible (project, key), a repeated
    (document id, version) history row, or more than one visible match
    for a key on read. Treat as corruption-level, not as a soft miss.
    """


class DivergenceError(ContextStoreError):
    """Local and remote replicas disagree and force was not given."""


class LockContention(ContextStoreError):
    """Another sync operation holds the lock for this store."""

    def __init__(self, lock_path: Path, detail: str = ""):
        self.lock_path = Path(lock_path)
        msg = f"could not obtain sync lock {self.lock_path}: another sync is in progress"
        if detail:
            msg += f" ({detail})"
        msg += "; retry when it finishes"
        super().__init__(msg)


class StorageIOError(ContextStoreError):
    """Filesystem or database I/O failure, with the operation and path."""

    def __init__(self, operation: str, path: Optional[Path], cause: BaseException):
        self.operation = operation
        self.path = Path(path) if path is not None else None
        where = f" ({self.path})" if self.path is not None else ""
        super().__init__(f"{operation} failed{where}: {cause}")


class CorruptionError(ContextStoreError):
    """Persisted data could not be interpreted (e.g. unknown source tag)."""


class InvalidQuery(ContextStoreError, ValueError):
    """The full-text query could not be parsed by the search engine."""


ERROR_LOG_NAME = "context-errors.log"


def format_error_entry(exc: BaseException, context: str = "", when: Optional[datetime] = None) -> str:
    """One error-log entry: a rule, a stamped header, then the traceback."""
    stamp = (when or datetime.now(timezone.utc)).isoformat()
    header = f"[{stamp}] {context}".rstrip()
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"\n{'=' * 60}\n{header}\n{trace}"


def log_exception(exc: Exception, context: str = "", store: Optional[Path] = None) -> Path:
    """
    Append the exception's traceback to the store's error log.

    The log lives beside the store (see config.get_store_path), so
    --store and CONTEXT_STORE_PATH both route it. The file is created
    owner-only. Failing to write it never masks the original error.

    Returns:
        Path to the error log file
    """
    log_path = get_store_path(store) / ERROR_LOG_NAME
    entry = format_error_entry(exc, context)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        pass  # error log is best-effort
    return log_path
