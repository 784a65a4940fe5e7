"""
Whole-file replication of a store between a local and a remote directory.

Each side keeps a JSON sidecar (SyncMeta) recording the generation and
content hash of its copy of the store file. The two are compared to
decide the relationship between replicas:

    InSync    hashes equal
    Ahead     local generation > remote generation
    Behind    local generation < remote generation
    Diverged  equal generation, different hash
    Unknown   either side has no metadata

push() and pull() copy the store file and metadata, serialized per local
store by an exclusive lock file. Divergence is reported, never merged;
``force`` overwrites one side entirely.

There is no cross-machine locking: two machines pushing to the same
remote concurrently race, and the last writer's metadata persists.
"""

import enum
import json
import logging
import os
import shutil
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import (
    CorruptionError,
    DivergenceError,
    LockContention,
    NotFoundError,
    StorageIOError,
)
from .hashing import compute_file_hash
from .types import format_timestamp, parse_utc_timestamp, utc_now

logger = logging.getLogger(__name__)

DB_FILENAME = "db.sqlite"
META_FILENAME = "sync-meta.json"
LOCK_FILENAME = "sync.lock"
SYNC_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SyncConfig:
    """Where the local store, its sidecar and the remote directory live."""
    local_db: Path
    local_meta: Path
    remote: Path

    @classmethod
    def for_store(cls, store_dir: Path, remote: Path) -> "SyncConfig":
        """Default layout: db.sqlite and sync-meta.json inside store_dir."""
        store_dir = Path(store_dir)
        return cls(
            local_db=store_dir / DB_FILENAME,
            local_meta=store_dir / META_FILENAME,
            remote=Path(remote),
        )

    @property
    def remote_db(self) -> Path:
        return self.remote / DB_FILENAME

    @property
    def remote_meta(self) -> Path:
        return self.remote / META_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.local_db.parent / LOCK_FILENAME


@dataclass(frozen=True)
class SyncMeta:
    """Description of one replica of the store file."""
    generation: int
    db_hash: str
    db_bytes: int
    last_synced_at: datetime
    machine: str
    schema_version: int = SYNC_SCHEMA_VERSION
    project: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "generation": self.generation,
            "db_hash": self.db_hash,
            "db_bytes": self.db_bytes,
            "last_synced_at": format_timestamp(self.last_synced_at),
            "machine": self.machine,
            "schema_version": self.schema_version,
            "project": self.project,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncMeta":
        """Build from sidecar JSON. Unknown keys are ignored."""
        return cls(
            generation=int(data["generation"]),
            db_hash=str(data["db_hash"]),
            db_bytes=int(data["db_bytes"]),
            last_synced_at=parse_utc_timestamp(data["last_synced_at"]),
            machine=str(data["machine"]),
            schema_version=int(data["schema_version"]),
            project=data.get("project"),
        )


class SyncState(str, enum.Enum):
    IN_SYNC = "InSync"
    AHEAD = "Ahead"
    BEHIND = "Behind"
    DIVERGED = "Diverged"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class SyncStatus:
    state: SyncState
    local: Optional[SyncMeta]
    remote: Optional[SyncMeta]


@dataclass(frozen=True)
class SyncResult:
    generation: int
    db_hash: str
    db_bytes: int


def default_machine_label() -> str:
    """Origin label for metadata: HOSTNAME, USER, then the host name."""
    for var in ("HOSTNAME", "USER"):
        value = os.environ.get(var)
        if value:
            return value
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


# -----------------------------------------------------------------------------
# Metadata sidecar
# -----------------------------------------------------------------------------

def load_meta(path: Path) -> Optional[SyncMeta]:
    """
    Read a metadata sidecar.

    Returns:
        SyncMeta, or None if the file does not exist

    Raises:
        CorruptionError: the file exists but is not valid metadata
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("read sync metadata", path, e) from e
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise TypeError("metadata must be a JSON object")
        return SyncMeta.from_dict(data)
    except (ValueError, KeyError, TypeError) as e:
        raise CorruptionError(f"Invalid sync metadata in {path}: {e}") from e


def write_meta(path: Path, meta: SyncMeta) -> None:
    """Write a metadata sidecar atomically (temp file, then rename)."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(meta.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise StorageIOError("write sync metadata", path, e) from e


def build_meta(
    db_path: Path,
    previous_generation: int = 0,
    machine: Optional[str] = None,
    project: Optional[str] = None,
) -> SyncMeta:
    """Describe db_path as generation previous_generation + 1."""
    try:
        db_bytes = Path(db_path).stat().st_size
        db_hash = compute_file_hash(db_path)
    except OSError as e:
        raise StorageIOError("hash store file", db_path, e) from e
    return SyncMeta(
        generation=previous_generation + 1,
        db_hash=db_hash,
        db_bytes=db_bytes,
        last_synced_at=utc_now(),
        machine=machine or default_machine_label(),
        schema_version=SYNC_SCHEMA_VERSION,
        project=project,
    )


# -----------------------------------------------------------------------------
# State comparison
# -----------------------------------------------------------------------------

def compare(local: Optional[SyncMeta], remote: Optional[SyncMeta]) -> SyncState:
    """Relationship between two replicas' metadata."""
    if local is None or remote is None:
        return SyncState.UNKNOWN
    if local.db_hash == remote.db_hash:
        return SyncState.IN_SYNC
    if local.generation > remote.generation:
        return SyncState.AHEAD
    if local.generation < remote.generation:
        return SyncState.BEHIND
    return SyncState.DIVERGED


def _check_divergence(
    operation: str,
    local: Optional[SyncMeta],
    remote: Optional[SyncMeta],
) -> None:
    """Refuse to overwrite a replica whose generation order doesn't allow it.

    A hash mismatch is only a clean fast-forward when the side being
    copied from has the higher generation.
    """
    state = compare(local, remote)
    allowed = {SyncState.IN_SYNC, SyncState.UNKNOWN}
    allowed.add(SyncState.AHEAD if operation == "push" else SyncState.BEHIND)
    if state in allowed:
        return
    raise DivergenceError(
        f"{operation} refused: local (generation {local.generation}, "
        f"hash {local.db_hash[:12]}) and remote (generation {remote.generation}, "
        f"hash {remote.db_hash[:12]}) have diverged ({state.value}); "
        f"rerun with --force to overwrite the "
        f"{'remote' if operation == 'push' else 'local'} copy"
    )


def status(cfg: SyncConfig) -> SyncStatus:
    """Compare local and remote metadata. Takes no lock, changes nothing."""
    local = load_meta(cfg.local_meta)
    remote = load_meta(cfg.remote_meta)
    return SyncStatus(state=compare(local, remote), local=local, remote=remote)


# -----------------------------------------------------------------------------
# Lock and file copies
# -----------------------------------------------------------------------------

@contextmanager
def sync_lock(cfg: SyncConfig) -> Iterator[Path]:
    """
    Hold the per-store sync lock for the duration of the block.

    The lock file is created exclusively (fails at once if present) and
    removed on every exit path.

    Raises:
        LockContention: another push/pull holds the lock
    """
    lock_path = cfg.lock_path
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError as e:
        raise LockContention(lock_path) from e
    except OSError as e:
        raise StorageIOError("acquire sync lock", lock_path, e) from e
    try:
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        logger.debug("Acquired sync lock %s", lock_path)
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Released sync lock %s", lock_path)


def _copy(src: Path, dest: Path, operation: str) -> None:
    try:
        shutil.copyfile(src, dest)
    except OSError as e:
        raise StorageIOError(f"{operation}: copy {src} -> {dest}", dest, e) from e


def _atomic_copy(src: Path, dest: Path, operation: str) -> None:
    """Copy to a temp sibling of dest, then rename over dest."""
    tmp = dest.with_name(dest.name + ".tmp")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, tmp)
        os.replace(tmp, dest)
    except OSError as e:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise StorageIOError(f"{operation}: copy {src} -> {dest}", dest, e) from e


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------

def push(
    cfg: SyncConfig,
    force: bool = False,
    *,
    machine: Optional[str] = None,
) -> SyncResult:
    """
    Copy the local store file to the remote and record a new generation.

    Raises:
        LockContention: another sync holds the lock
        NotFoundError: the local store file does not exist
        DivergenceError: replicas diverged and force is False
    """
    with sync_lock(cfg):
        if not cfg.local_db.exists():
            raise NotFoundError(f"local database not found: {cfg.local_db}")

        try:
            cfg.remote.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError("push: create remote directory", cfg.remote, e) from e

        remote_meta = load_meta(cfg.remote_meta)
        local_meta = load_meta(cfg.local_meta)
        if not force:
            _check_divergence("push", local_meta, remote_meta)

        backup = cfg.local_db.with_name(cfg.local_db.name + ".bak")
        _copy(cfg.local_db, backup, "push: backup")

        previous = max(
            (m.generation for m in (local_meta, remote_meta) if m is not None),
            default=0,
        )
        project = local_meta.project if local_meta is not None else None
        meta = build_meta(cfg.local_db, previous, machine=machine, project=project)

        # Store file first, metadata second
        _atomic_copy(cfg.local_db, cfg.remote_db, "push")
        write_meta(cfg.remote_meta, meta)
        write_meta(cfg.local_meta, meta)

    logger.info(
        "push generation=%d hash=%s bytes=%d remote=%s force=%s",
        meta.generation, meta.db_hash[:12], meta.db_bytes, cfg.remote, force,
    )
    return SyncResult(generation=meta.generation, db_hash=meta.db_hash, db_bytes=meta.db_bytes)


def pull(cfg: SyncConfig, force: bool = False) -> SyncResult:
    """
    Replace the local store file with the remote copy and adopt its metadata.

    Raises:
        LockContention: another sync holds the lock
        NotFoundError: the remote store file or its metadata is missing
        DivergenceError: replicas diverged and force is False
    """
    with sync_lock(cfg):
        if not cfg.remote_db.exists():
            raise NotFoundError(f"remote database not found: {cfg.remote_db}")

        remote_meta = load_meta(cfg.remote_meta)
        if remote_meta is None:
            raise NotFoundError(
                f"remote metadata missing: {cfg.remote_meta} (push from another machine first)"
            )
        local_meta = load_meta(cfg.local_meta)
        if not force:
            _check_divergence("pull", local_meta, remote_meta)

        if cfg.local_db.exists():
            backup = cfg.local_db.with_name(cfg.local_db.name + ".before-pull")
            _copy(cfg.local_db, backup, "pull: backup")

        _atomic_copy(cfg.remote_db, cfg.local_db, "pull")
        write_meta(cfg.local_meta, remote_meta)

    logger.info(
        "pull generation=%d hash=%s bytes=%d remote=%s force=%s",
        remote_meta.generation, remote_meta.db_hash[:12], remote_meta.db_bytes,
        cfg.remote, force,
    )
    return SyncResult(
        generation=remote_meta.generation,
        db_hash=remote_meta.db_hash,
        db_bytes=remote_meta.db_bytes,
    )
