"""
Tests for whole-file sync between a local store and a remote directory.

Each test builds real store files with DocumentStore; "machines" are
separate local directories sharing one remote directory.
"""

import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from context_store import sync
from context_store.document_store import DocumentStore
from context_store.errors import (
    CorruptionError,
    DivergenceError,
    LockContention,
    NotFoundError,
)
from context_store.hashing import compute_file_hash
from context_store.sync import (
    SyncConfig,
    SyncMeta,
    SyncState,
    compare,
    load_meta,
    pull,
    push,
    status,
    sync_lock,
    write_meta,
)
from context_store.types import Document


def _seed(db_path: Path, body: str) -> Path:
    """Add one document to the store at db_path (creating it)."""
    with DocumentStore(db_path) as s:
        s.put(Document.new("demo", body))
    return db_path


def _meta(generation: int, db_hash: str) -> SyncMeta:
    return SyncMeta(
        generation=generation,
        db_hash=db_hash,
        db_bytes=0,
        last_synced_at=datetime(2026, 1, 30, 10, 0, tzinfo=timezone.utc),
        machine="test",
    )


@pytest.fixture
def remote(tmp_path) -> Path:
    return tmp_path / "remote"


@pytest.fixture
def machine_a(tmp_path, remote) -> SyncConfig:
    cfg = SyncConfig.for_store(tmp_path / "a", remote)
    _seed(cfg.local_db, "written on machine a")
    return cfg


@pytest.fixture
def machine_b(tmp_path, remote) -> SyncConfig:
    return SyncConfig.for_store(tmp_path / "b", remote)


# -----------------------------------------------------------------------------
# State comparison
# -----------------------------------------------------------------------------

class TestCompare:

    def test_unknown_when_either_side_missing(self):
        assert compare(None, None) == SyncState.UNKNOWN
        assert compare(_meta(1, "a"), None) == SyncState.UNKNOWN
        assert compare(None, _meta(1, "a")) == SyncState.UNKNOWN

    def test_equal_hash_is_in_sync_regardless_of_generation(self):
        assert compare(_meta(1, "a"), _meta(1, "a")) == SyncState.IN_SYNC
        assert compare(_meta(3, "a"), _meta(1, "a")) == SyncState.IN_SYNC

    def test_generation_order(self):
        assert compare(_meta(2, "a"), _meta(1, "b")) == SyncState.AHEAD
        assert compare(_meta(1, "a"), _meta(2, "b")) == SyncState.BEHIND

    def test_equal_generation_different_hash_diverged(self):
        assert compare(_meta(2, "a"), _meta(2, "b")) == SyncState.DIVERGED


# -----------------------------------------------------------------------------
# Metadata sidecar
# -----------------------------------------------------------------------------

class TestMetadata:

    def test_missing_file_is_none(self, tmp_path):
        assert load_meta(tmp_path / "nope.json") is None

    def test_write_then_load(self, tmp_path):
        path = tmp_path / "meta" / "sync-meta.json"
        meta = _meta(4, "f" * 64)
        write_meta(path, meta)
        assert load_meta(path) == meta
        assert not path.with_name(path.name + ".tmp").exists()

    def test_invalid_json_is_corruption(self, tmp_path):
        path = tmp_path / "sync-meta.json"
        path.write_text("{not json")
        with pytest.raises(CorruptionError):
            load_meta(path)

    def test_missing_fields_is_corruption(self, tmp_path):
        path = tmp_path / "sync-meta.json"
        path.write_text('{"generation": 1}')
        with pytest.raises(CorruptionError):
            load_meta(path)

    def test_non_object_is_corruption(self, tmp_path):
        path = tmp_path / "sync-meta.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(CorruptionError):
            load_meta(path)

    def test_status_surfaces_corrupt_remote(self, machine_a):
        push(machine_a)
        machine_a.remote_meta.write_text("garbage")
        with pytest.raises(CorruptionError):
            status(machine_a)


# -----------------------------------------------------------------------------
# Push
# -----------------------------------------------------------------------------

class TestPush:

    def test_first_push_creates_remote(self, machine_a):
        assert status(machine_a).state == SyncState.UNKNOWN

        result = push(machine_a)

        assert result.generation == 1
        assert machine_a.remote_db.exists()
        assert compute_file_hash(machine_a.remote_db) == compute_file_hash(machine_a.local_db)
        assert result.db_hash == compute_file_hash(machine_a.local_db)
        assert result.db_bytes == machine_a.local_db.stat().st_size
        assert load_meta(machine_a.local_meta) == load_meta(machine_a.remote_meta)

    def test_push_is_idempotent(self, machine_a):
        first = push(machine_a)
        assert status(machine_a).state == SyncState.IN_SYNC

        second = push(machine_a)

        assert second.generation == first.generation + 1
        assert second.db_hash == first.db_hash
        assert status(machine_a).state == SyncState.IN_SYNC

    def test_push_after_local_change(self, machine_a):
        first = push(machine_a)
        _seed(machine_a.local_db, "another note")

        second = push(machine_a)

        assert second.generation == 2
        assert second.db_hash != first.db_hash
        assert compute_file_hash(machine_a.remote_db) == second.db_hash

    def test_generation_exceeds_both_sides(self, machine_a):
        """With no local metadata, the new generation still beats the remote."""
        machine_a.remote.mkdir(parents=True)
        write_meta(machine_a.remote_meta, _meta(5, "e" * 64))

        result = push(machine_a)

        assert result.generation == 6

    def test_machine_label_recorded(self, machine_a):
        push(machine_a, machine="laptop")
        assert load_meta(machine_a.remote_meta).machine == "laptop"

    def test_backup_written(self, machine_a):
        push(machine_a)
        backup = machine_a.local_db.with_name("db.sqlite.bak")
        assert backup.exists()
        assert compute_file_hash(backup) == compute_file_hash(machine_a.local_db)

    def test_missing_local_db(self, machine_b):
        with pytest.raises(NotFoundError):
            push(machine_b)
        assert not machine_b.lock_path.exists()

    def test_push_refused_when_behind(self, machine_a, machine_b):
        push(machine_a)
        pull(machine_b)
        _seed(machine_a.local_db, "newer on a")
        push(machine_a)
        _seed(machine_b.local_db, "stale edit on b")

        assert status(machine_b).state == SyncState.BEHIND
        with pytest.raises(DivergenceError, match="--force"):
            push(machine_b)

    def test_push_refused_when_diverged(self, machine_a):
        push(machine_a)
        write_meta(machine_a.local_meta, _meta(7, "a" * 64))
        write_meta(machine_a.remote_meta, _meta(7, "b" * 64))

        with pytest.raises(DivergenceError):
            push(machine_a)

    def test_force_push_overwrites_remote(self, machine_a):
        push(machine_a)
        write_meta(machine_a.local_meta, _meta(7, "a" * 64))
        write_meta(machine_a.remote_meta, _meta(7, "b" * 64))

        result = push(machine_a, force=True)

        assert result.generation == 8
        assert compute_file_hash(machine_a.remote_db) == compute_file_hash(machine_a.local_db)
        assert status(machine_a).state == SyncState.IN_SYNC


# -----------------------------------------------------------------------------
# Pull
# -----------------------------------------------------------------------------

class TestPull:

    def test_pull_into_empty_machine(self, machine_a, machine_b):
        pushed = push(machine_a)

        result = pull(machine_b)

        assert result.generation == pushed.generation
        assert compute_file_hash(machine_b.local_db) == pushed.db_hash
        assert load_meta(machine_b.local_meta) == load_meta(machine_a.remote_meta)
        assert status(machine_b).state == SyncState.IN_SYNC
        with DocumentStore(machine_b.local_db) as s:
            assert [d.body for d in s.list_documents("demo")] == ["written on machine a"]

    def test_pull_fast_forwards_when_behind(self, machine_a, machine_b):
        push(machine_a)
        pull(machine_b)
        _seed(machine_a.local_db, "second note")
        pushed = push(machine_a)

        assert status(machine_b).state == SyncState.BEHIND
        result = pull(machine_b)

        assert result.generation == 2
        assert compute_file_hash(machine_b.local_db) == pushed.db_hash

    def test_pull_refused_when_ahead(self, machine_a):
        push(machine_a)
        write_meta(machine_a.local_meta, _meta(3, "a" * 64))
        write_meta(machine_a.remote_meta, _meta(2, "b" * 64))

        assert status(machine_a).state == SyncState.AHEAD
        with pytest.raises(DivergenceError):
            pull(machine_a)

    def test_diverged_pull_requires_force(self, machine_a):
        push(machine_a)
        _seed(machine_a.local_db, "local only")
        write_meta(machine_a.local_meta, _meta(1, compute_file_hash(machine_a.local_db)))
        local_before = compute_file_hash(machine_a.local_db)

        assert status(machine_a).state == SyncState.DIVERGED
        with pytest.raises(DivergenceError) as exc_info:
            pull(machine_a)
        assert "force" in str(exc_info.value)
        assert compute_file_hash(machine_a.local_db) == local_before

        pull(machine_a, force=True)

        assert compute_file_hash(machine_a.local_db) == compute_file_hash(machine_a.remote_db)
        assert load_meta(machine_a.local_meta) == load_meta(machine_a.remote_meta)

    def test_backup_before_pull(self, machine_a, machine_b):
        push(machine_a)
        _seed(machine_b.local_db, "b's own note")
        before = compute_file_hash(machine_b.local_db)

        pull(machine_b)

        backup = machine_b.local_db.with_name("db.sqlite.before-pull")
        assert backup.exists()
        assert compute_file_hash(backup) == before

    def test_missing_remote_db(self, machine_b):
        with pytest.raises(NotFoundError):
            pull(machine_b)

    def test_missing_remote_metadata(self, machine_a, machine_b):
        push(machine_a)
        machine_a.remote_meta.unlink()

        with pytest.raises(NotFoundError, match="metadata"):
            pull(machine_b)
        assert not machine_b.local_db.exists()


# -----------------------------------------------------------------------------
# Locking
# -----------------------------------------------------------------------------

class TestSyncLock:

    def test_lock_removed_after_success(self, machine_a):
        push(machine_a)
        assert not machine_a.lock_path.exists()

    def test_lock_removed_after_failure(self, machine_a):
        push(machine_a)
        write_meta(machine_a.local_meta, _meta(7, "a" * 64))
        write_meta(machine_a.remote_meta, _meta(7, "b" * 64))
        with pytest.raises(DivergenceError):
            pull(machine_a)
        assert not machine_a.lock_path.exists()

    def test_held_lock_blocks_push_and_pull(self, machine_a):
        with sync_lock(machine_a) as lock_path:
            assert lock_path.exists()
            with pytest.raises(LockContention) as exc_info:
                push(machine_a)
            assert str(lock_path) in str(exc_info.value)
            with pytest.raises(LockContention):
                pull(machine_a)
        assert not machine_a.lock_path.exists()

    def test_stale_lock_file_blocks(self, machine_a):
        machine_a.lock_path.write_text("12345\n")
        with pytest.raises(LockContention):
            push(machine_a)
        # A lock we did not take is left alone
        assert machine_a.lock_path.exists()

    def test_concurrent_push_one_wins(self, machine_a, monkeypatch):
        """A push holding the lock makes a second push fail immediately."""
        entered = threading.Event()
        release = threading.Event()
        real_hash = sync.compute_file_hash

        def slow_hash(path):
            entered.set()
            release.wait(timeout=10)
            return real_hash(path)

        monkeypatch.setattr(sync, "compute_file_hash", slow_hash)

        results = []
        errors = []

        def run():
            try:
                results.append(push(machine_a))
            except Exception as e:
                errors.append(e)

        t = threading.Thread(target=run)
        t.start()
        try:
            assert entered.wait(timeout=10)
            with pytest.raises(LockContention):
                push(machine_a)
        finally:
            release.set()
            t.join(timeout=10)

        assert errors == []
        assert [r.generation for r in results] == [1]
        assert not machine_a.lock_path.exists()


class TestHashing:

    def test_known_digest(self, tmp_path):
        path = tmp_path / "abc"
        path.write_bytes(b"abc")
        assert compute_file_hash(path) == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_multi_block_file(self, tmp_path):
        path = tmp_path / "big"
        path.write_bytes(b"x" * 20000)
        other = tmp_path / "big2"
        other.write_bytes(b"x" * 19999 + b"y")
        assert compute_file_hash(path) != compute_file_hash(other)


class TestMachineLabel:

    def test_hostname_env_preferred(self, monkeypatch):
        monkeypatch.setenv("HOSTNAME", "box-1")
        monkeypatch.setenv("USER", "someone")
        assert sync.default_machine_label() == "box-1"

    def test_user_fallback(self, monkeypatch):
        monkeypatch.delenv("HOSTNAME", raising=False)
        monkeypatch.setenv("USER", "someone")
        assert sync.default_machine_label() == "someone"
