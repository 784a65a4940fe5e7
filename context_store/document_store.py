"""
Document store using SQLite.

The store file is the unit of replication: everything a replica needs
lives in one SQLite database (rollback journal, no WAL sidecar), so the
sync engine can copy it as an opaque file.

Tables:
- projects:           one row per partition key
- documents:          the live row of each document
- document_versions:  append-only history, one row per put()
- documents_fts:      FTS5 index over title/body/tags/namespace, kept in
                      step with documents by triggers

Visibility (not soft-deleted, not TTL-expired) is applied at query time;
the full-text index holds every live row regardless of visibility.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import (
    ConstraintViolation,
    CorruptionError,
    InvalidQuery,
    StorageIOError,
)
from .ranking import rank_hits
from .types import (
    Document,
    GcResult,
    SearchHit,
    SearchQuery,
    SourceType,
    VersionInfo,
    format_timestamp,
    parse_utc_timestamp,
    utc_now,
    validate_key,
    validate_project,
    validate_ttl,
)

logger = logging.getLogger(__name__)


# SQL predicate for "visible at ?" over a documents alias. Takes one
# parameter: the reference time as a canonical timestamp string.
# expires_at is derived from created_at + ttl_seconds on every write;
# canonical timestamps are fixed width, so string order is time order.
_VISIBLE_SQL = (
    "{a}.deleted_at IS NULL AND ({a}.expires_at IS NULL OR {a}.expires_at > ?)"
)


def _visible(alias: str) -> str:
    return _VISIBLE_SQL.format(a=alias)


# Same predicate for trigger bodies, evaluated against the wall clock.
# SQLite's %f has millisecond precision; pad it to the canonical width.
_TRIGGER_VISIBLE_SQL = (
    "{a}.deleted_at IS NULL AND ({a}.expires_at IS NULL"
    " OR {a}.expires_at > strftime('%Y-%m-%dT%H:%M:%f000Z', 'now'))"
)

_FTS_ROW_SQL = """
    INSERT INTO documents_fts(rowid, document_id, project_id, title, body, tags, namespace)
    VALUES (
        new.rowid,
        new.id,
        new.project_id,
        coalesce(new.title, ''),
        new.body,
        coalesce((SELECT group_concat(value, ' ') FROM json_each(new.tags)), ''),
        coalesce(new.namespace, '')
    );
"""

_UNIQUE_KEY_CHECK_SQL = """
    SELECT RAISE(ABORT, 'duplicate visible key within project')
    WHERE EXISTS (
        SELECT 1 FROM documents d
        WHERE d.project_id = new.project_id
          AND d.key = new.key
          AND d.id != new.id
          AND {visible_d}
    );
""".format(visible_d=_TRIGGER_VISIBLE_SQL.format(a="d"))

_NEW_IS_VISIBLE_KEYED = "new.key IS NOT NULL AND " + _TRIGGER_VISIBLE_SQL.format(a="new")


_MIGRATION_1 = f"""
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    key TEXT,
    namespace TEXT,
    title TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    source TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    ttl_seconds INTEGER,
    deleted_at TEXT,
    expires_at TEXT,
    CONSTRAINT fk_documents_project FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
    CONSTRAINT documents_source_valid CHECK (source IN ('Agent', 'User', 'Import', 'System'))
);

CREATE INDEX IF NOT EXISTS idx_documents_project_key ON documents(project_id, key);
CREATE INDEX IF NOT EXISTS idx_documents_project_updated ON documents(project_id, updated_at);

CREATE TABLE IF NOT EXISTS document_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    title TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    body TEXT NOT NULL,
    namespace TEXT,
    key TEXT,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    ttl_seconds INTEGER,
    deleted_at TEXT,
    CONSTRAINT fk_document_versions_document FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE,
    CONSTRAINT document_versions_source_valid CHECK (source IN ('Agent', 'User', 'Import', 'System')),
    CONSTRAINT version_unique UNIQUE (document_id, version)
);

CREATE INDEX IF NOT EXISTS idx_document_versions_document ON document_versions(document_id);

CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    document_id UNINDEXED,
    project_id UNINDEXED,
    title,
    body,
    tags,
    namespace
);

CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
    {_FTS_ROW_SQL}
END;

CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
    DELETE FROM documents_fts WHERE rowid = old.rowid;
END;

CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE ON documents BEGIN
    DELETE FROM documents_fts WHERE rowid = old.rowid;
    {_FTS_ROW_SQL}
END;

CREATE TRIGGER IF NOT EXISTS documents_key_unique_bi BEFORE INSERT ON documents
WHEN {_NEW_IS_VISIBLE_KEYED}
BEGIN
    {_UNIQUE_KEY_CHECK_SQL}
END;

CREATE TRIGGER IF NOT EXISTS documents_key_unique_bu BEFORE UPDATE ON documents
WHEN {_NEW_IS_VISIBLE_KEYED}
BEGIN
    {_UNIQUE_KEY_CHECK_SQL}
END;
"""

# Ordered, additive schema steps. Index i brings the schema to version i + 1.
MIGRATIONS: list[str] = [
    _MIGRATION_1,
]

SCHEMA_VERSION = len(MIGRATIONS)

# OperationalError messages that mean I/O trouble rather than a bad MATCH
_IO_ERROR_MARKERS = ("locked", "busy", "disk", "unable to open", "readonly", "no such table")

_DOCUMENT_COLUMNS = (
    "id, project_id, key, namespace, title, tags, body, created_at, "
    "updated_at, source, version, ttl_seconds, deleted_at"
)


def run_migrations(conn: sqlite3.Connection) -> int:
    """
    Bring a connection's schema up to SCHEMA_VERSION.

    Each step runs in its own IMMEDIATE transaction together with the
    ``user_version`` bump, so concurrent openers serialize and a failed
    step leaves the previous version intact. Steps are idempotent.

    Returns:
        The schema version after migration
    """
    current = conn.execute("PRAGMA user_version").fetchone()[0]
    if current > SCHEMA_VERSION:
        raise CorruptionError(
            f"Store schema version {current} is newer than supported ({SCHEMA_VERSION})"
        )
    for target in range(current + 1, SCHEMA_VERSION + 1):
        script = MIGRATIONS[target - 1]
        try:
            conn.executescript(
                f"BEGIN IMMEDIATE;\n{script}\nPRAGMA user_version = {target};\nCOMMIT;"
            )
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        logger.info("Migrated document store schema to version %d", target)
    return max(current, SCHEMA_VERSION)


def _parse_ts(value: Optional[str], column: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_utc_timestamp(value)
    except ValueError as e:
        raise CorruptionError(f"Invalid timestamp in {column}: {value!r}") from e


def _parse_source(value: str) -> SourceType:
    try:
        return SourceType(value)
    except ValueError as e:
        raise CorruptionError(f"unknown source type: {value!r}") from e


def _parse_tags(value: str) -> list[str]:
    try:
        tags = json.loads(value)
    except json.JSONDecodeError as e:
        raise CorruptionError(f"Invalid tags JSON: {value!r}") from e
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise CorruptionError(f"Tags must be a list of strings: {value!r}")
    return tags


def _row_to_document(row: sqlite3.Row) -> Document:
    """Deserialize a documents row. Unknown enumerated values are fatal."""
    return Document(
        id=row["id"],
        project=row["project_id"],
        key=row["key"],
        namespace=row["namespace"],
        title=row["title"],
        tags=_parse_tags(row["tags"]),
        body=row["body"],
        created_at=_parse_ts(row["created_at"], "created_at"),
        updated_at=_parse_ts(row["updated_at"], "updated_at"),
        source=_parse_source(row["source"]),
        version=row["version"],
        ttl_seconds=row["ttl_seconds"],
        deleted_at=_parse_ts(row["deleted_at"], "deleted_at"),
    )


class DocumentStore:
    """
    SQLite-backed store for versioned documents.

    Opening a store runs the schema migrator once; the handle then owns a
    single connection shared by all threads (serialized by a lock). Each
    put() is one transaction: a failure leaves prior state intact.

    Satisfies StorageProtocol.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to the SQLite store file (created if missing)
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Open the connection and apply migrations."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None: transactions are issued explicitly
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=5.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA busy_timeout = 5000")
            # The store file must be self-contained for whole-file sync
            self._conn.execute("PRAGMA journal_mode = DELETE")
            run_migrations(self._conn)
        except OSError as e:
            self.close()
            raise StorageIOError("open store", self._db_path, e) from e
        except sqlite3.Error as e:
            self.close()
            raise self._translate("open store", e) from e

    def _translate(self, operation: str, exc: sqlite3.Error) -> Exception:
        """Map a sqlite3 exception onto the store's error taxonomy."""
        if isinstance(exc, sqlite3.IntegrityError):
            return ConstraintViolation(f"{operation}: {exc}")
        if isinstance(exc, sqlite3.OperationalError):
            return StorageIOError(operation, self._db_path, exc)
        if isinstance(exc, sqlite3.DatabaseError):
            return CorruptionError(f"{operation} ({self._db_path}): {exc}")
        return StorageIOError(operation, self._db_path, exc)

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageIOError("use store", self._db_path, RuntimeError("store is closed"))
        return self._conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """One IMMEDIATE transaction; rolled back on any exception."""
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise self._translate(operation, e) from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.Error):
                    raise self._translate(operation, e) from e
                raise

    def _query(self, operation: str, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._require_conn()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise self._translate(operation, e) from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(self, document: Document) -> Document:
        """
        Persist a document and append its version-history row.

        Within one transaction: ensures the project exists, upserts the
        live row (replacing every mutable field when the id exists) and
        appends a history row with the same version and values.

        The version number is taken as given; callers are responsible for
        incrementing it (see Document.revise).

        Raises:
            ConstraintViolation: duplicate visible (project, key), or the
                (id, version) pair is already in the history
            ValueError: invalid project, key or ttl_seconds
        """
        validate_project(document.project)
        if document.key is not None:
            validate_key(document.key)
        validate_ttl(document.ttl_seconds)
        with self._transaction("put") as conn:
            self._write_document(conn, document)
        logger.info(
            "put %s project=%s key=%s version=%d",
            document.id, document.project, document.key, document.version,
        )
        return document

    def _write_document(self, conn: sqlite3.Connection, doc: Document) -> None:
        tags_json = json.dumps(doc.tags, ensure_ascii=False)
        deleted_at = format_timestamp(doc.deleted_at) if doc.deleted_at else None
        expires_at = format_timestamp(doc.expires_at) if doc.expires_at else None
        conn.execute("INSERT OR IGNORE INTO projects (id) VALUES (?)", (doc.project,))
        conn.execute(f"""
            INSERT INTO documents ({_DOCUMENT_COLUMNS}, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                key = excluded.key,
                namespace = excluded.namespace,
                title = excluded.title,
                tags = excluded.tags,
                body = excluded.body,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at,
                source = excluded.source,
                version = excluded.version,
                ttl_seconds = excluded.ttl_seconds,
                deleted_at = excluded.deleted_at,
                expires_at = excluded.expires_at
        """, (
            doc.id, doc.project, doc.key, doc.namespace, doc.title, tags_json,
            doc.body, format_timestamp(doc.created_at),
            format_timestamp(doc.updated_at), doc.source.value, doc.version,
            doc.ttl_seconds, deleted_at, expires_at,
        ))
        conn.execute("""
            INSERT INTO document_versions
            (document_id, version, title, tags, body, namespace, key, source,
             created_at, ttl_seconds, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            doc.id, doc.version, doc.title, tags_json, doc.body, doc.namespace,
            doc.key, doc.source.value, format_timestamp(doc.updated_at),
            doc.ttl_seconds, deleted_at,
        ))

    def delete(
        self,
        project: str,
        *,
        key: Optional[str] = None,
        id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Document]:
        """
        Soft-delete a visible document by key or id.

        The tombstone is written as a new version, so the deletion shows
        up in the history.

        Returns:
            The tombstoned Document, or None if nothing visible matched
        """
        if (key is None) == (id is None):
            raise ValueError("Provide exactly one of key or id")
        now = now or utc_now()
        column, value = ("key", key) if key is not None else ("id", id)
        with self._transaction("delete") as conn:
            rows = conn.execute(f"""
                SELECT {_DOCUMENT_COLUMNS} FROM documents d
                WHERE d.project_id = ? AND d.{column} = ? AND {_visible("d")}
                LIMIT 2
            """, (project, value, format_timestamp(now))).fetchall()
            if not rows:
                return None
            if len(rows) > 1:
                raise ConstraintViolation(
                    f"More than one visible document for project={project!r} key={key!r}"
                )
            tombstone = _row_to_document(rows[0]).tombstone(now=now)
            self._write_document(conn, tombstone)
        logger.info(
            "delete %s project=%s version=%d", tombstone.id, project, tombstone.version
        )
        return tombstone

    def gc(
        self,
        *,
        dry_run: bool = False,
        vacuum: bool = True,
        now: Optional[datetime] = None,
    ) -> GcResult:
        """
        Hard-remove soft-deleted and expired documents with their history.

        Args:
            dry_run: Count what would be removed without removing it
            vacuum: Compact the file afterwards when anything was removed

        Returns:
            GcResult with the number of documents removed
        """
        now_ts = format_timestamp(now or utc_now())
        invisible = f"NOT ({_visible('d')})"
        with self._transaction("gc") as conn:
            count = conn.execute(
                f"SELECT COUNT(*) FROM documents d WHERE {invisible}", (now_ts,)
            ).fetchone()[0]
            if not dry_run and count:
                conn.execute(
                    f"DELETE FROM documents WHERE id IN "
                    f"(SELECT d.id FROM documents d WHERE {invisible})",
                    (now_ts,),
                )
        vacuumed = False
        if not dry_run and vacuum and count:
            with self._lock:
                try:
                    self._require_conn().execute("VACUUM")
                except sqlite3.Error as e:
                    raise self._translate("vacuum", e) from e
            vacuumed = True
        logger.info("gc removed=%d dry_run=%s vacuumed=%s", count, dry_run, vacuumed)
        return GcResult(deleted=count, vacuumed=vacuumed, dry_run=dry_run)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_by_key(
        self,
        project: str,
        key: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Document]:
        """
        Get the visible document for (project, key).

        Raises:
            ConstraintViolation: more than one visible document matches,
                i.e. the stored uniqueness invariant is broken
        """
        rows = self._query("get_by_key", f"""
            SELECT {_DOCUMENT_COLUMNS} FROM documents d
            WHERE d.project_id = ? AND d.key = ? AND {_visible("d")}
            LIMIT 2
        """, (project, key, format_timestamp(now or utc_now())))
        if len(rows) > 1:
            raise ConstraintViolation(
                f"More than one visible document for project={project!r} key={key!r}"
            )
        if not rows:
            return None
        return _row_to_document(rows[0])

    def get(self, id: str, *, now: Optional[datetime] = None) -> Optional[Document]:
        """Get a visible document by id."""
        rows = self._query("get", f"""
            SELECT {_DOCUMENT_COLUMNS} FROM documents d
            WHERE d.id = ? AND {_visible("d")}
        """, (id, format_timestamp(now or utc_now())))
        return _row_to_document(rows[0]) if rows else None

    def search(
        self,
        query: SearchQuery,
        *,
        now: Optional[datetime] = None,
    ) -> list[SearchHit]:
        """
        Full-text search over visible documents, ranked.

        The query text uses FTS5 syntax; plain words match any of title,
        body, tags or namespace. See ranking.py for the scoring.

        Raises:
            InvalidQuery: the text is not a valid FTS5 expression
        """
        if query.limit is not None and query.limit < 0:
            raise ValueError("limit must be non-negative")
        if not query.text or not query.text.strip():
            return []
        now = now or utc_now()
        sql = f"""
            SELECT {", ".join("d." + c.strip() for c in _DOCUMENT_COLUMNS.split(","))},
                   bm25(documents_fts) AS text_rank
            FROM documents_fts
            JOIN documents d ON d.id = documents_fts.document_id
            WHERE documents_fts MATCH ?
              AND (? IS NULL OR d.project_id = ?)
              AND {_visible("d")}
        """
        params = (query.text, query.project, query.project, format_timestamp(now))
        with self._lock:
            conn = self._require_conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                msg = str(e)
                if any(marker in msg for marker in _IO_ERROR_MARKERS):
                    raise self._translate("search", e) from e
                raise InvalidQuery(f"Invalid search query {query.text!r}: {msg}") from e
            except sqlite3.Error as e:
                raise self._translate("search", e) from e
        candidates = [(_row_to_document(row), row["text_rank"]) for row in rows]
        hits = rank_hits(candidates, query.text, now=now, limit=query.limit)
        logger.debug(
            "search %r project=%s matched=%d returned=%d",
            query.text, query.project, len(candidates), len(hits),
        )
        return hits

    def list_documents(
        self,
        project: Optional[str] = None,
        *,
        limit: Optional[int] = None,
        include_deleted: bool = False,
        now: Optional[datetime] = None,
    ) -> list[Document]:
        """
        List documents, most recently updated first.

        Args:
            project: Restrict to one project (None for all)
            limit: Maximum number to return (None for all)
            include_deleted: Also return soft-deleted and expired rows
        """
        clauses = []
        params: list = []
        if project is not None:
            clauses.append("d.project_id = ?")
            params.append(project)
        if not include_deleted:
            clauses.append(_visible("d"))
            params.append(format_timestamp(now or utc_now()))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT {_DOCUMENT_COLUMNS} FROM documents d
            {where}
            ORDER BY d.updated_at DESC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_document(row) for row in self._query("list", sql, tuple(params))]

    def list_versions(self, id: str) -> list[VersionInfo]:
        """Version history of a document, oldest first."""
        rows = self._query("list_versions", """
            SELECT document_id, version, title, tags, body, namespace, key,
                   source, created_at, ttl_seconds, deleted_at
            FROM document_versions
            WHERE document_id = ?
            ORDER BY version ASC
        """, (id,))
        return [
            VersionInfo(
                document_id=row["document_id"],
                version=row["version"],
                body=row["body"],
                created_at=_parse_ts(row["created_at"], "created_at"),
                source=_parse_source(row["source"]),
                key=row["key"],
                namespace=row["namespace"],
                title=row["title"],
                tags=_parse_tags(row["tags"]),
                ttl_seconds=row["ttl_seconds"],
                deleted_at=_parse_ts(row["deleted_at"], "deleted_at"),
            )
            for row in rows
        ]

    def list_projects(self) -> list[str]:
        """List all project names."""
        rows = self._query("list_projects", "SELECT id FROM projects ORDER BY id")
        return [row["id"] for row in rows]

    def count(self, project: Optional[str] = None, *, now: Optional[datetime] = None) -> int:
        """Count visible documents."""
        rows = self._query("count", f"""
            SELECT COUNT(*) FROM documents d
            WHERE (? IS NULL OR d.project_id = ?) AND {_visible("d")}
        """, (project, project, format_timestamp(now or utc_now())))
        return rows[0][0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
