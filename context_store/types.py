"""
Data types for the context store.
"""

import enum
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical stored form.

    All timestamps are UTC with microseconds and a 'Z' suffix, e.g.
    ``2026-01-30T10:00:00.000000Z``. The fixed width keeps string
    comparison chronological.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical form as well as RFC 3339 variants with
    '+00:00' offsets or without fractional seconds.
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SourceType(str, enum.Enum):
    """Provenance of a document. Persisted as the member value."""
    AGENT = "Agent"
    USER = "User"
    IMPORT = "Import"
    SYSTEM = "System"

    @classmethod
    def parse(cls, value: str) -> "SourceType":
        """Case-insensitive lookup for user input (CLI flags, config)."""
        for member in cls:
            if member.value.casefold() == value.strip().casefold():
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown source {value!r} (expected one of: {allowed})")


MAX_KEY_LENGTH = 512
MAX_PROJECT_LENGTH = 256
# Largest value SQLite can store in an INTEGER column
MAX_TTL_SECONDS = 2**63 - 1

# Expiry past the datetime range means the document never expires
NEVER_EXPIRES = datetime.max.replace(tzinfo=timezone.utc)

# Control characters are never valid in project names or keys
_CONTROL_RE = re.compile(r'[\x00-\x1f\x7f]')


def validate_project(project: str) -> None:
    """Validate a project name: non-empty, bounded, no control characters."""
    if not project or not project.strip() or len(project) > MAX_PROJECT_LENGTH:
        raise ValueError(f"Project must be 1-{MAX_PROJECT_LENGTH} characters")
    if _CONTROL_RE.search(project):
        raise ValueError(f"Project contains invalid characters: {project!r}")


def validate_key(key: str) -> None:
    """Validate a document key."""
    if not key or len(key) > MAX_KEY_LENGTH:
        raise ValueError(f"Key must be 1-{MAX_KEY_LENGTH} characters")
    if _CONTROL_RE.search(key):
        raise ValueError(f"Key contains invalid characters: {key!r}")


def validate_ttl(ttl_seconds: Optional[int]) -> None:
    """Validate a TTL: None, or 0..MAX_TTL_SECONDS."""
    if ttl_seconds is not None and not 0 <= ttl_seconds <= MAX_TTL_SECONDS:
        raise ValueError(f"ttl_seconds must be between 0 and {MAX_TTL_SECONDS}")


def new_document_id() -> str:
    """Fresh opaque document id."""
    return uuid.uuid4().hex


@dataclass
class Document:
    """
    A stored text artifact.

    The store persists exactly what it is given, including ``version``;
    use :meth:`revise` and :meth:`tombstone` to derive the next revision.

    Attributes:
        id: Opaque unique identifier, never reused
        project: Partition key
        key: Optional human identifier, unique per project among visible docs
        tags: Free-form labels; order carries no meaning
        body: Markdown/plain text content
        ttl_seconds: Lifetime measured from ``created_at``
        deleted_at: Set when soft-deleted
    """
    id: str
    project: str
    body: str
    created_at: datetime
    updated_at: datetime
    key: Optional[str] = None
    namespace: Optional[str] = None
    title: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    source: SourceType = SourceType.USER
    version: int = 1
    ttl_seconds: Optional[int] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        project: str,
        body: str,
        *,
        key: Optional[str] = None,
        namespace: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: SourceType = SourceType.USER,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> "Document":
        """Build a version-1 document with a fresh id."""
        validate_project(project)
        if key is not None:
            validate_key(key)
        validate_ttl(ttl_seconds)
        ts = now or utc_now()
        return cls(
            id=new_document_id(),
            project=project,
            body=body,
            created_at=ts,
            updated_at=ts,
            key=key,
            namespace=namespace,
            title=title,
            tags=list(tags or []),
            source=source,
            version=1,
            ttl_seconds=ttl_seconds,
        )

    def revise(self, *, now: Optional[datetime] = None, **changes) -> "Document":
        """Return the next revision: version + 1, fresh updated_at."""
        return replace(
            self,
            version=self.version + 1,
            updated_at=now or utc_now(),
            **changes,
        )

    def tombstone(self, *, now: Optional[datetime] = None) -> "Document":
        """Return the soft-deleted next revision."""
        ts = now or utc_now()
        return self.revise(now=ts, deleted_at=ts)

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.ttl_seconds is None:
            return None
        try:
            return self.created_at + timedelta(seconds=self.ttl_seconds)
        except OverflowError:
            return NEVER_EXPIRES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires = self.expires_at
        return expires is not None and (now or utc_now()) >= expires

    def is_visible(self, now: Optional[datetime] = None) -> bool:
        """Visible iff not soft-deleted and not TTL-expired."""
        return self.deleted_at is None and not self.is_expired(now)

    def to_dict(self) -> dict:
        """JSON-ready representation."""
        return {
            "id": self.id,
            "project": self.project,
            "key": self.key,
            "namespace": self.namespace,
            "title": self.title,
            "tags": list(self.tags),
            "body": self.body,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "source": self.source.value,
            "version": self.version,
            "ttl_seconds": self.ttl_seconds,
            "deleted_at": format_timestamp(self.deleted_at) if self.deleted_at else None,
        }

    def __str__(self) -> str:
        label = self.key or self.id
        return f"{self.project}/{label}@v{self.version}: {self.body[:60]}"


@dataclass(frozen=True)
class SearchQuery:
    """Full-text query. ``project=None`` searches every project."""
    text: str
    project: Optional[str] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class SearchHit:
    """A ranked search result."""
    document: Document
    score: float


@dataclass(frozen=True)
class VersionInfo:
    """One immutable row of a document's version history."""
    document_id: str
    version: int
    body: str
    created_at: datetime
    source: SourceType
    key: Optional[str] = None
    namespace: Optional[str] = None
    title: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    ttl_seconds: Optional[int] = None
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class GcResult:
    """Outcome of garbage collection."""
    deleted: int
    vacuumed: bool
    dry_run: bool
