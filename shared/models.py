"""Shared data models for the Readwise sync and dashboard services."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union


class SyncStatus(str, Enum):
    """Persisted status of the singleton sync cursor."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class Location(str, Enum):
    """Workflow bucket of a document in Readwise Reader."""
    NEW = "new"
    LATER = "later"
    SHORTLIST = "shortlist"
    ARCHIVE = "archive"
    FEED = "feed"


class Category(str, Enum):
    """Kind of document in Readwise Reader."""
    ARTICLE = "article"
    EMAIL = "email"
    RSS = "rss"
    HIGHLIGHT = "highlight"
    NOTE = "note"
    PDF = "pdf"
    EPUB = "epub"
    TWEET = "tweet"
    VIDEO = "video"


UNREAD_LOCATIONS = [Location.NEW.value, Location.LATER.value, Location.SHORTLIST.value]


@dataclass
class DocumentRecord:
    """A Readwise document in its local persisted shape."""
    readwise_id: str
    url: Optional[str]
    source_url: Optional[str]
    title: Optional[str]
    author: Optional[str]
    summary: Optional[str]
    category: str
    location: Optional[str]
    tags: List[str]
    site_name: Optional[str]
    word_count: Optional[int]
    published_date: Optional[datetime]
    reading_progress: float
    first_opened_at: Optional[datetime]
    last_opened_at: Optional[datetime]
    last_moved_at: Optional[datetime]
    parent_id: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass
class DocumentPage:
    """One page of the upstream document listing."""
    results: List[dict]
    next_cursor: Optional[str]
    count: Optional[int] = None


@dataclass
class SyncProgress:
    """Progress reported to the caller after every sync operation.

    ``status`` is one of idle, syncing, completed or error; ``completed``
    is only ever reported, never persisted.
    """
    status: str
    total_synced: int
    current_batch: int
    has_more: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "total_synced": self.total_synced,
            "current_batch": self.current_batch,
            "has_more": self.has_more,
            "error": self.error,
        }


@dataclass
class ArchiveSucceeded:
    """Upstream accepted the archive for one document."""
    readwise_id: str


@dataclass
class ArchiveFailed:
    """Upstream rejected (or never answered) the archive for one document."""
    readwise_id: str
    error: str


ArchiveOutcome = Union[ArchiveSucceeded, ArchiveFailed]


@dataclass
class ArchiveResult:
    """Aggregated outcome of a best-effort archive batch."""
    outcomes: List[ArchiveOutcome] = field(default_factory=list)

    @property
    def succeeded_ids(self) -> List[str]:
        return [o.readwise_id for o in self.outcomes if isinstance(o, ArchiveSucceeded)]

    @property
    def failures(self) -> List[ArchiveFailed]:
        return [o for o in self.outcomes if isinstance(o, ArchiveFailed)]

    @property
    def success(self) -> int:
        return len(self.succeeded_ids)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def errors(self) -> List[str]:
        return [f"{f.readwise_id}: {f.error}" for f in self.failures]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class TriageSettings:
    """Category-specific stale thresholds, in days."""
    stale_news_threshold: int
    stale_article_threshold: int
    stale_default_threshold: int


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
