"""Data models for Feed Sentry."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone

ALL = "all"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_feed_id(url: str) -> str:
    """Derive a stable feed id from its URL."""
    return hashlib.blake2b(url.encode("utf-8"), digest_size=8).hexdigest()


def generate_entry_id(feed_id: str, identifier: str) -> str:
    """Combine a feed id and an item identifier into an entry id."""
    return f"{feed_id}_{identifier}"


def normalize_keywords(keywords) -> list[str]:
    """Drop blanks and duplicates, keeping first-seen order."""
    result: list[str] = []
    for keyword in keywords or ():
        keyword = (keyword or "").strip()
        if keyword and keyword not in result:
            result.append(keyword)
    return result


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source."""

    id: str
    url: str
    title: str
    poll_interval_seconds: int = 600
    notify_on_new_item: bool = False
    notify_on_keyword_match: bool = False
    keywords: list[str] = field(default_factory=list)
    active: bool = True
    consecutive_failure_count: int = 0
    last_sync_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def display_title(self) -> str:
        return (self.title or "").strip() or "Feed Sentry"

    @property
    def keyword_notify_enabled(self) -> bool:
        return self.notify_on_keyword_match and bool(self.keywords)


@dataclass
class Entry:
    """Represents a single ingested item from a feed."""

    id: str
    feed_id: str
    title: str = "Untitled"
    author: str | None = None
    link: str | None = None
    pub_date: str | None = None
    published_at: datetime = field(default_factory=utcnow)
    ingested_at: datetime = field(default_factory=utcnow)
    is_read: bool = False
    # Derived on query, never stored
    matched_keywords: list[str] = field(default_factory=list)
    is_favorite: bool = False
    favorite_id: str | None = None


@dataclass
class FavoriteFolder:
    """A user-named folder of favorites."""

    id: str
    name: str
    is_default: bool = False
    order: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    total: int = 0


@dataclass
class Favorite:
    """A bookmarked entry or link, independent of entry retention."""

    id: str
    folder_id: str
    title: str
    link: str
    entry_id: str | None = None
    source: str = "manual"
    created_from: str = "popup"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ParsedItem:
    """One normalized item returned by the feed client."""

    guid: str | None = None
    title: str | None = None
    link: str | None = None
    author: str | None = None
    pub_date: str | None = None
    iso_date: str | None = None


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom document."""

    title: str | None
    link: str | None
    description: str | None
    items: list[ParsedItem]


@dataclass
class FetchResult:
    """Outcome of a gateway fetch."""

    success: bool
    title: str | None = None
    items: list[ParsedItem] = field(default_factory=list)
    error: str | None = None
    permission_denied: bool = False


@dataclass
class IngestResult:
    added: int
    skipped: int
    new_entries: list[Entry]


@dataclass
class Page:
    """One page of entries plus paging metadata."""

    data: list[Entry]
    total: int
    page: int
    page_size: int
    has_more: bool


@dataclass
class InfiniteResult:
    data: list[Entry]
    has_more: bool
    total: int
