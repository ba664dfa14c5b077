"""Entry ingestion, retention and queries."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from feed_sentry.config import PagingConfig, RetentionConfig
from feed_sentry.database import Database
from feed_sentry.errors import EntryNotFound, FeedNotFound
from feed_sentry.messaging import MessageBus, MessageType, broadcast_message, update_badge
from feed_sentry.models import (
    ALL,
    Entry,
    IngestResult,
    InfiniteResult,
    Page,
    ParsedItem,
    generate_entry_id,
    utcnow,
)
from feed_sentry.notifications import match_keywords

logger = logging.getLogger(__name__)


def resolve_entry_identifier(item: ParsedItem) -> str | None:
    """First non-blank of guid, link and title, trimmed."""
    for candidate in (item.guid, item.link, item.title):
        normalized = (candidate or "").strip()
        if normalized:
            return normalized
    return None


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_published_time(item: ParsedItem, fallback: datetime) -> datetime:
    """ISO date, then freeform publish date, then the fallback."""
    return _parse_timestamp(item.iso_date) or _parse_timestamp(item.pub_date) or fallback


@dataclass
class EntryQuery:
    """Filters and paging for offset-mode entry queries."""

    page: int = 1
    page_size: int = 50
    keyword: str | None = None
    is_read: bool | None = None
    keyword_filter_enabled: bool = False
    keyword_filter_map: dict[str, list[str]] | None = None


class EntryRepository:
    """Dedup, retention and read-state bookkeeping for ingested entries."""

    def __init__(
        self,
        db: Database,
        bus: MessageBus,
        retention: RetentionConfig | None = None,
        paging: PagingConfig | None = None,
    ):
        self.db = db
        self.bus = bus
        self.retention = retention or RetentionConfig()
        self.paging = paging or PagingConfig()

    def ingest(self, feed_id: str, items: list[ParsedItem]) -> IngestResult:
        """Insert new items for a feed, skipping duplicates and unidentifiable items.

        Raises:
            FeedNotFound: If the feed does not exist.
        """
        feed = self.db.get_feed(feed_id)
        if feed is None:
            raise FeedNotFound(f"Feed not found: {feed_id}")

        keyword_enabled = feed.keyword_notify_enabled
        now = utcnow()
        added = 0
        skipped = 0
        new_entries: list[Entry] = []

        with self.db.transaction():
            candidates: list[tuple[str, ParsedItem]] = []
            for item in items:
                identifier = resolve_entry_identifier(item)
                if identifier is None:
                    skipped += 1
                    continue
                candidates.append((generate_entry_id(feed_id, identifier), item))

            existing = self.db.existing_entry_ids([entry_id for entry_id, _ in candidates])
            for entry_id, item in candidates:
                if entry_id in existing:
                    skipped += 1
                    continue
                existing.add(entry_id)

                title = item.title or "Untitled"
                new_entries.append(
                    Entry(
                        id=entry_id,
                        feed_id=feed_id,
                        title=title,
                        author=item.author,
                        link=item.link,
                        pub_date=item.pub_date,
                        published_at=resolve_published_time(item, now),
                        ingested_at=now,
                        is_read=False,
                        matched_keywords=(
                            match_keywords(title, feed.keywords) if keyword_enabled else []
                        ),
                    )
                )
                added += 1

            self.db.insert_entries(new_entries)

        self.enforce_retention(feed_id)
        logger.info("Added %d entries, skipped %d for feed %s", added, skipped, feed_id)
        return IngestResult(added=added, skipped=skipped, new_entries=new_entries)

    def enforce_retention(self, feed_id: str) -> int:
        """Evict the oldest entries in one batch once a feed exceeds the cap."""
        cap = self.retention.max_entries_per_feed
        with self.db.transaction():
            count = self.db.count_entries(feed_id)
            if count <= cap:
                return 0
            to_delete = count - cap + self.retention.eviction_batch_size
            deleted = self.db.delete_entries(self.db.oldest_entry_ids(feed_id, to_delete))
        logger.info("Cleaned up %d old entries for feed %s", deleted, feed_id)
        return deleted

    def get(self, entry_id: str) -> Entry:
        entry = self.db.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry not found: {entry_id}")
        return entry

    def count(self, feed_id: str) -> int:
        return self.db.count_entries(feed_id)

    def query(self, feed_id: str = ALL, options: EntryQuery | None = None) -> Page:
        """Offset-paged entries, newest first.

        Without text or keyword filters the page and total come straight from
        SQL; filters are applied in Python over the full result.
        """
        options = options or EntryQuery(page_size=self.paging.page_size)
        page = max(options.page, 1)
        page_size = max(options.page_size, 1)
        offset = (page - 1) * page_size

        if not options.keyword and not options.keyword_filter_enabled:
            total = self.db.count_matching_entries(feed_id, is_read=options.is_read)
            entries = self.db.select_entries(
                feed_id, is_read=options.is_read, limit=page_size, offset=offset
            )
        else:
            entries = self.db.select_entries(feed_id, is_read=options.is_read)
            entries = _filter_text(entries, options.keyword)

            if options.keyword_filter_enabled:
                keyword_map = options.keyword_filter_map
                if keyword_map is None:
                    keyword_map = {feed.id: feed.keywords for feed in self.db.list_feeds()}
                entries = _filter_keywords(entries, keyword_map)

            total = len(entries)
            entries = entries[offset:offset + page_size]

        data = self._attach_favorites(entries)
        return Page(
            data=data,
            total=total,
            page=page,
            page_size=page_size,
            has_more=offset + page_size < total,
        )

    def query_infinite(
        self,
        feed_id: str = ALL,
        limit: int | None = None,
        max_total: int | None = None,
        keyword: str | None = None,
        is_read: bool | None = None,
        cursor: datetime | None = None,
        exclude_inactive_feeds: bool = False,
    ) -> InfiniteResult:
        """Cursor-paged entries published strictly before ``cursor``."""
        limit = self.paging.infinite_limit if limit is None else limit
        max_total = self.paging.infinite_max if max_total is None else max_total

        feed_ids = None
        if exclude_inactive_feeds and feed_id == ALL:
            feed_ids = self.db.active_feed_ids()

        take = min(limit, max_total)
        if not keyword:
            total = self.db.count_matching_entries(
                feed_id, is_read=is_read, before=cursor, feed_ids=feed_ids
            )
            entries = self.db.select_entries(
                feed_id, is_read=is_read, before=cursor, feed_ids=feed_ids, limit=take
            )
        else:
            entries = self.db.select_entries(
                feed_id, is_read=is_read, before=cursor, feed_ids=feed_ids
            )
            entries = _filter_text(entries, keyword)
            total = len(entries)
            entries = entries[:take]

        data = self._attach_favorites(entries)
        return InfiniteResult(
            data=data,
            has_more=len(data) >= limit and total > len(data) and len(data) < max_total,
            total=min(total, max_total),
        )

    def mark_read(self, entry_id: str) -> bool:
        """Mark one entry read. Returns False if it already was.

        Raises:
            EntryNotFound: If the entry does not exist.
        """
        entry = self.get(entry_id)
        if entry.is_read or not self.db.set_entries_read([entry_id], True):
            return False
        self._broadcast_read_changed(entry.feed_id)
        return True

    def mark_unread(self, entry_ids: list[str]) -> int:
        changed = self.db.set_entries_read(list(entry_ids), False)
        if changed:
            self._broadcast_read_changed(None)
        return changed

    def toggle_read(self, entry_id: str) -> bool:
        """Flip an entry's read state and return the new value."""
        entry = self.get(entry_id)
        self.db.set_entries_read([entry_id], not entry.is_read)
        self._broadcast_read_changed(entry.feed_id)
        return not entry.is_read

    def mark_all_read(self, feed_id: str = ALL) -> int:
        changed = self.db.mark_feed_entries_read(feed_id)
        logger.info("Marked all as read for %s (%d entries)", feed_id, changed)
        self._broadcast_read_changed(feed_id)
        return changed

    def unread_count(self, feed_id: str = ALL, active_only: bool = False) -> int:
        if feed_id == ALL and active_only:
            active = self.db.active_feed_ids()
            if not active:
                return 0
            return self.db.count_unread(ALL, feed_ids=active)
        return self.db.count_unread(feed_id)

    def _attach_favorites(self, entries: list[Entry]) -> list[Entry]:
        favorites = self.db.favorites_for_entries([entry.id for entry in entries])
        for entry in entries:
            entry.favorite_id = favorites.get(entry.id)
            entry.is_favorite = entry.favorite_id is not None
        return entries

    def _broadcast_read_changed(self, feed_id: str | None) -> None:
        count = self.unread_count(ALL, active_only=True)
        update_badge(self.bus, count)
        broadcast_message(
            self.bus,
            MessageType.ENTRY_READ_CHANGED,
            {"feed_id": feed_id, "count": count},
        )


def _filter_text(entries: list[Entry], keyword: str | None) -> list[Entry]:
    if not keyword:
        return entries
    needle = keyword.lower()
    return [
        entry for entry in entries
        if needle in (entry.title or "").lower() or needle in (entry.author or "").lower()
    ]


def _filter_keywords(entries: list[Entry], keyword_map: dict[str, list[str]]) -> list[Entry]:
    matched_entries = []
    for entry in entries:
        keywords = keyword_map.get(entry.feed_id) or []
        if not keywords:
            continue
        matched = match_keywords(entry.title or "", keywords)
        if matched:
            entry.matched_keywords = matched
            matched_entries.append(entry)
    return matched_entries
