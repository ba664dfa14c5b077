"""Feed subscription CRUD and sync bookkeeping."""

import dataclasses
import logging

from feed_sentry.config import PollingConfig
from feed_sentry.database import Database
from feed_sentry.errors import (
    AlreadySubscribed,
    BroadcastFailed,
    FeedNotFound,
    FetchFailed,
    InvalidUrl,
    PermissionDenied,
)
from feed_sentry.fetcher import FetchGateway, validate_feed_url
from feed_sentry.messaging import MessageBus, emit_feed_updated
from feed_sentry.models import Feed, generate_feed_id, normalize_keywords, utcnow

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ("id", "url", "created_at", "updated_at")
UPDATABLE_FIELDS = {
    "title",
    "poll_interval_seconds",
    "notify_on_new_item",
    "notify_on_keyword_match",
    "keywords",
    "active",
    "consecutive_failure_count",
    "last_sync_at",
}


def requires_restart(patch: dict, current: Feed) -> bool:
    """True iff the patch changes the poll interval or the active flag."""
    if "poll_interval_seconds" in patch and patch["poll_interval_seconds"] != current.poll_interval_seconds:
        return True
    if "active" in patch and bool(patch["active"]) != current.active:
        return True
    return False


class FeedRepository:
    """Subscription records with writes tied to their feed_updated broadcast.

    subscribe, update and unsubscribe announce the change on the bus before
    returning. If a receiver fails, the write is undone and the error
    re-raised, so callers never observe a change the scheduler was not told
    about.
    """

    def __init__(
        self,
        db: Database,
        gateway: FetchGateway,
        bus: MessageBus,
        polling: PollingConfig | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.bus = bus
        self.polling = polling or PollingConfig()

    def _clamp_interval(self, seconds: int | None) -> int:
        if seconds is None:
            return self.polling.default_interval_seconds
        return max(int(seconds), self.polling.min_interval_seconds)

    def subscribe(
        self,
        url: str,
        title: str | None = None,
        poll_interval_seconds: int | None = None,
        notify_on_new_item: bool = False,
        notify_on_keyword_match: bool = False,
        keywords=(),
    ) -> Feed:
        """Validate, authorize and probe a feed URL, then store the subscription.

        Raises:
            InvalidUrl: If the URL is not an absolute http(s) URL.
            AlreadySubscribed: If a feed with the same id exists.
            PermissionDenied: If the permission gate rejects the host.
            FetchFailed: If the probe fetch fails.
            BroadcastFailed: If announcing the new feed failed (nothing stored).
        """
        url = (url or "").strip()
        if not validate_feed_url(url):
            raise InvalidUrl(f"Invalid feed URL: {url!r}")

        feed_id = generate_feed_id(url)
        if self.db.get_feed(feed_id) is not None:
            raise AlreadySubscribed("Already subscribed to this feed")

        if not self.gateway.has_permission(url):
            raise PermissionDenied(f"Host permission required for {url}")

        result = self.gateway.fetch(url)
        if result.permission_denied:
            raise PermissionDenied(f"Host permission required for {url}")
        if not result.success:
            raise FetchFailed(f"Failed to fetch feed: {result.error}")

        timestamp = utcnow()
        feed = Feed(
            id=feed_id,
            url=url,
            title=(title or "").strip() or (result.title or "").strip() or "Untitled Feed",
            poll_interval_seconds=self._clamp_interval(poll_interval_seconds),
            notify_on_new_item=notify_on_new_item,
            notify_on_keyword_match=notify_on_keyword_match,
            keywords=normalize_keywords(keywords),
            active=True,
            consecutive_failure_count=0,
            created_at=timestamp,
            updated_at=timestamp,
        )
        self.db.insert_feed(feed)
        logger.info("Added feed %s (%s)", feed.id, feed.url)

        try:
            emit_feed_updated(self.bus, feed_id, "created", requires_restart=True)
        except BroadcastFailed:
            self.db.delete_feed(feed_id)
            logger.warning("New feed reverted due to broadcast failure: %s", feed_id)
            raise

        return feed

    def update(self, feed_id: str, **patch) -> Feed:
        """Apply a partial update.

        Raises:
            FeedNotFound: If the feed does not exist.
            ValueError: If the patch names an unknown field.
            BroadcastFailed: If announcing the update failed (update undone).
        """
        feed = self.db.get_feed(feed_id)
        if feed is None:
            raise FeedNotFound(f"Feed not found: {feed_id}")

        for name in PROTECTED_FIELDS:
            patch.pop(name, None)
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown feed fields: {', '.join(sorted(unknown))}")

        if "poll_interval_seconds" in patch:
            patch["poll_interval_seconds"] = self._clamp_interval(patch["poll_interval_seconds"])
        if "keywords" in patch:
            patch["keywords"] = normalize_keywords(patch["keywords"])
        if "active" in patch:
            patch["active"] = bool(patch["active"])

        restart = requires_restart(patch, feed)
        snapshot = dataclasses.replace(feed, keywords=list(feed.keywords))

        updated = dataclasses.replace(feed, **patch, updated_at=utcnow())
        self.db.replace_feed(updated)
        logger.info("Updated feed %s", feed_id)

        try:
            emit_feed_updated(self.bus, feed_id, "updated", requires_restart=restart)
        except BroadcastFailed:
            self.db.replace_feed(snapshot)
            logger.warning("Feed update reverted due to broadcast failure: %s", feed_id)
            raise

        return updated

    def unsubscribe(self, feed_id: str) -> bool:
        """Delete a feed and its entries. Returns False if there was no such feed.

        Raises:
            BroadcastFailed: If announcing the deletion failed (feed and
                entries restored).
        """
        feed = self.db.get_feed(feed_id)
        if feed is None:
            return False
        entries = self.db.entries_for_feed(feed_id)

        with self.db.transaction():
            self.db.delete_entries_for_feed(feed_id)
            self.db.delete_feed(feed_id)
        logger.info("Deleted feed %s and %d entries", feed_id, len(entries))

        try:
            emit_feed_updated(self.bus, feed_id, "deleted", requires_restart=True)
        except BroadcastFailed:
            with self.db.transaction():
                self.db.insert_feed(feed)
                if entries:
                    self.db.insert_entries(entries)
            logger.warning("Feed deletion reverted due to broadcast failure: %s", feed_id)
            raise

        return True

    def get(self, feed_id: str) -> Feed:
        feed = self.db.get_feed(feed_id)
        if feed is None:
            raise FeedNotFound(f"Feed not found: {feed_id}")
        return feed

    def find(self, feed_id: str) -> Feed | None:
        return self.db.get_feed(feed_id)

    def list_feeds(self, active_only: bool = False) -> list[Feed]:
        return self.db.list_feeds(active_only=active_only)

    def search(self, keyword: str) -> list[Feed]:
        """Feeds whose title contains the keyword, case-insensitively."""
        needle = (keyword or "").lower()
        return [feed for feed in self.db.list_feeds() if needle in feed.title.lower()]

    def record_success(self, feed_id: str) -> None:
        self.db.mark_feed_synced(feed_id, utcnow())

    def record_failure(self, feed_id: str) -> int:
        """Increment the failure count, deactivating the feed at the ceiling.

        Raises:
            FeedNotFound: If the feed does not exist.
        """
        new_count = self.db.increment_feed_failures(
            feed_id, self.polling.max_failure_count, utcnow()
        )
        if new_count is None:
            raise FeedNotFound(f"Feed not found: {feed_id}")
        if new_count >= self.polling.max_failure_count:
            logger.warning(
                "Feed %s disabled due to %d consecutive failures", feed_id, new_count
            )
        return new_count
