"""Agent tool implementations for Feed Sentry."""

import json

from langchain_core.tools import tool

from feed_sentry.app import FeedSentry
from feed_sentry.entries import EntryQuery
from feed_sentry.errors import FeedSentryError
from feed_sentry.models import ALL, Entry, Feed, generate_feed_id


def _error(message: str, **extra) -> str:
    return json.dumps({"status": "error", "message": message, **extra})


def _feed_to_dict(feed: Feed) -> dict:
    return {
        "id": feed.id,
        "title": feed.title,
        "url": feed.url,
        "status": "active" if feed.active else "disabled",
        "poll_interval_seconds": feed.poll_interval_seconds,
        "notify_on_new_item": feed.notify_on_new_item,
        "notify_on_keyword_match": feed.notify_on_keyword_match,
        "keywords": feed.keywords,
        "failure_count": feed.consecutive_failure_count,
        "last_sync_at": feed.last_sync_at.isoformat() if feed.last_sync_at else None,
    }


def _entry_to_dict(entry: Entry, feed_titles: dict[str, str]) -> dict:
    return {
        "id": entry.id,
        "feed_title": feed_titles.get(entry.feed_id, ""),
        "title": entry.title,
        "author": entry.author,
        "link": entry.link,
        "published_at": entry.published_at.isoformat(),
        "is_read": entry.is_read,
        "is_favorite": entry.is_favorite,
        **({"matched_keywords": entry.matched_keywords} if entry.matched_keywords else {}),
    }


def resolve_feed(app: FeedSentry, identifier: str) -> tuple[Feed | None, str | None]:
    """Find a feed by id, URL or title. Returns (feed, error_json)."""
    identifier = (identifier or "").strip()
    feed = app.feeds.find(identifier) or app.feeds.find(generate_feed_id(identifier))
    if feed:
        return feed, None

    matches = app.feeds.search(identifier)
    if not matches:
        return None, _error(f"No feed found matching '{identifier}'")
    if len(matches) > 1:
        exact = [f for f in matches if f.title.lower() == identifier.lower()]
        if len(exact) != 1:
            return None, _error(
                "Multiple feeds match. Please be more specific.",
                matches=[f.title for f in matches],
            )
        matches = exact
    return matches[0], None


def build_tools(app: FeedSentry) -> list:
    """Create the tool set bound to one Feed Sentry instance."""

    @tool
    def subscribe_to_feed(
        url: str,
        title: str = "",
        poll_interval_seconds: int = 0,
        notify_on_new_item: bool = False,
        notify_on_keyword_match: bool = False,
        keywords: list[str] | None = None,
    ) -> str:
        """Subscribe to an RSS or Atom feed by URL.

        Args:
            url: The URL of the RSS or Atom feed to subscribe to.
            title: Optional display title; defaults to the feed's own title.
            poll_interval_seconds: Optional polling interval; 0 uses the default.
            notify_on_new_item: Alert on every new item.
            notify_on_keyword_match: Alert on items whose title matches a keyword.
            keywords: Keywords to match against item titles.
        """
        try:
            feed = app.feeds.subscribe(
                url,
                title=title or None,
                poll_interval_seconds=poll_interval_seconds or None,
                notify_on_new_item=notify_on_new_item,
                notify_on_keyword_match=notify_on_keyword_match,
                keywords=keywords or (),
            )
        except FeedSentryError as e:
            return _error(str(e))
        return json.dumps({"status": "subscribed", "feed": _feed_to_dict(feed)})

    @tool
    def list_feeds() -> str:
        """List all subscribed feeds with their status, interval and failure count."""
        feeds = app.feeds.list_feeds()
        return json.dumps({
            "feeds": [_feed_to_dict(feed) for feed in feeds],
            "total": len(feeds),
        })

    @tool
    def update_feed(
        feed_identifier: str,
        title: str = "",
        poll_interval_seconds: int = 0,
        active: bool | None = None,
        notify_on_new_item: bool | None = None,
        notify_on_keyword_match: bool | None = None,
        keywords: list[str] | None = None,
    ) -> str:
        """Change a feed's settings. Only the given fields are changed.

        Args:
            feed_identifier: The id, title or URL of the feed.
            title: New display title.
            poll_interval_seconds: New polling interval in seconds.
            active: Enable or disable polling for the feed.
            notify_on_new_item: Alert on every new item.
            notify_on_keyword_match: Alert on keyword matches.
            keywords: Replacement keyword list.
        """
        feed, error = resolve_feed(app, feed_identifier)
        if error:
            return error

        patch: dict = {}
        if title:
            patch["title"] = title
        if poll_interval_seconds:
            patch["poll_interval_seconds"] = poll_interval_seconds
        if active is not None:
            patch["active"] = active
        if notify_on_new_item is not None:
            patch["notify_on_new_item"] = notify_on_new_item
        if notify_on_keyword_match is not None:
            patch["notify_on_keyword_match"] = notify_on_keyword_match
        if keywords is not None:
            patch["keywords"] = keywords
        if active:
            patch["consecutive_failure_count"] = 0

        try:
            updated = app.feeds.update(feed.id, **patch)
        except FeedSentryError as e:
            return _error(str(e))
        return json.dumps({"status": "updated", "feed": _feed_to_dict(updated)})

    @tool
    def unsubscribe_from_feed(feed_identifier: str) -> str:
        """Unsubscribe from a feed by its id, title or URL.

        Args:
            feed_identifier: The id, title or URL of the feed to unsubscribe from.
        """
        feed, error = resolve_feed(app, feed_identifier)
        if error:
            return error
        try:
            app.feeds.unsubscribe(feed.id)
        except FeedSentryError as e:
            return _error(str(e))
        return json.dumps({"status": "unsubscribed", "feed_title": feed.title})

    @tool
    def get_items(
        feed_identifier: str = "",
        unread_only: bool = False,
        keyword: str = "",
        keyword_filter: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> str:
        """Get feed items, newest first, optionally filtered.

        Args:
            feed_identifier: Optional filter by feed id, title or URL.
            unread_only: If true, only return unread items.
            keyword: Optional text to search for in titles and authors.
            keyword_filter: Only items matching their feed's configured keywords.
            page: Page number starting at 1.
            page_size: Items per page (default 20).
        """
        feed_id = ALL
        if feed_identifier:
            feed, error = resolve_feed(app, feed_identifier)
            if error:
                return error
            feed_id = feed.id

        result = app.entries.query(
            feed_id,
            EntryQuery(
                page=page,
                page_size=page_size,
                keyword=keyword or None,
                is_read=False if unread_only else None,
                keyword_filter_enabled=keyword_filter,
            ),
        )
        titles = {feed.id: feed.title for feed in app.feeds.list_feeds()}
        return json.dumps({
            "items": [_entry_to_dict(entry, titles) for entry in result.data],
            "total": result.total,
            "page": result.page,
            "has_more": result.has_more,
        })

    @tool
    def mark_as_read(
        item_ids: list[str] | None = None,
        feed_identifier: str = "",
        all_feeds: bool = False,
    ) -> str:
        """Mark items as read: specific items, every item of a feed, or everything.

        Args:
            item_ids: Optional list of specific item IDs to mark as read.
            feed_identifier: Optional feed id, title or URL; marks all its items read.
            all_feeds: Mark every item in every feed as read.
        """
        if not item_ids and not feed_identifier and not all_feeds:
            return _error("Provide item_ids, feed_identifier or all_feeds")

        total_marked = 0
        if all_feeds:
            total_marked += app.entries.mark_all_read(ALL)
        elif feed_identifier:
            feed, error = resolve_feed(app, feed_identifier)
            if error:
                return error
            total_marked += app.entries.mark_all_read(feed.id)

        for item_id in item_ids or []:
            try:
                if app.entries.mark_read(item_id):
                    total_marked += 1
            except FeedSentryError as e:
                return _error(str(e), items_marked=total_marked)

        return json.dumps({"status": "success", "items_marked": total_marked})

    @tool
    def mark_as_unread(item_ids: list[str]) -> str:
        """Mark one or more items as unread.

        Args:
            item_ids: List of specific item IDs to mark as unread.
        """
        marked = app.entries.mark_unread(item_ids)
        return json.dumps({"status": "success", "items_marked": marked})

    @tool
    def unread_count(feed_identifier: str = "") -> str:
        """Count unread items for one feed, or across all active feeds.

        Args:
            feed_identifier: Optional feed id, title or URL.
        """
        if feed_identifier:
            feed, error = resolve_feed(app, feed_identifier)
            if error:
                return error
            return json.dumps({"count": app.entries.unread_count(feed.id)})
        return json.dumps({"count": app.entries.unread_count(ALL, active_only=True)})

    @tool
    def trigger_sync(feed_identifier: str = "") -> str:
        """Fetch feeds now instead of waiting for the schedule.

        Args:
            feed_identifier: Optional feed id, title or URL; omit to sync all active feeds.
        """
        feed_id = None
        if feed_identifier:
            feed, error = resolve_feed(app, feed_identifier)
            if error:
                return error
            feed_id = feed.id
        try:
            app.run(app.trigger_sync(feed_id))
        except FeedSentryError as e:
            return _error(str(e))
        return json.dumps({
            "status": "success",
            "unread": app.entries.unread_count(ALL, active_only=True),
        })

    @tool
    def grant_permission(url: str) -> str:
        """Allow Feed Sentry to fetch from the host of the given URL.

        Args:
            url: Any URL on the host to allow.
        """
        try:
            origin = app.permissions.grant(url)
        except ValueError as e:
            return _error(str(e))
        return json.dumps({"status": "granted", "origin": origin})

    @tool
    def add_favorite(item_id: str = "", link: str = "", title: str = "", folder_id: str = "") -> str:
        """Bookmark a feed item or any link.

        Args:
            item_id: Optional feed item id to bookmark.
            link: Link to bookmark; taken from the item when omitted.
            title: Title for the bookmark; taken from the item when omitted.
            folder_id: Optional folder; the default folder is used otherwise.
        """
        if item_id:
            entry = app.db.get_entry(item_id)
            if entry is None:
                return _error(f"Entry not found: {item_id}")
            link = link or entry.link or ""
            title = title or entry.title
        try:
            favorite = app.favorites.add_favorite(
                title or link, link, entry_id=item_id or None, folder_id=folder_id or None
            )
        except ValueError as e:
            return _error(str(e))
        return json.dumps({"status": "success", "favorite_id": favorite.id, "folder_id": favorite.folder_id})

    @tool
    def list_favorites(folder_id: str = "", keyword: str = "") -> str:
        """List bookmarks in a folder (the default folder when omitted).

        Args:
            folder_id: Optional folder id.
            keyword: Optional text to search for in titles and links.
        """
        folder_id = folder_id or app.favorites.default_folder().id
        items, total = app.favorites.list_favorites(folder_id, keyword=keyword or None)
        return json.dumps({
            "folders": [
                {"id": f.id, "name": f.name, "is_default": f.is_default, "total": f.total}
                for f in app.favorites.list_folders()
            ],
            "favorites": [
                {"id": f.id, "title": f.title, "link": f.link, "item_id": f.entry_id}
                for f in items
            ],
            "total": total,
        })

    @tool
    def test_notification(title: str = "", message: str = "") -> str:
        """Show a test notification to check that alerts are delivered.

        Args:
            title: Optional notification title.
            message: Optional notification message.
        """
        notification_id = app.test_notification(
            {"title": title or None, "message": message or None, "source": "assistant"}
        )
        return json.dumps({"status": "success" if notification_id else "error"})

    return [
        subscribe_to_feed,
        list_feeds,
        update_feed,
        unsubscribe_from_feed,
        get_items,
        mark_as_read,
        mark_as_unread,
        unread_count,
        trigger_sync,
        grant_permission,
        add_favorite,
        list_favorites,
        test_notification,
    ]
