"""Notification decisions for newly ingested entries, and alert bookkeeping.

``decide_notification`` turns a feed's notification flags and the entries
ingested in one cycle into zero or one ``Alert``:

==================  =====================  ==========================================
notify_on_new_item  notify_on_keyword_match behavior
==================  =====================  ==========================================
False               False                  nothing
False               True                   matched: 0 none, 1 single, >1 combined
True                False                  new: 0 none, 1 single, >1 summary
True                True                   new: 0 none, 1 single; >1 summary when no
                                           match, combined otherwise
==================  =====================  ==========================================

Keyword matching only counts as enabled when the feed also has keywords.
"""

import logging
import uuid
import webbrowser
from dataclasses import dataclass
from typing import Callable, Protocol
from urllib.parse import urlencode

from feed_sentry.models import Entry, Feed

logger = logging.getLogger(__name__)

PRIORITY_LOW = 0
PRIORITY_NORMAL = 1
PRIORITY_HIGH = 2

ENTRY_LIST_URL = "feed-sentry://entries"


def match_keywords(title: str, keywords: list[str]) -> list[str]:
    """Keywords contained in the title, case-insensitively, in keyword order."""
    if not title:
        return []
    lower_title = title.lower()
    return [keyword for keyword in keywords if keyword and keyword.lower() in lower_title]


def build_entry_list_url(feed_id: str, use_keyword_filter: bool = False) -> str:
    params = {"view": "rss", "feedId": feed_id}
    if use_keyword_filter:
        params["keywordFilter"] = "1"
    return f"{ENTRY_LIST_URL}?{urlencode(params)}"


def build_general_summary(count: int) -> str:
    return f"RSS subscription updated with {count} new items. Click to view!"


def build_combined_summary(total: int, matched: int) -> str:
    return (
        f"RSS subscription updated with {total} new items, "
        f"{matched} matched keywords. Click to view!"
    )


@dataclass(frozen=True)
class NotificationTarget:
    """Where clicking an alert leads."""

    mode: str  # "single" or "multiple"
    feed_id: str
    entry_link: str | None = None
    use_keyword_filter: bool = False

    def resolve_url(self) -> str:
        if self.mode == "single" and self.entry_link:
            return self.entry_link
        return build_entry_list_url(self.feed_id, self.use_keyword_filter)


@dataclass(frozen=True)
class Alert:
    kind: str  # "single", "summary" or "combined"
    title: str
    message: str
    target: NotificationTarget
    total: int
    matched: int
    log_context: str


def _single_alert(feed: Feed, entry: Entry, total: int, matched: int, context: str) -> Alert:
    feed_title = feed.display_title
    return Alert(
        kind="single",
        title=(entry.title or "").strip() or feed_title,
        message=feed_title,
        target=NotificationTarget(mode="single", feed_id=feed.id, entry_link=entry.link or None),
        total=total,
        matched=matched,
        log_context=context,
    )


def _summary_alert(feed: Feed, total: int, context: str) -> Alert:
    return Alert(
        kind="summary",
        title=feed.display_title,
        message=build_general_summary(total),
        target=NotificationTarget(mode="multiple", feed_id=feed.id),
        total=total,
        matched=0,
        log_context=context,
    )


def _combined_alert(feed: Feed, total: int, matched: int, context: str) -> Alert:
    return Alert(
        kind="combined",
        title=feed.display_title,
        message=build_combined_summary(total, matched),
        target=NotificationTarget(mode="multiple", feed_id=feed.id, use_keyword_filter=True),
        total=total,
        matched=matched,
        log_context=context,
    )


def decide_notification(feed: Feed, entries: list[Entry]) -> Alert | None:
    """Decide whether and how to alert for one cycle's new entries."""
    notify_enabled = feed.notify_on_new_item
    keyword_enabled = feed.keyword_notify_enabled

    if not notify_enabled and not keyword_enabled:
        return None

    total = len(entries)
    matched_entries = []
    if keyword_enabled:
        for entry in entries:
            if not entry.matched_keywords:
                entry.matched_keywords = match_keywords(entry.title, feed.keywords)
            if entry.matched_keywords:
                matched_entries.append(entry)
    matched = len(matched_entries)

    if not notify_enabled:
        if matched == 0:
            return None
        if matched == 1:
            return _single_alert(feed, matched_entries[0], total, matched, "keyword-single")
        return _combined_alert(feed, total, matched, "keyword-multiple")

    if total == 0:
        return None
    if total == 1:
        context = "combined-single" if keyword_enabled else "feed-single"
        return _single_alert(feed, entries[0], total, matched, context)
    if not keyword_enabled:
        return _summary_alert(feed, total, "feed-multiple")
    if matched == 0:
        return _summary_alert(feed, total, "combined-multiple-no-keyword")
    return _combined_alert(feed, total, matched, "combined-multiple-keyword")


NotificationCallback = Callable[[str], object]


class Notifier(Protocol):
    """Desktop notification sink.

    Interactive sinks report clicks and dismissals through the callbacks given
    to ``set_listeners``. Alerts on a non-interactive sink get no click target.
    """

    interactive: bool

    def create(self, title: str, message: str, priority: int = PRIORITY_NORMAL) -> str: ...

    def clear(self, notification_id: str) -> None: ...

    def set_listeners(
        self, on_clicked: NotificationCallback, on_closed: NotificationCallback
    ) -> None: ...


class LogNotifier:
    """Notifier that writes alerts to the log."""

    interactive = False

    def create(self, title: str, message: str, priority: int = PRIORITY_NORMAL) -> str:
        notification_id = uuid.uuid4().hex
        logger.info("[notification %s] %s: %s", notification_id[:8], title, message)
        return notification_id

    def clear(self, notification_id: str) -> None:
        logger.debug("Cleared notification %s", notification_id)

    def set_listeners(
        self, on_clicked: NotificationCallback, on_closed: NotificationCallback
    ) -> None:
        # Log lines can't be clicked or dismissed
        pass


class NotificationCenter:
    """Shows alerts and tracks their click targets until clicked or dismissed."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        opener: Callable[[str], object] = webbrowser.open,
    ):
        self.notifier = notifier or LogNotifier()
        self.opener = opener
        self._targets: dict[str, NotificationTarget] = {}
        self.notifier.set_listeners(self.handle_click, self.handle_closed)

    @property
    def pending_targets(self) -> int:
        return len(self._targets)

    def notify_new_entries(self, feed: Feed, entries: list[Entry]) -> Alert | None:
        """Decide on and show at most one alert for a feed's new entries."""
        alert = decide_notification(feed, entries)
        if alert is not None:
            self.show(alert)
        return alert

    def show(self, alert: Alert) -> str | None:
        try:
            notification_id = self.notifier.create(alert.title, alert.message, PRIORITY_NORMAL)
        except Exception as e:
            logger.error("Notification error (%s): %s", alert.log_context, e)
            return None
        if self.notifier.interactive:
            self._targets[notification_id] = alert.target
        logger.info("Notification shown (%s): %s", alert.log_context, alert.message)
        return notification_id

    def show_system(self, title: str, message: str, priority: int = PRIORITY_NORMAL) -> str | None:
        """Show an alert without a click target (warnings, diagnostics)."""
        try:
            return self.notifier.create(title, message, priority)
        except Exception as e:
            logger.error("Show notification error: %s", e)
            return None

    def handle_click(self, notification_id: str) -> str | None:
        """Open the alert's target and clear it. Returns the opened URL."""
        target = self._targets.pop(notification_id, None)
        if target is None:
            return None

        url = target.resolve_url()
        try:
            self.opener(url)
        except Exception as e:
            logger.error("Notification click handling error for %s: %s", url, e)
        finally:
            try:
                self.notifier.clear(notification_id)
            except Exception as e:
                logger.warning("Failed to clear notification %s: %s", notification_id, e)
        return url

    def handle_closed(self, notification_id: str) -> None:
        self._targets.pop(notification_id, None)

    def send_test_notification(self, payload: dict | None = None) -> str | None:
        """Diagnostic alert; payload may carry title, message, keywords, source."""
        payload = payload or {}
        message = payload.get("message")
        if not message:
            message = "Notifications are working."
            if payload.get("keywords"):
                message += f" Matched keywords: {', '.join(payload['keywords'])}"
        suffix = f" - {payload['source']}" if payload.get("source") else ""
        title = payload.get("title") or f"Feed Sentry test notification{suffix}"
        return self.show_system(title, message, PRIORITY_NORMAL)
