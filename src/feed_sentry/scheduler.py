"""Background poll scheduler for Feed Sentry."""

import asyncio
import logging
from concurrent.futures import Future
from datetime import datetime
from typing import Callable

from feed_sentry.alarms import Alarm, AlarmService
from feed_sentry.config import NotificationConfig, PollingConfig
from feed_sentry.entries import EntryRepository
from feed_sentry.errors import FetchFailed
from feed_sentry.feeds import FeedRepository
from feed_sentry.fetcher import FetchGateway
from feed_sentry.messaging import (
    MessageBus,
    notify_entries_added,
    notify_feed_disabled,
    notify_sync_completed,
    notify_sync_failed,
    notify_sync_started,
    update_badge,
)
from feed_sentry.models import ALL, Feed, utcnow
from feed_sentry.notifications import PRIORITY_HIGH, PRIORITY_NORMAL, NotificationCenter

logger = logging.getLogger(__name__)

PERMISSION_MESSAGE = (
    "Site access not granted. Please allow host permission in Feed Management."
)


class Scheduler:
    """Owns the polling cadence and runs fetch/ingest/notify for due feeds.

    One instance per process. Feeds are processed strictly one after another.
    A wake-up that arrives while a cycle is running is dropped; the next
    wake-up picks up anything still due.
    """

    def __init__(
        self,
        feeds: FeedRepository,
        entries: EntryRepository,
        gateway: FetchGateway,
        notifications: NotificationCenter,
        bus: MessageBus,
        alarms: AlarmService,
        polling: PollingConfig | None = None,
        notification_config: NotificationConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.feeds = feeds
        self.entries = entries
        self.gateway = gateway
        self.notifications = notifications
        self.bus = bus
        self.alarms = alarms
        self.polling = polling or PollingConfig()
        self.notification_config = notification_config or NotificationConfig()
        self.clock = clock
        self.running = False
        self.interval: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cycle_tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    def compute_interval(self) -> int:
        """Smallest poll interval among active feeds, floored at the minimum."""
        try:
            feeds = self.feeds.list_feeds(active_only=True)
        except Exception as e:
            logger.error("Calculate min interval error: %s", e)
            return self.polling.default_interval_seconds

        if not feeds:
            return self.polling.default_interval_seconds

        min_interval = min(
            feed.poll_interval_seconds or self.polling.default_interval_seconds
            for feed in feeds
        )
        return max(min_interval, self.polling.min_interval_seconds)

    def is_due(self, feed: Feed, now: datetime | None = None) -> bool:
        """Whether a feed's interval has elapsed since its last sync."""
        if not feed.active:
            return False
        if feed.last_sync_at is None:
            return True
        now = now or self.clock()
        elapsed = (now - feed.last_sync_at).total_seconds()
        interval = feed.poll_interval_seconds or self.polling.default_interval_seconds
        return elapsed >= interval

    async def start(self) -> None:
        """Register the recurring alarm, then poll once immediately."""
        logger.info("Poller starting")
        self._loop = asyncio.get_running_loop()

        self.interval = self.compute_interval()
        self.alarms.create(self.polling.alarm_name, self.interval)
        self.alarms.add_listener(self._handle_alarm)
        logger.info("Alarm setup: interval %ds", self.interval)

        await self.run_cycle()
        self._update_badge()
        logger.info("Poller started")

    async def stop(self) -> None:
        """Cancel future wake-ups. A cycle already in progress runs to completion."""
        logger.info("Poller stopping")
        self.alarms.clear(self.polling.alarm_name)
        self.alarms.remove_listener(self._handle_alarm)
        logger.info("Poller stopped")

    async def restart(self) -> None:
        logger.info("Poller restarting")
        await self.stop()
        await self.start()

    def request_restart(self) -> Future | None:
        """Schedule a restart on the scheduler's loop; safe from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.info("Poller not started, restart skipped")
            return None
        future = asyncio.run_coroutine_threadsafe(self.restart(), loop)
        future.add_done_callback(_log_failure("Restart"))
        return future

    def _handle_alarm(self, alarm: Alarm) -> None:
        if alarm.name != self.polling.alarm_name:
            return
        logger.debug("Alarm triggered: %s", alarm.name)
        task = asyncio.ensure_future(self.run_cycle())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)
        task.add_done_callback(_log_failure("Poll"))

    async def run_cycle(self, force: bool = False) -> bool:
        """Poll every due active feed (every active feed when forced).

        Returns False if the cycle was skipped because one is already running.
        """
        if self.running:
            logger.info("Already polling, skipping")
            return False

        self.running = True
        try:
            feeds = self.feeds.list_feeds(active_only=True)
            if not feeds:
                logger.info("No active feeds to poll")
                return True

            now = self.clock()
            due = feeds if force else [feed for feed in feeds if self.is_due(feed, now)]
            if not due:
                logger.info("No feeds due for polling")
                return True

            logger.info("Polling %d/%d feeds", len(due), len(feeds))
            for feed in due:
                try:
                    await self.poll_feed(feed)
                except Exception as e:
                    logger.error("Feed '%s' poll error: %s", feed.title, e)

            self._update_badge()
            logger.info("Poll cycle completed")
            return True
        finally:
            self.running = False

    async def poll_feed(self, feed: Feed) -> None:
        """Fetch one feed and record the outcome."""
        logger.info("Polling feed '%s' (%s)", feed.title, feed.url)

        if not self.gateway.has_permission(feed.url):
            logger.warning("Missing host permission, skipping %s", feed.url)
            notify_sync_failed(
                self.bus, feed.id, feed.title, PERMISSION_MESSAGE, feed.consecutive_failure_count
            )
            return

        notify_sync_started(self.bus, feed.id, feed.title)

        try:
            result = await asyncio.to_thread(
                self.gateway.fetch,
                feed.url,
                self.polling.fetch_max_retries,
                self.polling.fetch_retry_delay,
            )
            if not result.success:
                raise FetchFailed(result.error or "Failed to fetch feed")

            ingest = self.entries.ingest(feed.id, result.items)
            self.notifications.notify_new_entries(feed, ingest.new_entries)
            if ingest.added > 0:
                notify_entries_added(self.bus, feed.id, ingest.added)

            self.feeds.record_success(feed.id)
            notify_sync_completed(self.bus, feed.id, feed.title, ingest.added, ingest.skipped)
            logger.info(
                "Feed '%s' synced: +%d, skip %d", feed.title, ingest.added, ingest.skipped
            )
        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.warning("Feed '%s' sync failed: %s", feed.title, error_message)
            self._handle_failure(feed, error_message)

    def _handle_failure(self, feed: Feed, error_message: str) -> None:
        new_count = self.feeds.record_failure(feed.id)
        notify_sync_failed(self.bus, feed.id, feed.title, error_message, new_count)

        every = self.notification_config.failure_warning_every
        if every > 0 and new_count >= every and new_count % every == 0:
            self.notifications.show_system(
                "Feed Sync Warning",
                f'"{feed.title}" has failed {new_count} times. Check your feed URL.',
                PRIORITY_NORMAL,
            )

        ceiling = self.polling.max_failure_count
        if feed.active and new_count >= ceiling:
            reason = f"Failed {ceiling} consecutive times"
            notify_feed_disabled(self.bus, feed.id, feed.title, reason)
            self.notifications.show_system(
                "Feed Disabled", f'"{feed.title}" has been disabled: {reason}', PRIORITY_HIGH
            )

    async def sync_one(self, feed_id: str) -> None:
        """Poll one feed now, regardless of its schedule.

        Raises:
            FeedNotFound: If the feed id is unknown.
        """
        logger.info("Manual sync requested for %s", feed_id)
        feed = self.feeds.get(feed_id)
        await self.poll_feed(feed)
        self._update_badge()

    async def sync_all(self) -> bool:
        """Poll every active feed now."""
        logger.info("Manual sync all requested")
        return await self.run_cycle(force=True)

    def _update_badge(self) -> None:
        try:
            update_badge(self.bus, self.entries.unread_count(ALL, active_only=True))
        except Exception as e:
            logger.error("Update badge error: %s", e)


def _log_failure(what: str):
    def callback(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("%s failed: %s", what, error)
    return callback
