"""Process-wide wiring of the Feed Sentry components."""

import asyncio
import logging
from typing import Any, Callable, Coroutine

from feed_sentry.alarms import AlarmService
from feed_sentry.config import Settings
from feed_sentry.database import Database
from feed_sentry.entries import EntryRepository
from feed_sentry.favorites import FavoriteService
from feed_sentry.feeds import FeedRepository
from feed_sentry.fetcher import FeedClient, FetchGateway
from feed_sentry.messaging import Message, MessageBus, MessageType
from feed_sentry.notifications import NotificationCenter, Notifier
from feed_sentry.permissions import PermissionGate
from feed_sentry.scheduler import Scheduler

logger = logging.getLogger(__name__)


class FeedSentry:
    """Owns one instance of every component and routes bus messages.

    Call ``open()`` before use; it connects the store and raises
    StoreUnavailableError if that fails.
    """

    def __init__(
        self,
        settings: Settings,
        notifier: Notifier | None = None,
        opener: Callable[[str], object] | None = None,
        client: FeedClient | None = None,
    ):
        self.settings = settings
        self.db = Database(settings.db_path)
        self.bus = MessageBus()
        self.permissions = PermissionGate(
            settings.permissions.origins, allow_all=settings.permissions.allow_all
        )
        self.gateway = FetchGateway(
            self.permissions,
            client or FeedClient(settings.http.timeout, settings.http.user_agent),
            max_retries=settings.http.max_retries,
            retry_delay=settings.http.retry_delay,
        )
        self.entries = EntryRepository(self.db, self.bus, settings.retention, settings.paging)
        self.feeds = FeedRepository(self.db, self.gateway, self.bus, settings.polling)
        self.favorites = FavoriteService(self.db, self.bus)
        if opener is None:
            self.notifications = NotificationCenter(notifier)
        else:
            self.notifications = NotificationCenter(notifier, opener)
        self.alarms = AlarmService()
        self.scheduler = Scheduler(
            self.feeds,
            self.entries,
            self.gateway,
            self.notifications,
            self.bus,
            self.alarms,
            settings.polling,
            settings.notifications,
        )
        self.bus.add_handler(self.handle_message)

    def open(self) -> None:
        self.db.connect()
        logger.info("Feed Sentry store opened at %s", self.settings.db_path)

    def close(self) -> None:
        self.alarms.clear_all()
        self.db.close()

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    def handle_message(self, message: Message) -> None:
        """Bus handler: reacts to topology changes and manual triggers."""
        payload = message.payload or {}

        if message.type == MessageType.FEED_UPDATED:
            if payload.get("requires_restart"):
                self.scheduler.request_restart()
        elif message.type == MessageType.TRIGGER_SYNC:
            loop = self.scheduler.loop
            if loop is None or loop.is_closed():
                logger.warning("Sync requested before the poller started, ignoring")
                return
            asyncio.run_coroutine_threadsafe(self.trigger_sync(payload.get("feed_id")), loop)
        elif message.type == MessageType.TEST_NOTIFICATION:
            self.test_notification(payload)

    async def trigger_sync(self, feed_id: str | None = None) -> None:
        """Sync one feed, or every active feed when no id is given."""
        if feed_id:
            await self.scheduler.sync_one(feed_id)
        else:
            await self.scheduler.sync_all()

    def test_notification(self, payload: dict | None = None) -> str | None:
        return self.notifications.send_test_notification(payload)

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run a coroutine to completion from synchronous code.

        Uses the scheduler's loop when it is running (must not be called from
        that loop's own thread); otherwise runs on a fresh loop.
        """
        loop = self.scheduler.loop
        if loop is not None and loop.is_running():
            return asyncio.run_coroutine_threadsafe(coro, loop).result()
        return asyncio.run(coro)
