"""In-process message bus and typed Feed Sentry events."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from feed_sentry.errors import BroadcastFailed, NoReceiverError

logger = logging.getLogger(__name__)

BADGE_MAX_DISPLAY = 999


class MessageType(str, Enum):
    """Event and request types exchanged over the bus."""

    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    FEED_UPDATED = "feed_updated"
    FEED_DISABLED = "feed_disabled"
    ENTRIES_ADDED = "entries_added"
    ENTRY_READ_CHANGED = "entry_read_changed"
    FAVORITES_UPDATED = "favorites_updated"
    FAVORITE_FOLDERS_UPDATED = "favorite_folders_updated"
    BADGE_UPDATE = "badge_update"
    TRIGGER_SYNC = "trigger_sync"
    TEST_NOTIFICATION = "test_notification"


@dataclass
class Message:
    type: MessageType
    payload: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Message], Any]


class MessageBus:
    """Synchronous fan-out of messages to registered handlers.

    Every handler runs even when an earlier one raises. Failures are logged
    per handler and reported together as BroadcastFailed once all handlers
    have run. Sending with no handlers raises NoReceiverError, which callers
    treat as "nobody is listening" rather than as a failure.
    """

    def __init__(self):
        self._handlers: list[Handler] = []

    def add_handler(self, handler: Handler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def send(self, message: Message) -> None:
        """Deliver a message to every handler.

        Raises:
            NoReceiverError: If no handler is registered.
            BroadcastFailed: If at least one handler raised.
        """
        if not self._handlers:
            raise NoReceiverError(f"No receiver for {message.type.value}")

        errors: list[Exception] = []
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception as e:
                logger.error("Handler %r failed for %s: %s", handler, message.type.value, e)
                errors.append(e)

        if errors:
            raise BroadcastFailed(
                f"{len(errors)} handler(s) failed for {message.type.value}: {errors[0]}"
            )


def create_message(type: MessageType, payload: dict[str, Any] | None = None) -> Message:
    return Message(type=type, payload=payload)


def broadcast_message(
    bus: MessageBus, type: MessageType, payload: dict[str, Any] | None = None
) -> None:
    """Best-effort broadcast: missing receivers are ignored, failures logged."""
    try:
        bus.send(create_message(type, payload))
        logger.debug("Broadcasted %s %s", type.value, payload)
    except NoReceiverError:
        return
    except BroadcastFailed as e:
        logger.error("Broadcast error for %s: %s", type.value, e)


def emit_feed_updated(
    bus: MessageBus, feed_id: str, action: str, requires_restart: bool
) -> None:
    """Announce a subscription change.

    Raises:
        BroadcastFailed: If a receiver failed; callers roll back their write.
    """
    try:
        bus.send(
            create_message(
                MessageType.FEED_UPDATED,
                {"feed_id": feed_id, "action": action, "requires_restart": requires_restart},
            )
        )
    except NoReceiverError:
        return


def format_badge_text(count: int | None, max_display: int = BADGE_MAX_DISPLAY) -> str:
    """Render an unread count for a badge: blank when zero, capped with '+'."""
    if not count or count <= 0:
        return ""
    return f"{max_display}+" if count > max_display else str(count)


def notify_sync_started(bus: MessageBus, feed_id: str, feed_title: str) -> None:
    broadcast_message(
        bus, MessageType.SYNC_STARTED, {"feed_id": feed_id, "feed_title": feed_title}
    )


def notify_sync_completed(
    bus: MessageBus, feed_id: str, feed_title: str, added: int, skipped: int
) -> None:
    broadcast_message(
        bus,
        MessageType.SYNC_COMPLETED,
        {"feed_id": feed_id, "feed_title": feed_title, "added": added, "skipped": skipped},
    )


def notify_sync_failed(
    bus: MessageBus, feed_id: str, feed_title: str, error: str, failure_count: int
) -> None:
    broadcast_message(
        bus,
        MessageType.SYNC_FAILED,
        {
            "feed_id": feed_id,
            "feed_title": feed_title,
            "error": error,
            "failure_count": failure_count,
        },
    )


def notify_feed_disabled(bus: MessageBus, feed_id: str, feed_title: str, reason: str) -> None:
    broadcast_message(
        bus,
        MessageType.FEED_DISABLED,
        {"feed_id": feed_id, "feed_title": feed_title, "reason": reason},
    )


def notify_entries_added(bus: MessageBus, feed_id: str, count: int) -> None:
    broadcast_message(bus, MessageType.ENTRIES_ADDED, {"feed_id": feed_id, "count": count})


def update_badge(bus: MessageBus, count: int) -> None:
    broadcast_message(bus, MessageType.BADGE_UPDATE, {"count": count})
    logger.debug("Badge updated: %s", format_badge_text(count) or "0")
