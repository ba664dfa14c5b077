"""Exception types raised by Feed Sentry."""


class FeedSentryError(Exception):
    """Base class for all Feed Sentry errors."""


class InvalidUrl(FeedSentryError):
    """Raised when a URL is not an absolute http(s) URL."""


class AlreadySubscribed(FeedSentryError):
    """Raised when subscribing to a feed whose id already exists."""


class PermissionDenied(FeedSentryError):
    """Raised when the permission gate rejects a feed host."""


class FetchFailed(FeedSentryError):
    """Raised when a feed could not be fetched or parsed."""


class NotFound(FeedSentryError):
    """Raised when a feed or entry does not exist."""


class FeedNotFound(NotFound):
    """Raised when a feed id is unknown."""


class EntryNotFound(NotFound):
    """Raised when an entry id is unknown."""


class BroadcastError(FeedSentryError):
    """Base class for message delivery errors."""


class NoReceiverError(BroadcastError):
    """Raised when a message is sent and nobody is listening."""


class BroadcastFailed(BroadcastError):
    """Raised when one or more message handlers failed."""


class FolderNotFound(FeedSentryError):
    """Raised when a favorite folder id is unknown."""


class DefaultFolderProtected(FeedSentryError):
    """Raised when deleting the default favorite folder."""


class StoreUnavailableError(FeedSentryError):
    """Raised when the backing store cannot be opened or is not connected."""
