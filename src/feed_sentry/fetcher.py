"""RSS/Atom fetching with permission checks and retries."""

import logging
import time
from datetime import datetime, timezone
from time import struct_time
from typing import Callable
from urllib.parse import urlparse

import feedparser
import requests

from feed_sentry.models import FetchResult, ParsedFeed, ParsedItem
from feed_sentry.permissions import PermissionGate

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "FeedSentry/0.1.0"
ACCEPT_HEADER = "application/rss+xml, application/xml, text/xml, application/atom+xml, */*"


class FeedParseError(Exception):
    """Raised when a document cannot be parsed as a feed."""


def validate_feed_url(url: str) -> bool:
    """Return True for absolute http(s) URLs with a host."""
    try:
        result = urlparse(url)
    except (TypeError, ValueError):
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


class FeedClient:
    """
    Fetches and parses a single feed document.

    Features:
    - Request timeout and custom User-Agent
    - RSS and Atom normalization via feedparser
    """

    def __init__(self, timeout: float = 15.0, user_agent: str | None = None):
        self.timeout = timeout
        self.user_agent = user_agent or DEFAULT_USER_AGENT

    def fetch_and_parse(self, url: str) -> ParsedFeed:
        """Fetch a feed over HTTP and parse it.

        Raises:
            requests.RequestException: On transport or HTTP status errors.
            FeedParseError: If the response is not a feed.
        """
        headers = {"User-Agent": self.user_agent, "Accept": ACCEPT_HEADER}
        response = requests.get(url, timeout=self.timeout, headers=headers)
        response.raise_for_status()
        return parse_feed(response.content)


def parse_feed(content: bytes | str) -> ParsedFeed:
    """Parse an RSS/Atom document into normalized items.

    Raises:
        FeedParseError: If the document is neither a feed nor has entries.
    """
    parsed = feedparser.parse(content)

    if not parsed.feed.get("title") and not parsed.entries:
        if parsed.bozo:
            raise FeedParseError(
                f"Document does not point to a valid RSS or Atom feed: {parsed.get('bozo_exception')}"
            )
        raise FeedParseError("Document does not point to a valid RSS or Atom feed")

    if parsed.bozo:
        logger.debug("Feed has formatting issues: %s", parsed.get("bozo_exception"))

    return ParsedFeed(
        title=parsed.feed.get("title"),
        link=parsed.feed.get("link"),
        description=parsed.feed.get("description") or parsed.feed.get("subtitle"),
        items=[_normalize_entry(entry) for entry in parsed.entries],
    )


def _normalize_entry(entry) -> ParsedItem:
    """Extract a normalized item from a feedparser entry."""
    link = entry.get("link")
    title = entry.get("title")
    return ParsedItem(
        guid=entry.get("id") or entry.get("guid") or link or title,
        title=title,
        link=link,
        author=entry.get("author"),
        pub_date=entry.get("published") or entry.get("updated"),
        iso_date=_iso_date(entry),
    )


def _iso_date(entry) -> str | None:
    """ISO timestamp from the parsed (UTC) publication or update date."""
    for key in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(key)
        if isinstance(time_struct, struct_time):
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc).isoformat()
            except (ValueError, OverflowError):
                continue
    return None


class FetchGateway:
    """
    Authorizes, fetches and retries a single feed's upstream content.

    Permission is checked before any network I/O and a denial is never
    retried. Otherwise up to ``max_retries + 1`` attempts are made, waiting
    ``retry_delay * attempt`` seconds between consecutive attempts.
    """

    def __init__(
        self,
        permissions: PermissionGate,
        client: FeedClient | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.permissions = permissions
        self.client = client or FeedClient()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def has_permission(self, url: str) -> bool:
        return self.permissions.contains(url)

    def fetch(
        self,
        url: str,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> FetchResult:
        """Fetch and parse a feed, retrying transient failures."""
        if not self.permissions.contains(url):
            logger.warning("Missing host permission, not fetching %s", url)
            return FetchResult(
                success=False,
                error="Site access not granted. Please allow host permission for this feed.",
                permission_denied=True,
            )

        retries = self.max_retries if max_retries is None else max_retries
        delay = self.retry_delay if retry_delay is None else retry_delay
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            try:
                parsed = self.client.fetch_and_parse(url)
                logger.info("Fetched %s: %d items", url, len(parsed.items))
                return FetchResult(success=True, title=parsed.title, items=parsed.items)
            except (requests.RequestException, FeedParseError) as e:
                last_error = e
                logger.warning(
                    "Fetch attempt %d/%d failed for %s: %s", attempt + 1, retries + 1, url, e
                )

            # No wait after the final attempt
            if attempt < retries:
                self._sleep(delay * (attempt + 1))

        logger.error("Failed to fetch %s after %d attempts", url, retries + 1)
        return FetchResult(
            success=False,
            error=str(last_error) if last_error else "Unknown error occurred",
        )
