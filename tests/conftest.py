"""Shared test fixtures for Feed Sentry tests."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from feed_sentry.config import PollingConfig, RetentionConfig
from feed_sentry.database import Database
from feed_sentry.entries import EntryRepository
from feed_sentry.feeds import FeedRepository
from feed_sentry.fetcher import FeedParseError, FetchGateway
from feed_sentry.messaging import MessageBus
from feed_sentry.models import Feed, ParsedFeed, ParsedItem, generate_feed_id
from feed_sentry.notifications import NotificationCenter
from feed_sentry.permissions import PermissionGate


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <author>alice@example.com (Alice)</author>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

FEED_URL = "https://example.com/feed.xml"
BASE_TIME = datetime(2026, 2, 13, 12, 0, 0, tzinfo=timezone.utc)


class RecordingHandler:
    """Bus handler that keeps every message it receives."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    def of_type(self, type):
        return [m for m in self.messages if m.type == type]

    def types(self):
        return [m.type for m in self.messages]


class FailingHandler:
    """Bus handler that raises for every message, or only for chosen types."""

    def __init__(self, only=None):
        self.only = only
        self.calls = 0

    def __call__(self, message):
        self.calls += 1
        if self.only is None or message.type in self.only:
            raise RuntimeError(f"receiver rejected {message.type.value}")


class FakeFeedClient:
    """Stands in for FeedClient; serves canned results per URL.

    A value may be a ParsedFeed, an exception instance to raise, or a list
    of either, consumed one per call (the last one repeats).
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def fetch_and_parse(self, url):
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise FeedParseError(f"no canned response for {url}")
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingNotifier:
    """Notifier that records alerts instead of showing them."""

    interactive = True

    def __init__(self):
        self.created = []
        self.cleared = []
        self.on_clicked = None
        self.on_closed = None

    def set_listeners(self, on_clicked, on_closed):
        self.on_clicked = on_clicked
        self.on_closed = on_closed

    def click(self, notification_id):
        return self.on_clicked(notification_id)

    def close(self, notification_id):
        self.on_closed(notification_id)

    def create(self, title, message, priority=1):
        notification_id = f"n{len(self.created) + 1}"
        self.created.append((notification_id, title, message, priority))
        return notification_id

    def clear(self, notification_id):
        self.cleared.append(notification_id)


def make_items(count, prefix="item", start=BASE_TIME):
    """Parsed items with distinct guids, newest first, one minute apart."""
    return [
        ParsedItem(
            guid=f"{prefix}-{i}",
            title=f"{prefix.title()} {i}",
            link=f"https://example.com/{prefix}-{i}",
            iso_date=(start - timedelta(minutes=i)).isoformat(),
        )
        for i in range(count)
    ]


def make_parsed_feed(title="Test Feed", items=None):
    return ParsedFeed(
        title=title,
        link="https://example.com",
        description="A test feed",
        items=items if items is not None else make_items(2),
    )


def make_feed(url=FEED_URL, **overrides):
    values = {
        "id": generate_feed_id(url),
        "url": url,
        "title": "Test Feed",
        "poll_interval_seconds": 600,
    }
    values.update(overrides)
    return Feed(**values)


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected database on a temporary file."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def recorder():
    return RecordingHandler()


@pytest.fixture
def bus(recorder):
    """Message bus with a recording handler attached."""
    message_bus = MessageBus()
    message_bus.add_handler(recorder)
    return message_bus


@pytest.fixture
def client():
    return FakeFeedClient({FEED_URL: make_parsed_feed()})


@pytest.fixture
def permissions():
    return PermissionGate(allow_all=True)


@pytest.fixture
def gateway(permissions, client):
    return FetchGateway(permissions, client, max_retries=0, retry_delay=0, sleep=lambda _: None)


@pytest.fixture
def polling():
    return PollingConfig(min_interval_seconds=60, default_interval_seconds=600, max_failure_count=5)


@pytest.fixture
def entries(db, bus):
    return EntryRepository(
        db, bus, RetentionConfig(max_entries_per_feed=10, eviction_batch_size=3)
    )


@pytest.fixture
def feeds(db, gateway, bus, polling):
    return FeedRepository(db, gateway, bus, polling)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def opened_urls():
    return []


@pytest.fixture
def notification_center(notifier, opened_urls):
    return NotificationCenter(notifier, opener=opened_urls.append)


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
