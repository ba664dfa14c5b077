"""Tests for feed subscriptions."""

import pytest

from conftest import FEED_URL, FailingHandler, FakeFeedClient, make_feed, make_items, make_parsed_feed
from feed_sentry.entries import EntryRepository
from feed_sentry.errors import (
    AlreadySubscribed,
    BroadcastFailed,
    FeedNotFound,
    FetchFailed,
    InvalidUrl,
    PermissionDenied,
)
from feed_sentry.feeds import FeedRepository, requires_restart
from feed_sentry.fetcher import FetchGateway
from feed_sentry.messaging import MessageBus, MessageType
from feed_sentry.models import generate_feed_id
from feed_sentry.permissions import PermissionGate


class TestSubscribe:
    """Tests for FeedRepository.subscribe."""

    def test_subscribe_stores_feed(self, feeds, db):
        feed = feeds.subscribe(FEED_URL)

        assert feed.id == generate_feed_id(FEED_URL)
        assert feed.title == "Test Feed"
        assert feed.poll_interval_seconds == 600
        assert feed.active is True
        assert feed.consecutive_failure_count == 0
        assert db.get_feed(feed.id) is not None

    def test_subscribe_announces_feed(self, feeds, recorder):
        feed = feeds.subscribe(FEED_URL)

        updates = recorder.of_type(MessageType.FEED_UPDATED)
        assert len(updates) == 1
        assert updates[0].payload == {
            "feed_id": feed.id,
            "action": "created",
            "requires_restart": True,
        }

    def test_subscribe_with_options(self, feeds):
        feed = feeds.subscribe(
            f"  {FEED_URL}  ",
            title="My Feed",
            poll_interval_seconds=10,
            notify_on_keyword_match=True,
            keywords=["python", " ", "python", "rust "],
        )

        assert feed.url == FEED_URL
        assert feed.title == "My Feed"
        assert feed.poll_interval_seconds == 60
        assert feed.keywords == ["python", "rust"]

    @pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/feed", "https://"])
    def test_invalid_url(self, feeds, client, url):
        with pytest.raises(InvalidUrl):
            feeds.subscribe(url)
        assert client.calls == []

    def test_already_subscribed(self, feeds, client):
        feeds.subscribe(FEED_URL)

        with pytest.raises(AlreadySubscribed):
            feeds.subscribe(FEED_URL)
        assert len(client.calls) == 1

    def test_permission_denied_without_fetch(self, db, bus, polling):
        client = FakeFeedClient({FEED_URL: make_parsed_feed()})
        gateway = FetchGateway(PermissionGate(allow_all=False), client, sleep=lambda _: None)
        repo = FeedRepository(db, gateway, bus, polling)

        with pytest.raises(PermissionDenied):
            repo.subscribe(FEED_URL)
        assert client.calls == []
        assert db.count_feeds() == 0

    def test_granted_origin_allows_subscribe(self, db, bus, polling):
        permissions = PermissionGate(allow_all=False)
        permissions.grant(FEED_URL)
        client = FakeFeedClient({FEED_URL: make_parsed_feed()})
        repo = FeedRepository(db, FetchGateway(permissions, client), bus, polling)

        assert repo.subscribe(FEED_URL).url == FEED_URL

    def test_probe_failure(self, feeds, db):
        with pytest.raises(FetchFailed):
            feeds.subscribe("https://unknown.example.com/rss")
        assert db.count_feeds() == 0

    def test_broadcast_failure_rolls_back(self, feeds, bus, db):
        """Test that a failing receiver leaves no feed behind."""
        bus.add_handler(FailingHandler())

        with pytest.raises(BroadcastFailed):
            feeds.subscribe(FEED_URL)
        assert db.count_feeds() == 0

    def test_no_receiver_is_not_an_error(self, db, gateway, polling):
        repo = FeedRepository(db, gateway, MessageBus(), polling)

        assert repo.subscribe(FEED_URL).id == generate_feed_id(FEED_URL)


class TestUpdate:
    """Tests for FeedRepository.update."""

    @pytest.fixture
    def feed(self, feeds, recorder):
        feed = feeds.subscribe(FEED_URL)
        recorder.messages.clear()
        return feed

    def test_interval_change_requires_restart(self, feeds, feed, recorder):
        updated = feeds.update(feed.id, poll_interval_seconds=120)

        assert updated.poll_interval_seconds == 120
        assert recorder.of_type(MessageType.FEED_UPDATED)[0].payload["requires_restart"] is True

    def test_title_change_does_not_require_restart(self, feeds, feed, recorder):
        feeds.update(feed.id, title="Renamed")

        assert feeds.get(feed.id).title == "Renamed"
        assert recorder.of_type(MessageType.FEED_UPDATED)[0].payload["requires_restart"] is False

    def test_interval_is_clamped(self, feeds, feed):
        assert feeds.update(feed.id, poll_interval_seconds=5).poll_interval_seconds == 60

    def test_protected_fields_are_ignored(self, feeds, feed):
        updated = feeds.update(feed.id, url="https://evil.example.com", title="X")

        assert updated.url == FEED_URL

    def test_unknown_field(self, feeds, feed):
        with pytest.raises(ValueError):
            feeds.update(feed.id, colour="red")

    def test_unknown_feed(self, feeds):
        with pytest.raises(FeedNotFound):
            feeds.update("missing", title="X")

    def test_broadcast_failure_restores_feed(self, feeds, feed, bus):
        bus.add_handler(FailingHandler(only={MessageType.FEED_UPDATED}))

        with pytest.raises(BroadcastFailed):
            feeds.update(feed.id, title="Renamed", active=False)

        stored = feeds.get(feed.id)
        assert stored.title == "Test Feed"
        assert stored.active is True


class TestUnsubscribe:
    """Tests for FeedRepository.unsubscribe."""

    @pytest.fixture
    def feed(self, feeds, db, bus):
        feed = feeds.subscribe(FEED_URL)
        EntryRepository(db, bus).ingest(feed.id, make_items(3))
        return feed

    def test_removes_feed_and_entries(self, feeds, feed, db, recorder):
        assert feeds.unsubscribe(feed.id) is True

        assert db.get_feed(feed.id) is None
        assert db.count_entries(feed.id) == 0
        assert recorder.of_type(MessageType.FEED_UPDATED)[-1].payload["action"] == "deleted"

    def test_missing_feed(self, feeds):
        assert feeds.unsubscribe("missing") is False

    def test_broadcast_failure_restores_feed_and_entries(self, feeds, feed, bus, db):
        bus.add_handler(FailingHandler(only={MessageType.FEED_UPDATED}))

        with pytest.raises(BroadcastFailed):
            feeds.unsubscribe(feed.id)

        assert db.get_feed(feed.id) is not None
        assert db.count_entries(feed.id) == 3


class TestSyncBookkeeping:
    """Tests for success and failure recording (ceiling of 5 in these fixtures)."""

    def test_failures_deactivate_at_ceiling(self, feeds, db):
        feed = make_feed()
        db.insert_feed(feed)

        counts = [feeds.record_failure(feed.id) for _ in range(5)]

        assert counts == [1, 2, 3, 4, 5]
        assert feeds.get(feed.id).active is False

    def test_failure_on_missing_feed(self, feeds):
        with pytest.raises(FeedNotFound):
            feeds.record_failure("missing")

    def test_success_resets_failures(self, feeds, db):
        feed = make_feed(consecutive_failure_count=3)
        db.insert_feed(feed)

        feeds.record_success(feed.id)

        stored = feeds.get(feed.id)
        assert stored.consecutive_failure_count == 0
        assert stored.last_sync_at is not None

    def test_search_by_title(self, feeds, db):
        db.insert_feed(make_feed("https://a.example.com/rss", title="Python Weekly"))
        db.insert_feed(make_feed("https://b.example.com/rss", title="Rust News"))

        assert [f.title for f in feeds.search("python")] == ["Python Weekly"]


class TestRequiresRestart:

    def test_same_values(self):
        feed = make_feed()
        assert not requires_restart({"poll_interval_seconds": 600, "active": True}, feed)

    def test_active_flip(self):
        assert requires_restart({"active": False}, make_feed())
