"""Tests for feed fetching and parsing."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FEED_URL, FakeFeedClient, make_parsed_feed
from feed_sentry.fetcher import (
    DEFAULT_USER_AGENT,
    FeedClient,
    FeedParseError,
    FetchGateway,
    parse_feed,
    validate_feed_url,
)
from feed_sentry.permissions import PermissionGate


class TestValidateFeedUrl:

    @pytest.mark.parametrize("url", ["https://example.com/rss", "http://example.com:8080/feed"])
    def test_valid(self, url):
        assert validate_feed_url(url)

    @pytest.mark.parametrize("url", ["", "example.com/rss", "ftp://example.com/rss", "https://"])
    def test_invalid(self, url):
        assert not validate_feed_url(url)


class TestParseFeed:
    """Tests for parse_feed."""

    def test_rss(self, sample_rss_xml):
        parsed = parse_feed(sample_rss_xml)

        assert parsed.title == "Test Feed"
        assert parsed.description == "A test RSS feed"
        assert len(parsed.items) == 2
        first = parsed.items[0]
        assert first.guid == "article-1"
        assert first.title == "First Article"
        assert first.link == "https://example.com/article-1"
        assert first.pub_date == "Fri, 13 Feb 2026 10:00:00 GMT"
        assert first.iso_date == "2026-02-13T10:00:00+00:00"

    def test_atom(self, sample_atom_xml):
        parsed = parse_feed(sample_atom_xml)

        assert parsed.title == "Test Atom Feed"
        assert parsed.description == "A test Atom feed"
        item = parsed.items[0]
        assert item.guid == "urn:uuid:entry-1"
        assert item.link == "https://example.com/entry-1"
        assert item.iso_date == "2026-02-13T10:00:00+00:00"

    def test_not_a_feed(self, sample_not_a_feed_xml):
        with pytest.raises(FeedParseError):
            parse_feed(sample_not_a_feed_xml)


class TestFeedClient:
    """Tests for FeedClient.fetch_and_parse."""

    def test_sends_headers_and_timeout(self, sample_rss_xml):
        mock_response = MagicMock()
        mock_response.content = sample_rss_xml.encode("utf-8")
        mock_response.raise_for_status = MagicMock()

        with patch("requests.get", return_value=mock_response) as mock_get:
            parsed = FeedClient(timeout=5).fetch_and_parse(FEED_URL)

        assert parsed.title == "Test Feed"
        _, kwargs = mock_get.call_args
        assert kwargs["timeout"] == 5
        assert kwargs["headers"]["User-Agent"] == DEFAULT_USER_AGENT
        assert "application/rss+xml" in kwargs["headers"]["Accept"]

    def test_http_error_propagates(self):
        mock_response = MagicMock()
        mock_response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")

        with patch("requests.get", return_value=mock_response):
            with pytest.raises(requests.HTTPError):
                FeedClient().fetch_and_parse(FEED_URL)


class TestFetchGateway:
    """Tests for FetchGateway.fetch."""

    @pytest.fixture
    def sleeps(self):
        return []

    def _gateway(self, client, sleeps, allow_all=True, **kwargs):
        return FetchGateway(
            PermissionGate(allow_all=allow_all), client, sleep=sleeps.append, **kwargs
        )

    def test_success(self, sleeps):
        client = FakeFeedClient({FEED_URL: make_parsed_feed()})

        result = self._gateway(client, sleeps).fetch(FEED_URL)

        assert result.success
        assert result.title == "Test Feed"
        assert len(result.items) == 2
        assert sleeps == []

    def test_permission_denied_does_no_io(self, sleeps):
        client = FakeFeedClient({FEED_URL: make_parsed_feed()})

        result = self._gateway(client, sleeps, allow_all=False).fetch(FEED_URL)

        assert not result.success
        assert result.permission_denied
        assert client.calls == []

    def test_retries_with_linear_backoff(self, sleeps):
        client = FakeFeedClient({FEED_URL: requests.ConnectionError("refused")})
        gateway = self._gateway(client, sleeps, max_retries=2, retry_delay=1.0)

        result = gateway.fetch(FEED_URL)

        assert not result.success
        assert "refused" in result.error
        assert len(client.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_recovers_after_transient_failure(self, sleeps):
        client = FakeFeedClient(
            {FEED_URL: [requests.Timeout("slow"), make_parsed_feed(title="Recovered")]}
        )

        result = self._gateway(client, sleeps, max_retries=3, retry_delay=0.5).fetch(FEED_URL)

        assert result.success
        assert result.title == "Recovered"
        assert sleeps == [0.5]

    def test_per_call_retry_override(self, sleeps):
        client = FakeFeedClient({FEED_URL: FeedParseError("garbage")})
        gateway = self._gateway(client, sleeps, max_retries=3)

        gateway.fetch(FEED_URL, max_retries=0)

        assert len(client.calls) == 1
        assert sleeps == []
