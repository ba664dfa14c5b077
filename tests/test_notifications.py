"""Tests for notification decisions and alert click handling."""

import pytest

from conftest import make_feed
from feed_sentry.models import Entry
from feed_sentry.notifications import (
    PRIORITY_NORMAL,
    LogNotifier,
    NotificationCenter,
    build_entry_list_url,
    decide_notification,
    match_keywords,
)


def _entries(*titles, feed_id="f1"):
    return [
        Entry(id=f"{feed_id}_{i}", feed_id=feed_id, title=title, link=f"https://example.com/{i}")
        for i, title in enumerate(titles)
    ]


def _feed(new_item=False, keyword=False, keywords=()):
    return make_feed(
        id="f1",
        title="Tech Blog",
        notify_on_new_item=new_item,
        notify_on_keyword_match=keyword,
        keywords=list(keywords),
    )


class TestMatchKeywords:

    def test_case_insensitive_in_keyword_order(self):
        assert match_keywords("Rust and PYTHON", ["python", "go", "rust"]) == ["python", "rust"]

    def test_empty_title(self):
        assert match_keywords("", ["python"]) == []


class TestDecideNotification:
    """Tests for the notification decision table."""

    def test_all_flags_off(self):
        assert decide_notification(_feed(), _entries("a", "b")) is None

    def test_keyword_flag_without_keywords_is_off(self):
        assert decide_notification(_feed(keyword=True), _entries("python")) is None

    def test_no_new_entries(self):
        assert decide_notification(_feed(new_item=True), []) is None

    def test_new_item_single(self):
        alert = decide_notification(_feed(new_item=True), _entries("Hello"))

        assert alert.kind == "single"
        assert alert.title == "Hello"
        assert alert.message == "Tech Blog"
        assert alert.target.resolve_url() == "https://example.com/0"

    def test_new_item_summary(self):
        alert = decide_notification(_feed(new_item=True), _entries("a", "b", "c"))

        assert alert.kind == "summary"
        assert alert.total == 3
        assert alert.message == "RSS subscription updated with 3 new items. Click to view!"
        assert alert.target.resolve_url() == build_entry_list_url("f1")

    def test_keyword_only_no_match(self):
        feed = _feed(keyword=True, keywords=["python"])
        assert decide_notification(feed, _entries("rust", "go")) is None

    def test_keyword_only_single_match(self):
        feed = _feed(keyword=True, keywords=["python"])

        alert = decide_notification(feed, _entries("rust", "Python 3.14"))

        assert alert.kind == "single"
        assert alert.title == "Python 3.14"
        assert alert.target.entry_link == "https://example.com/1"

    def test_keyword_only_multiple_matches(self):
        feed = _feed(keyword=True, keywords=["python"])

        alert = decide_notification(feed, _entries("python a", "python b", "rust"))

        assert alert.kind == "combined"
        assert alert.total == 3
        assert alert.matched == 2
        assert alert.target.use_keyword_filter is True

    def test_both_flags_single_entry_without_match(self):
        """Test that one new entry alerts even when it matches no keyword."""
        feed = _feed(new_item=True, keyword=True, keywords=["python"])

        alert = decide_notification(feed, _entries("rust"))

        assert alert.kind == "single"
        assert alert.log_context == "combined-single"

    def test_both_flags_many_without_match(self):
        feed = _feed(new_item=True, keyword=True, keywords=["python"])

        alert = decide_notification(feed, _entries("rust", "go"))

        assert alert.kind == "summary"
        assert alert.target.use_keyword_filter is False

    def test_both_flags_many_with_match(self):
        feed = _feed(new_item=True, keyword=True, keywords=["python"])

        alert = decide_notification(feed, _entries("rust", "go", "python"))

        assert alert.kind == "combined"
        assert alert.total == 3
        assert alert.matched == 1
        assert alert.message == (
            "RSS subscription updated with 3 new items, 1 matched keywords. Click to view!"
        )
        assert "keywordFilter=1" in alert.target.resolve_url()

    def test_untitled_feed_falls_back_to_product_name(self):
        feed = make_feed(id="f1", title="  ", notify_on_new_item=True)

        alert = decide_notification(feed, _entries("a", "b"))

        assert alert.title == "Feed Sentry"


class TestEntryListUrl:

    def test_plain(self):
        assert build_entry_list_url("abc") == "feed-sentry://entries?view=rss&feedId=abc"

    def test_keyword_filter(self):
        assert build_entry_list_url("abc", True).endswith("&keywordFilter=1")


class TestNotificationCenter:
    """Tests for showing alerts and handling clicks."""

    def test_shows_one_alert(self, notification_center, notifier):
        feed = _feed(new_item=True)

        alert = notification_center.notify_new_entries(feed, _entries("a", "b"))

        assert alert.kind == "summary"
        assert len(notifier.created) == 1
        assert notifier.created[0][3] == PRIORITY_NORMAL
        assert notification_center.pending_targets == 1

    def test_nothing_to_show(self, notification_center, notifier):
        assert notification_center.notify_new_entries(_feed(), _entries("a")) is None
        assert notifier.created == []

    def test_click_opens_entry_link_and_clears(self, notification_center, notifier, opened_urls):
        notification_center.notify_new_entries(_feed(new_item=True), _entries("a"))
        notification_id = notifier.created[0][0]

        url = notification_center.handle_click(notification_id)

        assert url == "https://example.com/0"
        assert opened_urls == ["https://example.com/0"]
        assert notifier.cleared == [notification_id]
        assert notification_center.pending_targets == 0

    def test_click_on_summary_opens_entry_list(self, notification_center, notifier, opened_urls):
        notification_center.notify_new_entries(_feed(new_item=True), _entries("a", "b"))

        notification_center.handle_click(notifier.created[0][0])

        assert opened_urls == [build_entry_list_url("f1")]

    def test_click_clears_even_if_open_fails(self, notifier):
        def broken_opener(url):
            raise OSError("no browser")

        center = NotificationCenter(notifier, opener=broken_opener)
        center.notify_new_entries(_feed(new_item=True), _entries("a"))

        center.handle_click("n1")

        assert notifier.cleared == ["n1"]

    def test_unknown_click_is_ignored(self, notification_center, opened_urls):
        assert notification_center.handle_click("missing") is None
        assert opened_urls == []

    def test_close_drops_target(self, notification_center, notifier, opened_urls):
        notification_center.notify_new_entries(_feed(new_item=True), _entries("a"))

        notification_center.handle_closed("n1")
        notification_center.handle_click("n1")

        assert opened_urls == []

    def test_notifier_click_reaches_center(self, notification_center, notifier, opened_urls):
        notification_center.notify_new_entries(_feed(new_item=True), _entries("a"))

        notifier.click("n1")

        assert opened_urls == ["https://example.com/0"]
        assert notification_center.pending_targets == 0

    def test_notifier_dismissal_releases_target(self, notification_center, notifier):
        notification_center.notify_new_entries(_feed(new_item=True), _entries("a"))
        notification_center.notify_new_entries(_feed(new_item=True), _entries("b"))

        notifier.close("n1")
        notifier.close("n2")

        assert notification_center.pending_targets == 0

    def test_log_notifier_keeps_no_targets(self, opened_urls):
        """Test that alerts on a sink without clicks are not tracked."""
        center = NotificationCenter(LogNotifier(), opener=opened_urls.append)

        for _ in range(50):
            center.notify_new_entries(_feed(new_item=True), _entries("a"))

        assert center.pending_targets == 0

    def test_notifier_failure_is_logged_not_raised(self, caplog):
        class BrokenNotifier:
            interactive = True

            def create(self, title, message, priority=1):
                raise RuntimeError("no display")

            def clear(self, notification_id):
                pass

            def set_listeners(self, on_clicked, on_closed):
                pass

        center = NotificationCenter(BrokenNotifier(), opener=lambda url: None)

        assert center.notify_new_entries(_feed(new_item=True), _entries("a")) is not None
        assert center.pending_targets == 0
        assert "no display" in caplog.text

    @pytest.mark.parametrize(
        "payload, expected_title",
        [
            (None, "Feed Sentry test notification"),
            ({"source": "options"}, "Feed Sentry test notification - options"),
            ({"title": "Custom"}, "Custom"),
        ],
    )
    def test_test_notification_titles(self, notification_center, notifier, payload, expected_title):
        notification_center.send_test_notification(payload)

        assert notifier.created[0][1] == expected_title

    def test_test_notification_lists_keywords(self, notification_center, notifier):
        notification_center.send_test_notification({"keywords": ["python", "rust"]})

        assert notifier.created[0][2].endswith("Matched keywords: python, rust")
