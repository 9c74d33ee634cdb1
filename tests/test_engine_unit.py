"""Unit tests for the feed polling engine."""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from feedrelay.config import TelegramConfig
from feedrelay.dedup import Deduplicator
from feedrelay.engine import FeedEngine, group_subscriptions
from feedrelay.models import FeedItem, ForwardConfig, ParsedFeed, Subscription
from feedrelay.telegram import TelegramPublisher

FEED_A = "https://a.example.com/feed"
FEED_B = "https://b.example.com/feed"


def make_items(count: int, prefix: str = "post") -> list[FeedItem]:
    return [
        FeedItem(
            title=f"{prefix} {i}",
            link=f"https://example.com/{prefix}/{i}",
            id=f"{prefix}-{i}",
            pub_date="Mon, 01 Jan 2024",
        )
        for i in range(count)
    ]


def sub(chat_id, thread_id=None, rss_url=FEED_A, name="Example"):
    return Subscription("rss", name, rss_url, chat_id, thread_id)


class TestGroupSubscriptions:
    """Unit tests for subscription grouping."""

    def test_groups_in_first_appearance_order_and_dedupes_targets(self):
        subs = [
            sub(1, rss_url=FEED_B, name="first"),
            sub(2, rss_url=FEED_A),
            sub(1, rss_url=FEED_B, name="duplicate"),
            sub(1, thread_id=5, rss_url=FEED_B),
        ]

        groups = group_subscriptions(subs)

        assert list(groups) == [FEED_B, FEED_A]
        assert [(s.chat_id, s.thread_id, s.channel_name) for s in groups[FEED_B]] == [
            (1, None, "first"),
            (1, 5, "Example"),
        ]


class TestFeedEngineUnit:
    """Scenario tests for FeedEngine.run against a moto DynamoDB table."""

    @pytest.fixture(autouse=True)
    def setup_engine(self, store, repository):
        self.store = store
        self.repository = repository
        self.feeds: dict[str, ParsedFeed | Exception] = {}

        def fetch(url):
            result = self.feeds[url]
            if isinstance(result, Exception):
                raise result
            return result

        self.feed_processor = Mock()
        self.feed_processor.fetch_feed.side_effect = fetch

        self.publisher = TelegramPublisher(TelegramConfig(bot_token="t"))
        self.post_patch = patch.object(
            TelegramPublisher, "_post", return_value=(200, '{"ok": true}')
        )
        self.mock_post = self.post_patch.start()
        yield
        self.post_patch.stop()

    def engine(self, max_sends: int = 35) -> FeedEngine:
        return FeedEngine(
            repository=self.repository,
            deduplicator=Deduplicator(self.store),
            feed_processor=self.feed_processor,
            publisher=self.publisher,
            max_sends_per_run=max_sends,
        )

    def sent_targets(self) -> list[tuple]:
        targets = []
        for call in self.mock_post.call_args_list:
            method, payload = call[0]
            assert method == "sendMessage"
            targets.append((payload["chat_id"], payload.get("message_thread_id")))
        return targets

    def test_no_subscriptions_is_a_noop(self):
        metrics = self.engine().run()
        assert metrics["feeds_checked"] == 0
        self.feed_processor.fetch_feed.assert_not_called()

    def test_duplicate_subscribers_get_one_send(self):
        self.repository.save_subscriptions([sub(1), sub(1)])
        self.feeds[FEED_A] = ParsedFeed("Feed A", make_items(1))

        metrics = self.engine().run()

        assert self.sent_targets() == [(1, None)]
        assert metrics["messages_sent"] == 1

    def test_only_forward_sends_to_target_only(self):
        self.repository.save_subscriptions([sub(1)])
        self.repository.set_forward_config(1, ForwardConfig(2, only_forward=True))
        self.feeds[FEED_A] = ParsedFeed("Feed A", make_items(1))

        self.engine().run()

        assert self.sent_targets() == [(2, None)]

    def test_forward_and_own_chat(self):
        self.repository.save_subscriptions([sub(1, thread_id=9)])
        self.repository.set_forward_config(1, ForwardConfig(2, only_forward=False))
        self.feeds[FEED_A] = ParsedFeed("Feed A", make_items(1))

        self.engine().run()

        assert self.sent_targets() == [(2, None), (1, 9)]

    def test_forward_config_read_once_per_chat(self):
        self.repository.save_subscriptions(
            [sub(1, rss_url=FEED_A), sub(1, rss_url=FEED_B)]
        )
        self.feeds[FEED_A] = ParsedFeed("A", make_items(2, "a"))
        self.feeds[FEED_B] = ParsedFeed("B", make_items(2, "b"))

        with patch.object(
            self.repository, "get_forward_config", return_value=None
        ) as mock_get:
            self.engine().run()

        mock_get.assert_called_once_with(1)

    def test_second_run_sends_nothing(self):
        self.repository.save_subscriptions([sub(1), sub(3, rss_url=FEED_B)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(3, "a"))
        self.feeds[FEED_B] = ParsedFeed("B", make_items(2, "b"))

        first = self.engine().run()
        self.mock_post.reset_mock()
        second = self.engine().run()

        assert first["messages_sent"] == 5
        assert second["messages_sent"] == 0
        assert self.mock_post.call_count == 0

    def test_message_uses_channel_name_then_feed_title(self):
        self.repository.save_subscriptions(
            [sub(1, name="My Channel"), sub(2, rss_url=FEED_B, name="")]
        )
        self.feeds[FEED_A] = ParsedFeed("Feed A", make_items(1))
        self.feeds[FEED_B] = ParsedFeed("Feed B Title", make_items(1, "b"))

        self.engine().run()

        texts = [call[0][1]["text"] for call in self.mock_post.call_args_list]
        assert "<b>Source:</b> My Channel" in texts[0]
        assert "<b>Source:</b> Feed B Title" in texts[1]

    def test_items_without_identity_are_skipped(self):
        self.repository.save_subscriptions([sub(1)])
        self.feeds[FEED_A] = ParsedFeed("A", [FeedItem(), *make_items(1)])

        metrics = self.engine().run()

        assert metrics["items_new"] == 1
        assert self.mock_post.call_count == 1

    def test_seen_set_persisted_with_fingerprint_keys(self):
        self.repository.save_subscriptions([sub(1)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(2))

        self.engine().run()

        stored = json.loads(self.store.get(Deduplicator.seen_key(FEED_A)))
        assert len(stored) == 2
        assert all(key.startswith("fp:") for key in stored)

    def test_legacy_keys_suppress_redelivery(self):
        items = make_items(2)
        self.repository.save_subscriptions([sub(1)])
        self.store.put_json(
            Deduplicator.seen_key(FEED_A), [items[0].id, items[1].link]
        )
        self.feeds[FEED_A] = ParsedFeed("A", items)

        metrics = self.engine().run()

        assert metrics["messages_sent"] == 0
        # Nothing new, so the legacy record is left untouched
        assert json.loads(self.store.get(Deduplicator.seen_key(FEED_A))) == [
            items[0].id,
            items[1].link,
        ]

    def test_all_targets_failed_leaves_item_unseen(self):
        self.repository.save_subscriptions([sub(1)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(1))
        self.mock_post.return_value = (403, '{"description": "bot was blocked"}')

        metrics = self.engine().run()

        assert metrics["send_failures"] == 1
        assert self.store.get(Deduplicator.seen_key(FEED_A)) is None

        self.mock_post.return_value = (200, '{"ok": true}')
        retry = self.engine().run()
        assert retry["messages_sent"] == 1

    def test_partial_delivery_marks_item_seen(self):
        self.repository.save_subscriptions([sub(1), sub(2)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(1))
        self.mock_post.side_effect = [(200, "{}"), (500, "oops")]

        self.engine().run()

        stored = json.loads(self.store.get(Deduplicator.seen_key(FEED_A)))
        assert len(stored) == 1

    def test_feed_error_does_not_stop_other_feeds(self):
        self.repository.save_subscriptions([sub(1), sub(2, rss_url=FEED_B)])
        self.feeds[FEED_A] = requests.ConnectionError("boom")
        self.feeds[FEED_B] = ParsedFeed("B", make_items(1, "b"))

        metrics = self.engine().run()

        assert metrics["feeds_failed"] == 1
        assert metrics["feeds_checked"] == 1
        assert self.sent_targets() == [(2, None)]
        assert "Error checking" in metrics["errors"][0]

    def test_budget_caps_total_sends_and_defers_remaining_feeds(self):
        self.repository.save_subscriptions([sub(1), sub(2, rss_url=FEED_B)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(40, "a"))
        self.feeds[FEED_B] = ParsedFeed("B", make_items(5, "b"))

        metrics = self.engine().run()

        assert self.mock_post.call_count == 35
        assert metrics["budget_exhausted"] is True
        # Feed B is deferred to the next run
        assert self.feed_processor.fetch_feed.call_count == 1
        stored = json.loads(self.store.get(Deduplicator.seen_key(FEED_A)))
        assert len(stored) == 35

    def test_item_not_partially_sent_when_budget_too_small(self):
        self.repository.save_subscriptions([sub(1), sub(2), sub(3)])
        self.feeds[FEED_A] = ParsedFeed("A", make_items(3))

        metrics = self.engine(max_sends=5).run()

        # One item takes three sends; the second would need three more
        assert self.mock_post.call_count == 3
        assert metrics["budget_exhausted"] is True

    def test_seen_set_history_is_capped(self):
        self.repository.save_subscriptions([sub(1)])
        existing = [f"fp:old{i}" for i in range(2000)]
        self.store.put_json(Deduplicator.seen_key(FEED_A), existing)
        self.feeds[FEED_A] = ParsedFeed("A", make_items(3))

        self.engine().run()

        stored = json.loads(self.store.get(Deduplicator.seen_key(FEED_A)))
        assert len(stored) == 2000
        assert stored[0] == "fp:old3"
        assert stored[-1].startswith("fp:")
