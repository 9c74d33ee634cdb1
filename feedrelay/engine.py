"""Feed polling engine: one pass over every subscribed feed per scheduled run."""

from typing import Any

from .dedup import Deduplicator, SeenSet, build_dedup_key, build_item_fingerprint
from .logging_config import create_execution_logger
from .models import DeliveryTarget, FeedItem, ForwardConfig, SendBudget, Subscription
from .rss import FeedProcessor
from .store import SubscriptionRepository
from .telegram import TelegramPublisher, format_update_message

MAX_TELEGRAM_SENDS_PER_RUN = 35


def group_subscriptions(
    subscriptions: list[Subscription],
) -> dict[str, list[Subscription]]:
    """Group subscriptions by feed URL.

    Groups keep the order in which feed URLs first appear; within a group
    the first subscription of each (chat, thread) pair wins.
    """
    groups: dict[str, dict[str, Subscription]] = {}
    for sub in subscriptions:
        subscribers = groups.setdefault(sub.rss_url, {})
        key = DeliveryTarget(sub.chat_id, sub.thread_id).key
        subscribers.setdefault(key, sub)
    return {url: list(subs.values()) for url, subs in groups.items()}


def dedupe_targets(targets: list[DeliveryTarget]) -> list[DeliveryTarget]:
    unique: dict[str, DeliveryTarget] = {}
    for target in targets:
        unique.setdefault(target.key, target)
    return list(unique.values())


class FeedEngine:
    """Polls feeds, detects new items and fans them out under a send budget."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        deduplicator: Deduplicator,
        feed_processor: FeedProcessor,
        publisher: TelegramPublisher,
        max_sends_per_run: int = MAX_TELEGRAM_SENDS_PER_RUN,
        execution_id: str | None = None,
    ):
        self.repository = repository
        self.deduplicator = deduplicator
        self.feed_processor = feed_processor
        self.publisher = publisher
        self.max_sends_per_run = max_sends_per_run
        self.logger = create_execution_logger("engine", execution_id)

    def run(self) -> dict[str, Any]:
        """Run one scheduled pass.

        Returns:
            Metrics for the run
        """
        metrics: dict[str, Any] = {
            "feeds_checked": 0,
            "feeds_failed": 0,
            "items_found": 0,
            "items_new": 0,
            "messages_sent": 0,
            "send_failures": 0,
            "budget_exhausted": False,
            "errors": [],
        }

        subscriptions = self.repository.list_subscriptions()
        if not subscriptions:
            self.logger.info("No subscriptions found.")
            return metrics

        groups = group_subscriptions(subscriptions)
        budget = SendBudget(remaining=self.max_sends_per_run)
        forward_configs: dict[int, ForwardConfig | None] = {}

        self.logger.info(
            f"Processing {len(groups)} feeds for {len(subscriptions)} subscriptions",
            feed_count=len(groups),
            subscription_count=len(subscriptions),
            send_budget=budget.remaining,
        )

        for feed_url, subscribers in groups.items():
            try:
                exhausted = self.process_feed(
                    feed_url, subscribers, budget, forward_configs, metrics
                )
            except Exception as e:
                error_msg = f"Error checking {feed_url}: {e}"
                self.logger.exception(error_msg, feed_url=feed_url, error=str(e))
                metrics["feeds_failed"] += 1
                metrics["errors"].append(error_msg)
                continue

            if exhausted:
                metrics["budget_exhausted"] = True
                self.logger.warning(
                    "Telegram send budget exhausted for this run. "
                    "Remaining feeds will continue next run.",
                    feed_url=feed_url,
                )
                break

        return metrics

    def process_feed(
        self,
        feed_url: str,
        subscribers: list[Subscription],
        budget: SendBudget,
        forward_configs: dict[int, ForwardConfig | None],
        metrics: dict[str, Any],
    ) -> bool:
        """Deliver the new items of one feed.

        Returns:
            True when the send budget ran out while processing this feed
        """
        seen = self.deduplicator.load(feed_url)
        self.logger.log_feed_check(feed_url, len(seen))

        feed = self.feed_processor.fetch_feed(feed_url)
        metrics["feeds_checked"] += 1
        metrics["items_found"] += len(feed.items)

        source_name = subscribers[0].channel_name or feed.feed_title
        changed = False
        exhausted = False

        for item in feed.items:
            if budget.exhausted:
                exhausted = True
                break

            fingerprint = build_item_fingerprint(item)
            dedup_key = build_dedup_key(item, fingerprint)
            if not dedup_key:
                continue

            if seen.is_seen(item, dedup_key, fingerprint):
                continue

            self.logger.info(
                f"New item found for {feed.feed_title or feed_url}: {item.title}",
                feed_url=feed_url,
                item_title=item.title,
                dedup_key=dedup_key,
            )

            targets = self.resolve_targets(subscribers, forward_configs)
            if not budget.can_afford(len(targets)):
                self.logger.warning(
                    f"Skip item due to send budget. Remaining={budget.remaining}, "
                    f"required={len(targets)}, feed={feed_url}",
                    feed_url=feed_url,
                    item_title=item.title,
                )
                exhausted = True
                break

            if self.deliver(
                feed_url, item, source_name, targets, budget, seen, dedup_key, metrics
            ):
                changed = True

        if changed:
            self.deduplicator.save(feed_url, seen)

        return exhausted

    def deliver(
        self,
        feed_url: str,
        item: FeedItem,
        source_name: str,
        targets: list[DeliveryTarget],
        budget: SendBudget,
        seen: SeenSet,
        dedup_key: str,
        metrics: dict[str, Any],
    ) -> bool:
        """Send one item to every target; mark it seen if any send succeeded."""
        message = format_update_message(item, source_name)
        metrics["items_new"] += 1

        delivered = 0
        for target in targets:
            if self.publisher.send_message(
                target.chat_id, target.thread_id, message, budget=budget
            ):
                delivered += 1

        failed = len(targets) - delivered
        metrics["messages_sent"] += delivered
        metrics["send_failures"] += failed

        self.logger.log_item_delivery(item.title, feed_url, delivered, failed)

        if not delivered:
            # Left unseen so the next run retries it
            return False

        seen.add(dedup_key)
        return True

    def resolve_targets(
        self,
        subscribers: list[Subscription],
        forward_configs: dict[int, ForwardConfig | None],
    ) -> list[DeliveryTarget]:
        """Expand subscribers into deduplicated delivery targets."""
        targets = []
        for sub in subscribers:
            if sub.chat_id not in forward_configs:
                forward_configs[sub.chat_id] = self.repository.get_forward_config(
                    sub.chat_id
                )
            config = forward_configs[sub.chat_id]

            own_target = DeliveryTarget(sub.chat_id, sub.thread_id)
            if config:
                targets.append(DeliveryTarget(config.target_chat_id, None))
                if not config.only_forward:
                    targets.append(own_target)
            else:
                targets.append(own_target)

        return dedupe_targets(targets)
