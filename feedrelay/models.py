"""Data models for Telegram Feed Relay."""

from dataclasses import dataclass, field
from typing import Any

from .rsshub import infer_type_from_rss_url


@dataclass
class Subscription:
    """A chat (or forum thread) subscribed to one feed URL."""

    type: str
    channel_name: str
    rss_url: str
    chat_id: int
    thread_id: int | None = None

    @property
    def identity(self) -> tuple[str, int, int | None]:
        return (self.rss_url, self.chat_id, self.thread_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subscription":
        """Build a subscription from its stored JSON form.

        Records written before the type field existed get it inferred from
        the feed URL.
        """
        rss_url = data.get("rssUrl", "")
        return cls(
            type=data.get("type") or infer_type_from_rss_url(rss_url),
            channel_name=data.get("channelName", ""),
            rss_url=rss_url,
            chat_id=data.get("chatId"),
            thread_id=data.get("threadId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "channelName": self.channel_name,
            "rssUrl": self.rss_url,
            "chatId": self.chat_id,
            "threadId": self.thread_id,
        }


@dataclass
class ForwardConfig:
    """Per-chat forwarding settings."""

    target_chat_id: int
    only_forward: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForwardConfig":
        return cls(
            target_chat_id=data["targetChatId"],
            only_forward=bool(data.get("onlyForward", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"targetChatId": self.target_chat_id, "onlyForward": self.only_forward}


@dataclass
class FeedItem:
    """Represents a single RSS/Atom feed item, format-agnostic."""

    title: str = ""
    link: str = ""
    id: str = ""
    pub_date: str = ""


@dataclass
class ParsedFeed:
    """Result of parsing one feed document."""

    feed_title: str
    items: list[FeedItem] = field(default_factory=list)


@dataclass(frozen=True)
class DeliveryTarget:
    """A chat (and optional thread) a message is delivered to."""

    chat_id: int
    thread_id: int | None = None

    @property
    def key(self) -> str:
        # A missing thread and thread 0 address the same top-level chat
        return f"{self.chat_id}:{self.thread_id or ''}"


@dataclass
class SendBudget:
    """Mutable per-run ceiling on outbound send attempts.

    One instance is created per scheduled run and passed by reference to
    every send; it is never replenished.
    """

    remaining: int

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def can_afford(self, count: int) -> bool:
        return self.remaining >= count

    def consume(self) -> bool:
        """Take one unit. Returns False when nothing was left to take."""
        if self.exhausted:
            return False
        self.remaining -= 1
        return True


@dataclass
class ForwardSession:
    """Pending /forward_to selection, kept in the store with a TTL."""

    target_chat_id: int
    target_thread_id: int | None
    source_chat_id: int
    source_thread_id: int | None
    sub_map: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForwardSession":
        return cls(
            target_chat_id=data["targetChatId"],
            target_thread_id=data.get("targetThreadId"),
            source_chat_id=data["sourceChatId"],
            source_thread_id=data.get("sourceThreadId"),
            sub_map=list(data.get("subMap") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetChatId": self.target_chat_id,
            "targetThreadId": self.target_thread_id,
            "sourceChatId": self.source_chat_id,
            "sourceThreadId": self.source_thread_id,
            "subMap": self.sub_map,
        }
