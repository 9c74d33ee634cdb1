"""RSS Feed Processing module for Telegram Feed Relay."""

from typing import Any

import feedparser
import requests

from .logging_config import create_execution_logger
from .models import FeedItem, ParsedFeed


class FeedParseError(Exception):
    """Raised when a document is neither a usable RSS 2.0 nor Atom feed."""


def get_xml_text(value: Any) -> str:
    """Resolve a text node to its trimmed string.

    Mixed-content nodes arrive as mappings holding the text under
    ``#text`` (or ``value`` for feedparser detail objects).
    """
    if value is None:
        return ""
    if isinstance(value, dict):
        for key in ("#text", "value"):
            text = value.get(key)
            if text:
                return str(text).strip()
        return ""
    return str(value).strip()


def extract_feed_link(link_node: Any) -> str:
    """Resolve a link from its string, mapping or list representation.

    In a list the node with ``rel=alternate`` wins, otherwise the first.
    """
    if link_node is None:
        return ""

    if isinstance(link_node, list):
        if not link_node:
            return ""
        for node in link_node:
            if isinstance(node, dict):
                rel = str(node.get("@_rel") or node.get("rel") or "").lower()
                if rel == "alternate":
                    return extract_feed_link(node)
        return extract_feed_link(link_node[0])

    if isinstance(link_node, str):
        return link_node.strip()

    if isinstance(link_node, dict):
        for key in ("@_href", "href", "#text", "url"):
            if isinstance(link_node.get(key), str):
                return link_node[key].strip()

    return get_xml_text(link_node)


class FeedProcessor:
    """Handles RSS/Atom feed download and normalization."""

    def __init__(self, timeout: int = 30, execution_id: str | None = None):
        """Initialize FeedProcessor with configuration.

        Args:
            timeout: HTTP request timeout in seconds
            execution_id: Execution ID for logging context
        """
        self.timeout = timeout
        self.logger = create_execution_logger("feed_processor", execution_id)
        self.session = requests.Session()
        self.session.headers.update(
            {"User-Agent": "Telegram-Feed-Relay/1.0 (RSS to Telegram Bot)"}
        )

    def fetch_feed(self, feed_url: str) -> ParsedFeed:
        """Download and parse a single RSS/Atom feed.

        Args:
            feed_url: URL of the RSS/Atom feed

        Returns:
            Parsed feed with normalized items

        Raises:
            requests.RequestException: If feed download fails
            FeedParseError: If the document is not a recognizable feed
        """
        self.logger.debug("Downloading feed content", feed_url=feed_url)
        response = self.session.get(feed_url, timeout=self.timeout)
        response.raise_for_status()

        parsed = self.parse_feed_content(response.content)
        self.logger.info(
            f"Parsed feed: {len(parsed.items)} items found",
            feed_url=feed_url,
            feed_title=parsed.feed_title,
            items_count=len(parsed.items),
        )
        return parsed

    def parse_feed_content(self, content: bytes | str) -> ParsedFeed:
        """Turn raw feed text into a format-agnostic item list."""
        feed = feedparser.parse(content)
        version = feed.get("version") or ""
        entries = feed.get("entries") or []

        if not entries and (feed.get("bozo") or not version):
            reason = feed.get("bozo_exception") or "no RSS 2.0 or Atom content"
            raise FeedParseError(f"Unrecognized feed document: {reason}")

        feed_title = get_xml_text(feed.get("feed", {}).get("title"))
        is_atom = version.startswith("atom")

        items = [
            self._atom_item(entry) if is_atom else self._rss_item(entry)
            for entry in entries
        ]
        return ParsedFeed(feed_title=feed_title, items=items)

    def _entry_link(self, entry: Any) -> str:
        link = extract_feed_link(entry.get("links"))
        return link or extract_feed_link(entry.get("link"))

    def _atom_item(self, entry: Any) -> FeedItem:
        return FeedItem(
            title=get_xml_text(entry.get("title")),
            link=self._entry_link(entry),
            id=get_xml_text(entry.get("id")),
            pub_date=get_xml_text(entry.get("published") or entry.get("updated")),
        )

    def _rss_item(self, entry: Any) -> FeedItem:
        if entry.get("guidislink"):
            # feedparser copies a permalink <guid> into link when <link> is absent
            link = extract_feed_link(entry.get("links"))
        else:
            link = self._entry_link(entry)
        # feedparser exposes <guid> as id
        guid = get_xml_text(entry.get("id"))
        return FeedItem(
            title=get_xml_text(entry.get("title")),
            link=link,
            id=guid or link,
            pub_date=get_xml_text(entry.get("published")),
        )
