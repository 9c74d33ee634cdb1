"""Deduplication module for Telegram Feed Relay."""

import hashlib
import struct
from urllib.parse import parse_qsl, urlencode, urlsplit

from .logging_config import create_execution_logger
from .models import FeedItem
from .store import KeyValueStore

SEEN_KEY_PREFIX = "sent_guids:"
SENT_HISTORY_LIMIT = 2000

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_name",
        "utm_id",
        "fbclid",
        "gclid",
        "igshid",
        "spm",
        "from",
    }
)

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


def normalize_url_for_dedup(raw_url: str | None) -> str:
    """Reduce a link to an identity string for comparison.

    Tracking parameters, the fragment and trailing slashes are dropped and
    the origin is lower-cased. The result is not meant to be fetched.
    Strings that do not parse as absolute URLs come back lower-cased.

    Args:
        raw_url: Link as found in the feed

    Returns:
        Normalized identity string, empty for empty input
    """
    value = str(raw_url or "").strip()
    if not value:
        return ""

    try:
        parsed = urlsplit(value)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        return value.lower()

    if not parsed.scheme or not hostname:
        return value.lower()

    scheme = parsed.scheme.lower()
    host = hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    origin = f"{scheme}://{host}"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        origin = f"{origin}:{port}"

    path = parsed.path.rstrip("/") or "/"

    params = [
        (key, val)
        for key, val in parse_qsl(parsed.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    query = urlencode(params)

    return f"{origin}{path}?{query}" if query else f"{origin}{path}"


def simple_hash(text: str) -> str:
    """32-bit djb2-xor hash over UTF-16 code units, as unsigned hex."""
    data = text.encode("utf-16-le")
    h = 5381
    for (code_unit,) in struct.iter_unpack("<H", data):
        h = (((h << 5) + h) & 0xFFFFFFFF) ^ code_unit
    return format(h, "x")


def build_item_fingerprint(item: FeedItem) -> str:
    """Derive a content-based fingerprint for an item.

    Title and normalized link are preferred over the feed-provided id since
    many feeds regenerate ids on republish. Returns an empty string when the
    item carries nothing to hash.
    """
    title = (item.title or "").strip().lower()
    item_id = (item.id or "").strip().lower()
    normalized_link = normalize_url_for_dedup(item.link)
    pub_date = (item.pub_date or "").strip().lower()

    if not (title or item_id or normalized_link or pub_date):
        return ""

    if title or normalized_link:
        base = f"{title}|{normalized_link}"
    else:
        base = f"{item_id}|{pub_date}"
    return simple_hash(base)


def build_dedup_key(item: FeedItem, fingerprint: str) -> str:
    """Pick the stored key for an item; empty means the item is skipped."""
    if fingerprint:
        return f"fp:{fingerprint}"
    if item.id:
        return f"id:{item.id}"
    if item.link:
        return f"link:{item.link}"
    if item.title:
        return f"fallback:{item.title}|{item.pub_date or ''}"
    return ""


class SeenSet:
    """Insertion-ordered record of keys already delivered for one feed.

    Entries written by earlier releases may be bare ids or links; lookups
    accept those encodings but never rewrite them.
    """

    def __init__(self, entries: list[str] | None = None):
        self._entries: dict[str, None] = dict.fromkeys(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def add(self, key: str) -> None:
        self._entries[key] = None

    def is_seen(self, item: FeedItem, dedup_key: str, fingerprint: str = "") -> bool:
        if dedup_key in self._entries:
            return True
        if item.id and (item.id in self._entries or f"id:{item.id}" in self._entries):
            return True
        if item.link and (
            item.link in self._entries or f"link:{item.link}" in self._entries
        ):
            return True
        return bool(fingerprint) and f"fp:{fingerprint}" in self._entries

    def to_list(self, limit: int | None = None) -> list[str]:
        """Entries oldest first, keeping only the most recent ``limit``."""
        entries = list(self._entries)
        if limit is not None and len(entries) > limit:
            entries = entries[-limit:]
        return entries


class Deduplicator:
    """Loads and persists per-feed seen-sets in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        history_limit: int = SENT_HISTORY_LIMIT,
        execution_id: str | None = None,
    ):
        """Initialize the Deduplicator.

        Args:
            store: Key-value store holding the seen-sets
            history_limit: Maximum number of keys kept per feed
            execution_id: Execution ID for logging context
        """
        self.store = store
        self.history_limit = history_limit
        self.logger = create_execution_logger("deduplicator", execution_id)

    @staticmethod
    def seen_key(feed_url: str) -> str:
        digest = hashlib.sha256(feed_url.encode("utf-8")).hexdigest()
        return f"{SEEN_KEY_PREFIX}{digest}"

    def load(self, feed_url: str) -> SeenSet:
        """Load the seen-set of a feed, empty when none was stored yet."""
        raw = self.store.get_json(self.seen_key(feed_url), default=[])
        if not isinstance(raw, list):
            self.logger.warning(
                "Stored seen-set is not a list, starting empty", feed_url=feed_url
            )
            raw = []
        return SeenSet([str(entry) for entry in raw])

    def save(self, feed_url: str, seen: SeenSet) -> None:
        entries = seen.to_list(self.history_limit)
        self.store.put_json(self.seen_key(feed_url), entries)
        self.logger.info(
            "Stored seen-set",
            feed_url=feed_url,
            history_size=len(entries),
        )
