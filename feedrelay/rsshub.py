"""Helpers for feed URLs synthesized through an RSSHub-style proxy."""

import re
from urllib.parse import urlsplit

DEFAULT_RSS_BASE_URL = "https://rsshub.app"

# Older deployments configured the base URL with a route already appended
LEGACY_ROUTE_SUFFIXES = (
    "/youtube/user",
    "/youtube/channel",
    "/youtube/live",
    "/twitter/user",
    "/x/user",
)


def normalize_rss_base_url(raw_base_url: str | None) -> str:
    """Normalize the configured proxy base URL.

    Args:
        raw_base_url: Value of the RSS_BASE_URL setting, possibly empty

    Returns:
        Origin plus optional path prefix, without trailing slash
    """
    trimmed = str(raw_base_url or "").strip()
    if not trimmed:
        return DEFAULT_RSS_BASE_URL

    if not re.match(r"^https?://", trimmed, re.IGNORECASE):
        trimmed = f"https://{trimmed}"

    try:
        parsed = urlsplit(trimmed)
        if not parsed.hostname:
            return DEFAULT_RSS_BASE_URL
        origin = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    except ValueError:
        return DEFAULT_RSS_BASE_URL

    path = parsed.path.rstrip("/")
    for suffix in LEGACY_ROUTE_SUFFIXES:
        if path.lower().endswith(suffix):
            path = path[: -len(suffix)]
            break

    return f"{origin}{path if path and path != '/' else ''}"


def build_rsshub_url(raw_base_url: str | None, route: str) -> str:
    """Join the proxy base URL and a route such as /twitter/user/<name>."""
    base_url = normalize_rss_base_url(raw_base_url)
    if not route.startswith("/"):
        route = f"/{route}"
    return f"{base_url}{route}"


def extract_pathname(url_or_path: str | None) -> str:
    value = str(url_or_path or "").strip().lower()
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return value
    if not parsed.scheme or not parsed.netloc:
        return value
    return parsed.path


def infer_type_from_rss_url(rss_url: str | None) -> str:
    """Guess the subscription type of a stored feed URL."""
    route = extract_pathname(rss_url)
    if "/twitter/" in route or "/x/" in route:
        return "x"
    if "/youtube/" in route:
        return "youtube"
    return "rss"
