"""Configuration management for Telegram Feed Relay."""

import os
from dataclasses import dataclass

from .rsshub import normalize_rss_base_url


class ConfigurationError(Exception):
    """Raised when the bot cannot run with the current settings."""


@dataclass
class TelegramConfig:
    """Configuration for Telegram Bot API."""

    bot_token: str
    parse_mode: str = "HTML"
    timeout: int = 30


@dataclass
class EngineConfig:
    """Limits applied to a single scheduled run."""

    max_sends_per_run: int = 35
    sent_history_limit: int = 2000
    feed_timeout: int = 30


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


class Config:
    """Main configuration manager."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
        self.telegram_secret_name = os.getenv(
            "TELEGRAM_SECRET_NAME", "telegram-feed-relay-token"
        )
        self.dynamodb_table = os.getenv("DYNAMODB_TABLE", "telegram-feed-relay")
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )
        self.rss_base_url = normalize_rss_base_url(os.getenv("RSS_BASE_URL", ""))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.max_sends_per_run = _int_from_env("MAX_SENDS_PER_RUN", 35)
        self.sent_history_limit = _int_from_env("SENT_HISTORY_LIMIT", 2000)
        self.feed_timeout = _int_from_env("FEED_TIMEOUT", 30)

    def get_telegram_config(self, bot_token: str) -> TelegramConfig:
        """Get Telegram configuration for a resolved bot token."""
        if not bot_token or not bot_token.strip():
            raise ConfigurationError("Telegram bot token is missing")
        return TelegramConfig(bot_token=bot_token.strip())

    def get_engine_config(self) -> EngineConfig:
        """Get per-run engine limits."""
        return EngineConfig(
            max_sends_per_run=self.max_sends_per_run,
            sent_history_limit=self.sent_history_limit,
            feed_timeout=self.feed_timeout,
        )
