"""Unit tests for configuration management and proxy URL helpers."""

import os
from unittest.mock import patch

import pytest

from feedrelay.config import Config, ConfigurationError
from feedrelay.rsshub import (
    build_rsshub_url,
    infer_type_from_rss_url,
    normalize_rss_base_url,
)


class TestConfigUnit:
    """Unit tests for Config class."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = Config()

        assert config.telegram_bot_token == ""
        assert config.dynamodb_table == "telegram-feed-relay"
        assert config.aws_region == "us-east-1"
        assert config.rss_base_url == "https://rsshub.app"

        engine_config = config.get_engine_config()
        assert engine_config.max_sends_per_run == 35
        assert engine_config.sent_history_limit == 2000
        assert engine_config.feed_timeout == 30

    def test_environment_overrides(self):
        env = {
            "DYNAMODB_TABLE": "custom",
            "CURRENT_AWS_REGION": "eu-south-1",
            "RSS_BASE_URL": "hub.example.org/",
            "MAX_SENDS_PER_RUN": "10",
            "SENT_HISTORY_LIMIT": "500",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config()

        assert config.dynamodb_table == "custom"
        assert config.aws_region == "eu-south-1"
        assert config.rss_base_url == "https://hub.example.org"
        assert config.get_engine_config().max_sends_per_run == 10
        assert config.get_engine_config().sent_history_limit == 500

    @pytest.mark.parametrize("value", ["ten", "0", "-3"])
    def test_invalid_integer_settings(self, value):
        with patch.dict(os.environ, {"MAX_SENDS_PER_RUN": value}, clear=True):
            with pytest.raises(ValueError):
                Config()

    def test_non_integer_setting_error_is_not_chained(self):
        with patch.dict(os.environ, {"FEED_TIMEOUT": "slow"}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                Config()

        assert "FEED_TIMEOUT" in str(exc_info.value)
        assert exc_info.value.__suppress_context__

    def test_telegram_config_requires_token(self):
        with patch.dict(os.environ, {}, clear=True):
            config = Config()

        with pytest.raises(ConfigurationError):
            config.get_telegram_config("  ")
        assert config.get_telegram_config(" 123:abc ").bot_token == "123:abc"


class TestRssHubHelpers:
    """Unit tests for proxy base URL handling."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("", "https://rsshub.app"),
            (None, "https://rsshub.app"),
            ("rsshub.example.org", "https://rsshub.example.org"),
            ("http://Hub.Example.org///", "http://hub.example.org"),
            ("https://hub.example.org/prefix/", "https://hub.example.org/prefix"),
            ("https://hub.example.org/youtube/user", "https://hub.example.org"),
            ("https://hub.example.org/api/Twitter/User/", "https://hub.example.org/api"),
        ],
    )
    def test_normalize_rss_base_url(self, raw, expected):
        assert normalize_rss_base_url(raw) == expected

    def test_build_rsshub_url(self):
        assert (
            build_rsshub_url("hub.example.org/", "twitter/user/jack")
            == "https://hub.example.org/twitter/user/jack"
        )

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://rsshub.app/twitter/user/jack", "x"),
            ("https://rsshub.app/x/user/jack", "x"),
            ("https://rsshub.app/youtube/user/chan", "youtube"),
            ("https://example.com/feed.xml", "rss"),
            ("", "rss"),
        ],
    )
    def test_infer_type_from_rss_url(self, url, expected):
        assert infer_type_from_rss_url(url) == expected
