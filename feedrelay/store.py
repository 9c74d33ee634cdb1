"""DynamoDB-backed key-value store shared by the scheduled and webhook handlers."""

import json
import time
import uuid
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .logging_config import create_execution_logger
from .models import ForwardConfig, ForwardSession, Subscription

SUBSCRIPTIONS_KEY = "subscriptions"
FORWARD_CONFIG_PREFIX = "forward_config:"
FORWARD_SESSION_PREFIX = "fwd_session:"
FORWARD_SESSION_TTL_SECONDS = 3600


class KeyValueStore:
    """String key-value store on a DynamoDB table.

    The table uses a string partition key ``key``. Values are kept as
    strings in ``value``; items written with a TTL carry ``expires_at``
    so DynamoDB TTL can reap them.
    """

    def __init__(
        self,
        table_name: str,
        aws_region: str = "us-east-1",
        execution_id: str | None = None,
    ):
        self.table_name = table_name
        self.aws_region = aws_region
        self.logger = create_execution_logger("store", execution_id)
        self.dynamodb = boto3.resource("dynamodb", region_name=aws_region)
        self.table = self.dynamodb.Table(table_name)

    def get(self, key: str) -> str | None:
        """Return the stored value, or None when absent or expired."""
        try:
            response = self.table.get_item(Key={"key": key})
        except ClientError as e:
            self.logger.error(f"Error reading key {key}: {e}", key=key, error=str(e))
            raise

        item = response.get("Item")
        if not item:
            return None

        # DynamoDB TTL deletion lags by up to a couple of days
        expires_at = item.get("expires_at")
        if expires_at is not None and int(expires_at) <= int(time.time()):
            return None

        return item.get("value")

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        item: dict[str, Any] = {"key": key, "value": value}
        if ttl_seconds:
            item["expires_at"] = int(time.time()) + ttl_seconds
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            self.logger.error(f"Error writing key {key}: {e}", key=key, error=str(e))
            raise

    def delete(self, key: str) -> None:
        try:
            self.table.delete_item(Key={"key": key})
        except ClientError as e:
            self.logger.error(f"Error deleting key {key}: {e}", key=key, error=str(e))
            raise

    def get_json(self, key: str, default: Any = None) -> Any:
        """Read and decode a JSON value.

        Corrupt JSON is logged and treated like a missing key.
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            self.logger.warning(
                f"Ignoring invalid JSON stored under {key}: {e}", key=key
            )
            return default

    def put_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self.put(key, json.dumps(value, ensure_ascii=False), ttl_seconds=ttl_seconds)


class SubscriptionRepository:
    """Typed access to subscriptions, forwarding configs and forward sessions."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def list_subscriptions(self) -> list[Subscription]:
        raw = self.store.get_json(SUBSCRIPTIONS_KEY, default=[])
        if not isinstance(raw, list):
            return []
        return [Subscription.from_dict(entry) for entry in raw if isinstance(entry, dict)]

    def save_subscriptions(self, subscriptions: list[Subscription]) -> None:
        self.store.put_json(SUBSCRIPTIONS_KEY, [sub.to_dict() for sub in subscriptions])

    def get_forward_config(self, chat_id: int) -> ForwardConfig | None:
        raw = self.store.get_json(f"{FORWARD_CONFIG_PREFIX}{chat_id}")
        if not raw:
            return None
        if not isinstance(raw, dict) or raw.get("targetChatId") is None:
            self.store.logger.warning(
                f"Ignoring malformed forward config for chat {chat_id}",
                chat_id=chat_id,
            )
            return None
        return ForwardConfig.from_dict(raw)

    def set_forward_config(self, chat_id: int, config: ForwardConfig) -> None:
        self.store.put_json(f"{FORWARD_CONFIG_PREFIX}{chat_id}", config.to_dict())

    def delete_forward_config(self, chat_id: int) -> None:
        self.store.delete(f"{FORWARD_CONFIG_PREFIX}{chat_id}")

    def create_session(self, session: ForwardSession) -> str:
        """Store a forward session and return its generated id."""
        session_id = uuid.uuid4().hex
        self.store.put_json(
            f"{FORWARD_SESSION_PREFIX}{session_id}",
            session.to_dict(),
            ttl_seconds=FORWARD_SESSION_TTL_SECONDS,
        )
        return session_id

    def get_session(self, session_id: str) -> ForwardSession | None:
        raw = self.store.get_json(f"{FORWARD_SESSION_PREFIX}{session_id}")
        if not raw:
            return None
        return ForwardSession.from_dict(raw)

    def delete_session(self, session_id: str) -> None:
        self.store.delete(f"{FORWARD_SESSION_PREFIX}{session_id}")
