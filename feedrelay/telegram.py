"""Telegram Publisher for Telegram Feed Relay."""

import json
import math
import time
import urllib.error
import urllib.request
from typing import Any

from .config import TelegramConfig
from .logging_config import create_execution_logger
from .models import FeedItem, SendBudget

TELEGRAM_API_URL = "https://api.telegram.org"


def format_update_message(item: FeedItem, source_name: str) -> str:
    """Format a new-item notification for Telegram with HTML parsing.

    Feed values are interpolated as-is.
    """
    return (
        "🔴 <b>New Update!</b>\n\n"
        f"<b>Title:</b> {item.title}\n"
        f"<b>Source:</b> {source_name}\n"
        f"<b>Link:</b> {item.link}\n"
        f"<b>Date:</b> {item.pub_date}"
    )


def extract_retry_after_seconds(response_body: str) -> int:
    """Read ``parameters.retry_after`` from a 429 body, 0 when unusable."""
    try:
        parsed = json.loads(response_body)
        retry_after = float(parsed["parameters"]["retry_after"])
    except (ValueError, TypeError, KeyError):
        return 0
    if not math.isfinite(retry_after) or retry_after <= 0:
        return 0
    return math.ceil(retry_after)


class TelegramPublisher:
    """Handles publishing messages to Telegram."""

    def __init__(self, config: TelegramConfig, execution_id: str | None = None):
        """Initialize Telegram publisher with configuration."""
        self.config = config
        self.logger = create_execution_logger("telegram_publisher", execution_id)
        self.base_url = f"{TELEGRAM_API_URL}/bot{config.bot_token}"

    def send_message(
        self,
        chat_id: int,
        thread_id: int | None,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        budget: SendBudget | None = None,
    ) -> bool:
        """
        Send a message to a chat, or to a thread of a forum chat.

        Every attempt, including a rate-limit retry, consumes one unit of
        ``budget`` when one is given. A 429 on the first attempt is retried
        once after the server-provided delay.

        Args:
            chat_id: Target chat
            thread_id: Forum thread, or None for the top-level chat
            text: HTML message text
            reply_markup: Optional inline keyboard
            budget: Optional per-run send budget

        Returns:
            True if message was sent successfully, False otherwise
        """
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": self.config.parse_mode,
        }
        if thread_id:
            payload["message_thread_id"] = thread_id
        if reply_markup:
            payload["reply_markup"] = reply_markup

        retried = False
        while True:
            if budget is not None and not budget.consume():
                self.logger.warning(
                    "Send budget exhausted, message not sent",
                    chat_id=chat_id,
                    thread_id=thread_id,
                )
                return False

            status, body = self._post("sendMessage", payload)
            if status == 200:
                return True

            if status == 429 and not retried:
                retry_after = extract_retry_after_seconds(body)
                if retry_after > 0:
                    self.handle_rate_limit(chat_id, thread_id, retry_after)
                    retried = True
                    continue

            self.logger.error(
                f"Failed to send message to {chat_id} ({thread_id}): {body}",
                chat_id=chat_id,
                thread_id=thread_id,
                status_code=status,
            )
            return False

    def answer_callback_query(self, callback_query_id: str, text: str) -> bool:
        status, body = self._post(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text},
        )
        if status != 200:
            self.logger.error(
                f"Failed to answer callback query: {body}", status_code=status
            )
            return False
        return True

    def handle_rate_limit(
        self, chat_id: int, thread_id: int | None, retry_after: int
    ) -> None:
        """Wait out a Telegram rate limit before the single retry."""
        self.logger.warning(
            f"Telegram 429 for {chat_id} ({thread_id}), retrying in {retry_after}s",
            chat_id=chat_id,
            thread_id=thread_id,
            retry_after=retry_after,
        )
        time.sleep(retry_after + 1)

    def _post(self, method: str, payload: dict[str, Any]) -> tuple[int, str]:
        """
        POST a Bot API method.

        Returns:
            HTTP status (0 on network failure) and the response body
        """
        req = urllib.request.Request(
            f"{self.base_url}/{method}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "User-Agent": "Telegram-Feed-Relay/1.0",
            },
        )

        try:
            with urllib.request.urlopen(req, timeout=self.config.timeout) as response:
                return response.status, response.read().decode("utf-8", "replace")

        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", "replace")
            except Exception:
                body = str(e.reason)
            return e.code, body

        except urllib.error.URLError as e:
            self.logger.error(
                f"URL error calling {method}: {e.reason}", error_reason=str(e.reason)
            )
            return 0, str(e.reason)

        except Exception as e:
            self.logger.error(f"Unexpected error calling {method}: {e}", error=str(e))
            return 0, str(e)
