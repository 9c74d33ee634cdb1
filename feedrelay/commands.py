"""Webhook command handling: subscription and forwarding management."""

import re
from typing import Any
from urllib.parse import urlsplit

from .logging_config import create_execution_logger
from .models import ForwardConfig, ForwardSession, Subscription
from .rsshub import build_rsshub_url
from .store import SubscriptionRepository
from .telegram import TelegramPublisher

SUBSCRIPTION_TYPES = ("rss", "x", "youtube")

WELCOME_MESSAGE = (
    "👋 <b>RSS &amp; Social Monitor Bot</b>\n\n"
    "I can monitor RSS feeds, X (Twitter), and YouTube channels for you.\n\n"
    "<b>Commands:</b>\n"
    "/add rss &lt;url&gt; - Add RSS feed\n"
    "/add x &lt;username&gt; - Add X user\n"
    "/del [type] &lt;name&gt; - Remove subscription\n"
    "/list - List subscriptions\n"
    "/set_forward - Configure forwarding\n"
    "/help - Show help"
)

HELP_MESSAGE = (
    "📖 <b>Help Guide</b>\n\n"
    "<b>1. Add Subscription</b>\n"
    "Use <code>/add &lt;type&gt; &lt;arg&gt;</code>\n"
    "- RSS: <code>/add rss https://example.com/feed.xml</code>\n"
    "- X (Twitter): <code>/add x username</code>\n"
    "- YouTube: <code>/add youtube username</code>\n\n"
    "<b>2. Forwarding Settings</b>\n"
    "Configure message forwarding to another channel/group:\n"
    "<code>/set_forward &lt;target_chat_id&gt; [only_forward: true/false]</code>\n"
    "Example: <code>/set_forward -100123456789 true</code> (Sends ONLY to target)\n"
    "To remove: <code>/del_forward</code>\n\n"
    "<b>3. Manage Subscriptions</b>\n"
    "- List: <code>/list</code>\n"
    "- Remove: <code>/del [type] &lt;name&gt;</code>\n"
    "- ID Info: <code>/id</code>"
)


def parse_int(value: str) -> int | None:
    """Parse a leading integer the lenient way chat users type ids."""
    match = re.match(r"^\s*([+-]?\d+)", value or "")
    return int(match.group(1)) if match else None


def channel_name_from_url(rss_url: str) -> str:
    try:
        parsed = urlsplit(rss_url)
    except ValueError:
        return rss_url
    if not parsed.scheme or not parsed.hostname:
        return rss_url
    path = parsed.path if len(parsed.path) > 1 else ""
    return f"{parsed.hostname}{path}"


class CommandHandler:
    """Dispatches Telegram updates received through the webhook."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        publisher: TelegramPublisher,
        rss_base_url: str = "",
        execution_id: str | None = None,
    ):
        self.repository = repository
        self.publisher = publisher
        self.rss_base_url = rss_base_url
        self.logger = create_execution_logger("commands", execution_id)
        self._commands = [
            ("/start", self.cmd_start),
            ("/help", self.cmd_help),
            ("/id", self.cmd_id),
            ("/add", self.cmd_add),
            ("/set_forward", self.cmd_set_forward),
            ("/del_forward", self.cmd_del_forward),
            ("/del", self.cmd_del),
            ("/remove", self.cmd_del),
            ("/list", self.cmd_list),
            ("/forward_to", self.cmd_forward_to),
        ]

    def handle_update(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if message and message.get("text"):
            self.handle_message(message)
        elif update.get("callback_query"):
            self.handle_callback(update["callback_query"])

    def handle_message(self, message: dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        thread_id = message.get("message_thread_id") or None
        text = message["text"].strip()

        # Prefix matching in registration order: /del_forward before /del
        for prefix, handler in self._commands:
            if text.startswith(prefix):
                self.logger.info(
                    f"Handling command {prefix}", chat_id=chat_id, thread_id=thread_id
                )
                handler(chat_id, thread_id, text.split())
                return

    def reply(
        self,
        chat_id: int,
        thread_id: int | None,
        text: str,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        self.publisher.send_message(chat_id, thread_id, text, reply_markup=reply_markup)

    def cmd_start(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        self.reply(chat_id, thread_id, WELCOME_MESSAGE)

    def cmd_help(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        self.reply(chat_id, thread_id, HELP_MESSAGE)

    def cmd_id(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        msg = f"🆔 <b>Chat Info</b>\n\n<b>Chat ID:</b> <code>{chat_id}</code>"
        if thread_id:
            msg += f"\n<b>Thread ID:</b> <code>{thread_id}</code>"
        self.reply(chat_id, thread_id, msg)

    def cmd_add(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        if len(parts) < 3:
            self.reply(
                chat_id,
                thread_id,
                "Usage:\n/add rss <url>\n/add x <username>\n/add youtube <channel_name>",
            )
            return

        sub_type = parts[1].lower()
        arg = parts[2]

        if sub_type == "rss":
            rss_url = arg
            channel_name = channel_name_from_url(arg)
        elif sub_type == "x":
            rss_url = build_rsshub_url(self.rss_base_url, f"/twitter/user/{arg}")
            channel_name = arg
        elif sub_type == "youtube":
            rss_url = build_rsshub_url(self.rss_base_url, f"/youtube/user/{arg}")
            channel_name = arg
        else:
            self.reply(chat_id, thread_id, "Unknown type. Use rss, x, or youtube.")
            return

        new_sub = Subscription(sub_type, channel_name, rss_url, chat_id, thread_id)
        subs = self.repository.list_subscriptions()
        if any(s.identity == new_sub.identity for s in subs):
            self.reply(chat_id, thread_id, "⚠️ Subscription already exists.")
            return

        subs.append(new_sub)
        self.repository.save_subscriptions(subs)
        self.reply(
            chat_id, thread_id, f"✅ Added {sub_type} subscription: {channel_name}"
        )

    def cmd_set_forward(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        if len(parts) < 2:
            self.reply(
                chat_id,
                thread_id,
                "Usage: /set_forward <target_chat_id> [only_forward: true/false]\n"
                "Example: /set_forward -100123456789 true",
            )
            return

        target_chat_id = parse_int(parts[1])
        if target_chat_id is None:
            self.reply(chat_id, thread_id, "⚠️ Invalid Target Chat ID.")
            return

        only_forward = len(parts) > 2 and parts[2].lower() == "true"
        self.repository.set_forward_config(
            chat_id, ForwardConfig(target_chat_id, only_forward)
        )
        self.reply(
            chat_id,
            thread_id,
            "✅ Forwarding configured.\n"
            f"Target: {target_chat_id}\n"
            f"Only Forward: {'true' if only_forward else 'false'}",
        )

    def cmd_del_forward(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        self.repository.delete_forward_config(chat_id)
        self.reply(chat_id, thread_id, "✅ Forwarding configuration removed.")

    def cmd_del(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        if len(parts) < 2:
            self.reply(
                chat_id,
                thread_id,
                "Usage: /del <channel_name>\n"
                "Or: /del <type> <channel_name> (type: rss, x, youtube)",
            )
            return

        sub_type = None
        channel_name = parts[1]
        if len(parts) >= 3 and parts[1].lower() in SUBSCRIPTION_TYPES:
            sub_type = parts[1].lower()
            channel_name = parts[2]

        def matches(sub: Subscription) -> bool:
            if sub.chat_id != chat_id or sub.thread_id != thread_id:
                return False
            if sub.channel_name != channel_name:
                return False
            return sub_type is None or sub.type == sub_type

        subs = self.repository.list_subscriptions()
        remaining = [s for s in subs if not matches(s)]
        label = f"{sub_type} {channel_name}" if sub_type else channel_name

        if len(remaining) == len(subs):
            self.reply(chat_id, thread_id, f"⚠️ Subscription for {label} not found.")
            return

        self.repository.save_subscriptions(remaining)
        self.reply(chat_id, thread_id, f"🗑️ Removed {label} from watchlist.")

    def cmd_list(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        subs = [
            s
            for s in self.repository.list_subscriptions()
            if s.chat_id == chat_id and s.thread_id == thread_id
        ]
        if not subs:
            self.reply(chat_id, thread_id, "📭 No active subscriptions.")
            return

        lines = "\n".join(f"- [{s.type}] {s.channel_name}" for s in subs)
        self.reply(chat_id, thread_id, f"📋 <b>Subscriptions:</b>\n{lines}")

    def cmd_forward_to(
        self, chat_id: int, thread_id: int | None, parts: list[str]
    ) -> None:
        if len(parts) < 2:
            self.reply(
                chat_id,
                thread_id,
                "Usage: /forward_to <target_chat_id> [target_thread_id]",
            )
            return

        target_chat_id = parse_int(parts[1])
        target_thread_id = None
        if len(parts) > 2:
            target_thread_id = parse_int(parts[2])
            if target_thread_id is None:
                self.reply(chat_id, thread_id, "⚠️ Invalid Target Thread ID.")
                return

        if target_chat_id is None:
            self.reply(chat_id, thread_id, "⚠️ Invalid Target Chat ID.")
            return

        current = [
            s
            for s in self.repository.list_subscriptions()
            if s.chat_id == chat_id and s.thread_id == thread_id
        ]
        if not current:
            self.reply(
                chat_id, thread_id, "⚠️ No subscriptions found in this chat to forward."
            )
            return

        session = ForwardSession(
            target_chat_id=target_chat_id,
            target_thread_id=target_thread_id,
            source_chat_id=chat_id,
            source_thread_id=thread_id,
            sub_map=[
                {"type": s.type, "channelName": s.channel_name, "rssUrl": s.rss_url}
                for s in current
            ],
        )
        session_id = self.repository.create_session(session)

        keyboard = {
            "inline_keyboard": [
                [{"text": "🚀 Forward All", "callback_data": f"fwd:{session_id}:ALL"}],
                *[
                    [
                        {
                            "text": f"📺 [{s.type}] {s.channel_name}",
                            "callback_data": f"fwd:{session_id}:{idx}",
                        }
                    ]
                    for idx, s in enumerate(current)
                ],
            ]
        }

        msg = (
            "📤 <b>Forward Subscriptions</b>\n\n"
            f"<b>Target Chat ID:</b> <code>{target_chat_id}</code>\n"
        )
        if target_thread_id:
            msg += f"<b>Target Thread ID:</b> <code>{target_thread_id}</code>\n"
        msg += "\nSelect the subscriptions you want to copy to the target chat:"

        self.reply(chat_id, thread_id, msg, reply_markup=keyboard)

    def handle_callback(self, callback_query: dict[str, Any]) -> None:
        """Apply a forwarding selection made on the /forward_to keyboard."""
        data = callback_query.get("data") or ""
        callback_id = callback_query["id"]
        chat_id = callback_query["message"]["chat"]["id"]

        if not data.startswith("fwd:"):
            return

        parts = data.split(":")
        if len(parts) < 3:
            self.publisher.answer_callback_query(callback_id, "❌ Invalid callback data.")
            return

        session_id, action = parts[1], parts[2]
        session = self.repository.get_session(session_id)
        if session is None:
            self.publisher.answer_callback_query(
                callback_id, "❌ Session expired or invalid."
            )
            return

        if session.source_chat_id != chat_id:
            self.publisher.answer_callback_query(
                callback_id, "❌ This button is not for this chat."
            )
            return

        if action == "ALL":
            selected = session.sub_map
        else:
            idx = parse_int(action)
            selected = (
                [session.sub_map[idx]]
                if idx is not None and 0 <= idx < len(session.sub_map)
                else []
            )

        if not selected:
            self.publisher.answer_callback_query(callback_id, "⚠️ No channel selected.")
            return

        subs = self.repository.list_subscriptions()
        added = 0
        for entry in selected:
            new_sub = Subscription.from_dict(
                {
                    **entry,
                    "chatId": session.target_chat_id,
                    "threadId": session.target_thread_id,
                }
            )
            if not any(s.identity == new_sub.identity for s in subs):
                subs.append(new_sub)
                added += 1

        if not added:
            self.publisher.answer_callback_query(
                callback_id, "⚠️ Channels already exist in target."
            )
            return

        self.repository.save_subscriptions(subs)
        self.publisher.answer_callback_query(
            callback_id, f"✅ Forwarded {added} subscriptions!"
        )
        self.reply(
            chat_id,
            session.source_thread_id,
            f"✅ Successfully forwarded {added} subscriptions to target.",
        )
        self.repository.delete_session(session_id)
