"""
Telegram Notifications for the Giveaway System
Sends owner previews, buyer notices and channel edits through the Bot API

Callers treat every send as best effort: the notifier raises on failure and
the scheduler decides what to do with it.
"""

import html
import logging

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
REQUEST_TIMEOUT = 10


class NotificationError(Exception):
    """The Bot API rejected or failed a request"""


class Notifier:
    """Message sink used by the tick; buttons are rows of (label, callback_data) pairs"""

    def send_message(self, chat_id, text, buttons=None):
        raise NotImplementedError

    def edit_message_text(self, chat_id, message_id, text):
        raise NotImplementedError


class NullNotifier(Notifier):
    """Used when no bot token is configured"""

    def send_message(self, chat_id, text, buttons=None):
        logger.debug(f"Notifier disabled, dropping message to {chat_id}")
        return None

    def edit_message_text(self, chat_id, message_id, text):
        logger.debug(f"Notifier disabled, not editing {chat_id}/{message_id}")
        return None


class TelegramNotifier(Notifier):
    """Telegram Bot API client over requests (HTML parse mode)"""

    def __init__(self, bot_token, session=None, api_url=TELEGRAM_API_URL, timeout=REQUEST_TIMEOUT):
        self.bot_token = bot_token
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def send_message(self, chat_id, text, buttons=None):
        payload = {"chat_id": int(chat_id), "text": text, "parse_mode": "HTML"}
        if buttons:
            payload["reply_markup"] = inline_keyboard(buttons)
        return self._call("sendMessage", payload)

    def edit_message_text(self, chat_id, message_id, text):
        return self._call(
            "editMessageText",
            {"chat_id": int(chat_id), "message_id": int(message_id), "text": text, "parse_mode": "HTML"},
        )

    def _call(self, method, payload):
        """
        POST a Bot API method

        Returns:
            dict: The API's "result" field

        Raises:
            NotificationError: on HTTP errors or an ok=false response
        """
        url = f"{self.api_url}/bot{self.bot_token}/{method}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise NotificationError(f"{method} failed: {e}") from e

        if response.status_code != 200 or not data.get("ok"):
            raise NotificationError(f"{method} failed ({response.status_code}): {data.get('description')}")
        return data.get("result")


def inline_keyboard(buttons):
    """Build reply_markup from rows of (label, callback_data) pairs"""
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row]
            for row in buttons
        ]
    }


# ============================================
# MESSAGE TEMPLATES
# ============================================

PLACEMENT_EXPIRED_TEXT = "⌛️ <b>Placement expired</b>\n\nThis post is no longer in an active slot."


def draw_preview(giveaway_id, winners, used_fallback=False):
    """
    Owner preview after an automatic draw, with a one-tap publish button

    Args:
        giveaway_id: Giveaway ID
        winners: Rows from GiveawayRepository.list_winners()
        used_fallback: True when winners came from all entries

    Returns:
        tuple: (text, buttons)
    """
    lines = []
    for winner in winners:
        if winner.get("username"):
            name = "@" + html.escape(str(winner["username"]))
        else:
            name = f"id:{winner.get('tg_id') or winner.get('user_id')}"
        lines.append(f"{winner['place']}. {name}")

    note = ""
    if used_fallback:
        note = "\n\n⚠️ No eligible participants, winners were drawn from all entries (see log)."

    text = (
        f"🎲 <b>Auto draw complete</b> for giveaway #{giveaway_id}\n\n"
        f"🏆 Winners:\n{chr(10).join(lines) or 'none'}{note}"
    )
    buttons = [
        [("📣 Publish results", f"a:gw_publish_results|i:{giveaway_id}")],
        [("🧾 Log", f"a:gw_log|i:{giveaway_id}"), ("🧩 Access", f"a:gw_access|i:{giveaway_id}")],
    ]
    return text, buttons


def retry_credit_issued(after_hours, expires_days):
    """Buyer notice for a newly issued retry credit; returns (text, buttons)"""
    text = (
        "🎟 <b>Retry credit issued</b>\n\n"
        f"One of your intros got no reply within {int(after_hours)}h, so you got 1 retry credit back.\n"
        f"It is valid for {int(expires_days)} days and is used automatically on your next intro."
    )
    return text, [[("🎫 Brand Pass", "a:brand_pass|ws:0")]]
