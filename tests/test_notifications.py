import pytest
import requests

from giveaway_system.notifications import (
    NotificationError,
    NullNotifier,
    TelegramNotifier,
    draw_preview,
    inline_keyboard,
    retry_credit_issued,
)


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data if data is not None else {"ok": True, "result": {"message_id": 5}}

    def json(self):
        return self._data


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def test_send_message_posts_html_with_keyboard():
    session = FakeSession()
    notifier = TelegramNotifier("123:abc", session=session)

    result = notifier.send_message("42", "<b>hi</b>", [[("Go", "a:go")]])

    assert result == {"message_id": 5}
    post = session.posts[0]
    assert post["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert post["json"] == {
        "chat_id": 42,
        "text": "<b>hi</b>",
        "parse_mode": "HTML",
        "reply_markup": {"inline_keyboard": [[{"text": "Go", "callback_data": "a:go"}]]},
    }


def test_edit_message_text():
    session = FakeSession()
    TelegramNotifier("t", session=session).edit_message_text(-100, 9, "done")

    post = session.posts[0]
    assert post["url"].endswith("/editMessageText")
    assert post["json"]["message_id"] == 9


def test_api_error_raises():
    session = FakeSession(FakeResponse(403, {"ok": False, "description": "Forbidden: bot was blocked by the user"}))

    with pytest.raises(NotificationError, match="blocked"):
        TelegramNotifier("t", session=session).send_message(1, "x")


def test_network_error_raises():
    session = FakeSession(error=requests.ConnectionError("timeout"))

    with pytest.raises(NotificationError):
        TelegramNotifier("t", session=session).send_message(1, "x")


def test_null_notifier_drops_messages():
    assert NullNotifier().send_message(1, "x") is None
    assert NullNotifier().edit_message_text(1, 2, "x") is None


def test_inline_keyboard_rows():
    markup = inline_keyboard([[("A", "a"), ("B", "b")], [("C", "c")]])
    assert [len(row) for row in markup["inline_keyboard"]] == [2, 1]


def test_draw_preview_lists_winners_and_escapes_names():
    text, buttons = draw_preview(
        9,
        [{"place": 1, "username": "<script>", "tg_id": 1}, {"place": 2, "username": None, "tg_id": 555}],
    )

    assert "1. @&lt;script&gt;" in text
    assert "2. id:555" in text
    assert "all entries" not in text
    assert buttons[0][0] == ("📣 Publish results", "a:gw_publish_results|i:9")


def test_draw_preview_flags_fallback_pool():
    text, _ = draw_preview(9, [], used_fallback=True)
    assert "all entries" in text


def test_retry_credit_notice_mentions_window():
    text, buttons = retry_credit_issued(24, 7)
    assert "24h" in text
    assert "7 days" in text
    assert buttons == [[("🎫 Brand Pass", "a:brand_pass|ws:0")]]
