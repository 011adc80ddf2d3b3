import asyncio

import pytest

from volumebot.errors import TelegramError
from volumebot.models import PanelRef, Session
from volumebot.telegram_api import TelegramAPI, TelegramSink


class _Resp:
    def __init__(self, body):
        self.body = body

    async def __aenter__(self):
        if isinstance(self.body, BaseException):
            raise self.body
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self.body


class _FakeBotHTTP:
    """Answers Bot API calls from a per-method queue of canned bodies."""

    def __init__(self, replies=None):
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.calls = []

    def post(self, url, json=None, timeout=None):
        method = url.rsplit("/", 1)[-1]
        self.calls.append((method, json))
        queue = self.replies.get(method) or [{"ok": True, "result": True}]
        return _Resp(queue.pop(0) if len(queue) > 1 else queue[0])

    def methods(self):
        return [m for m, _ in self.calls]


NOT_MODIFIED = {
    "ok": False,
    "error_code": 400,
    "description": "Bad Request: message is not modified: specified new message content is exactly the same",
}
NOT_FOUND = {"ok": False, "error_code": 400, "description": "Bad Request: message to edit not found"}


def _api(http):
    return TelegramAPI("123:abc", http, timeout_seconds=1.0, longpoll_grace=1)


@pytest.mark.asyncio
async def test_error_carries_description():
    api = _api(_FakeBotHTTP({"sendMessage": [NOT_FOUND]}))
    with pytest.raises(TelegramError) as ei:
        await api.send_message(42, "hi")
    assert ei.value.method == "sendMessage"
    assert ei.value.description == "Bad Request: message to edit not found"
    assert not ei.value.not_modified


@pytest.mark.asyncio
async def test_non_envelope_body_is_an_error():
    api = _api(_FakeBotHTTP({"sendMessage": [["not", "an", "envelope"]]}))
    with pytest.raises(TelegramError):
        await api.send_message(42, "hi")


@pytest.mark.asyncio
async def test_get_updates_returns_result_and_swallows_timeout():
    http = _FakeBotHTTP({"getUpdates": [{"ok": True, "result": [{"update_id": 7}]}, asyncio.TimeoutError()]})
    api = _api(http)
    assert await api.get_updates(offset=3, timeout=0) == [{"update_id": 7}]
    assert await api.get_updates(offset=8, timeout=0) == []
    assert http.calls[0][1]["allowed_updates"] == ["message", "callback_query"]


@pytest.mark.asyncio
async def test_upsert_panel_edits_in_place():
    http = _FakeBotHTTP()
    panel = PanelRef(chat_id=42, message_id=5)
    assert await _api(http).upsert_panel(42, panel, "text") is panel
    assert http.methods() == ["editMessageText"]


@pytest.mark.asyncio
async def test_upsert_panel_treats_unchanged_text_as_drawn():
    http = _FakeBotHTTP({"editMessageText": [NOT_MODIFIED]})
    panel = PanelRef(chat_id=42, message_id=5)
    assert await _api(http).upsert_panel(42, panel, "text") is panel
    assert http.methods() == ["editMessageText"]


@pytest.mark.asyncio
async def test_upsert_panel_replaces_lost_panel():
    http = _FakeBotHTTP({
        "editMessageText": [NOT_FOUND],
        "sendMessage": [{"ok": True, "result": {"message_id": 9}}],
    })
    new = await _api(http).upsert_panel(42, PanelRef(chat_id=42, message_id=5), "text", reply_markup={"k": 1})
    assert new == PanelRef(chat_id=42, message_id=9)
    assert http.methods() == ["editMessageText", "sendMessage"]
    assert http.calls[1][1]["reply_markup"] == {"k": 1}


@pytest.mark.asyncio
async def test_sink_stores_replacement_panel(store):
    s = Session.fresh()
    s.panel = PanelRef(chat_id=42, message_id=5)
    store.put("42", s)
    http = _FakeBotHTTP({
        "editMessageText": [NOT_FOUND],
        "sendMessage": [{"ok": True, "result": {"message_id": 11}}],
    })
    sink = TelegramSink(_api(http), store)

    await sink.push_summary("42", "summary")
    assert store.get("42").panel == PanelRef(chat_id=42, message_id=11)

    await sink.prompt_user("42", "hello")
    assert http.calls[-1] == ("sendMessage", {"chat_id": 42, "text": "hello", "disable_web_page_preview": True})
