import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import TelegramError
from .models import PanelRef
from .store import SessionStore

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]


# =========================
# TELEGRAM API (long polling)
# =========================
class TelegramAPI:
    def __init__(self, token: str, session: aiohttp.ClientSession, timeout_seconds: float = 10.0, longpoll_grace: int = 15):
        self.base = f"https://api.telegram.org/bot{token}"
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.longpoll_grace = longpoll_grace

    async def _call(self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        total = timeout if timeout is not None else self.timeout_seconds
        async with self.session.post(
            f"{self.base}/{method}", json=payload, timeout=aiohttp.ClientTimeout(total=total)
        ) as r:
            data = await r.json(content_type=None)
        if not isinstance(data, dict):
            raise TelegramError(method, f"unexpected response {data!r}")
        if not data.get("ok"):
            raise TelegramError(method, str(data.get("description") or data))
        return data.get("result")

    async def delete_webhook(self) -> None:
        await self._call("deleteWebhook", {"drop_pending_updates": True})

    async def get_updates(self, offset: int, timeout: int = 30) -> List[Dict[str, Any]]:
        payload = {"offset": offset, "timeout": timeout, "allowed_updates": ALLOWED_UPDATES}
        try:
            return await self._call("getUpdates", payload, timeout=timeout + self.longpoll_grace) or []
        except asyncio.TimeoutError:
            return []

    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("sendMessage", payload) or {}

    async def edit_message_text(self, chat_id: int, message_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> None:
        payload = {"chat_id": chat_id, "message_id": message_id, "text": text, "disable_web_page_preview": True}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        await self._call("editMessageText", payload)

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = False
        await self._call("answerCallbackQuery", payload)

    async def upsert_panel(
        self,
        chat_id: int,
        panel: Optional[PanelRef],
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Optional[PanelRef]:
        """
        Redraw the panel in place. An unchanged text counts as drawn; a panel
        that can no longer be edited (deleted, too old) is replaced by a new message.
        """
        if panel is not None:
            try:
                await self.edit_message_text(panel.chat_id, panel.message_id, text, reply_markup=reply_markup)
                return panel
            except TelegramError as e:
                if e.not_modified:
                    return panel
                logger.debug("[TG] panel %s/%s not editable: %s", panel.chat_id, panel.message_id, e.description)
        m = await self.send_message(chat_id, text, reply_markup=reply_markup)
        if m.get("message_id") is None:
            return panel
        return PanelRef(chat_id=chat_id, message_id=int(m["message_id"]))


# =========================
# PRESENTATION SINK
# =========================
class TelegramSink:
    """Pushes summaries into the session's panel message, prompts as new messages."""

    def __init__(self, tg: TelegramAPI, store: SessionStore, panel_markup: Optional[Dict[str, Any]] = None):
        self.tg = tg
        self.store = store
        self.panel_markup = panel_markup

    async def push_summary(self, session_id: str, text: str) -> None:
        s = self.store.get(session_id)
        if s is None:
            return
        panel = await self.tg.upsert_panel(int(session_id), s.panel, text, reply_markup=self.panel_markup)
        if panel != s.panel:
            s.panel = panel
            await self.store.save()

    async def prompt_user(self, session_id: str, text: str) -> None:
        await self.tg.send_message(int(session_id), text)
