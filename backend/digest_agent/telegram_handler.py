"""Telegram bot client: send/edit/delete messages, answer callbacks, register the webhook."""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import TelegramSettings

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
REQUEST_TIMEOUT_SEC = 15
SEGMENT_DELAY_SEC = 0.2


class TelegramClient:
    def __init__(self, settings: TelegramSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self.last_error: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.enabled and self.settings.bot_token)

    async def _call(self, method: str, payload: Dict[str, Any]) -> Optional[Dict]:
        """POST one Bot API method; returns ``result`` on success, None on any failure."""
        if not self.settings.bot_token:
            logger.warning(f"TELEGRAM bot token not set, skipping {method}")
            return None
        url = f"{TELEGRAM_API_BASE}/bot{self.settings.bot_token}/{method}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=REQUEST_TIMEOUT_SEC)
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SEC) as client:
                    resp = await client.post(url, json=payload)
            data = resp.json()
        except Exception as e:
            logger.error(f"Telegram {method} error: {e}")
            self.last_error = str(e)
            return None
        if not data.get("ok"):
            self.last_error = data.get("description", resp.text[:200])
            logger.error(f"Telegram {method} failed: {self.last_error}")
            return None
        # Some methods (deleteMessage, answerCallbackQuery) return a bare True
        result = data.get("result")
        return result if isinstance(result, dict) else {"value": result}

    async def send_message(self, text: str, reply_markup: Optional[Dict] = None) -> Optional[int]:
        if not self.enabled:
            return None
        payload = {
            "chat_id": self.settings.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        result = await self._call("sendMessage", payload)
        return result.get("message_id") if result else None

    async def send_messages(
        self, texts: List[str], final_markup: Optional[Dict] = None
    ) -> Optional[int]:
        """Send segments in order; markup goes on the last one. Returns the last message id."""
        last_msg_id = None
        for idx, text in enumerate(texts):
            is_last = idx == len(texts) - 1
            last_msg_id = await self.send_message(text, final_markup if is_last else None)
            if not is_last:
                await asyncio.sleep(SEGMENT_DELAY_SEC)
        return last_msg_id

    async def edit_message(
        self, message_id: int, text: str, reply_markup: Optional[Dict] = None
    ) -> bool:
        if not self.enabled:
            return False
        payload = {
            "chat_id": self.settings.chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("editMessageText", payload) is not None

    async def delete_message(self, message_id: int) -> bool:
        if not self.enabled:
            return False
        payload = {"chat_id": self.settings.chat_id, "message_id": message_id}
        return await self._call("deleteMessage", payload) is not None

    async def answer_callback(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
        url: Optional[str] = None,
    ) -> bool:
        payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = show_alert
        if url:
            payload["url"] = url
        return await self._call("answerCallbackQuery", payload) is not None

    async def get_chat(self, chat_id: Any) -> Optional[Dict]:
        return await self._call("getChat", {"chat_id": chat_id})

    async def setup_webhook(self, webhook_url: str) -> bool:
        ok = await self._call(
            "setWebhook", {"url": webhook_url, "allowed_updates": ["callback_query"]}
        )
        if ok is not None:
            logger.info(f"Telegram webhook set to {webhook_url}")
        return ok is not None

    async def get_webhook_info(self) -> Optional[Dict]:
        return await self._call("getWebhookInfo", {})

    async def delete_webhook(self) -> bool:
        ok = await self._call("deleteWebhook", {"drop_pending_updates": False})
        if ok is not None:
            logger.info("Telegram webhook removed")
        return ok is not None
