"""Inbound callback routing and the on-demand translation state machine.

Per article: untranslated -> translating -> translated. A failed attempt
reports the error and leaves the article in "failed", which the next
"read" click retries exactly like untranslated. Presence of
``translated_content`` is final: it is never redone.
"""
import enum
import logging
from typing import Dict, Optional

from .config import AppConfig
from .database import DigestStore
from .llm import LLMUnavailableError, ResilientInvoker, translation_timeout_ms
from .nodes.digest import (
    format_full_text_messages,
    format_loading_message,
    format_translation_error,
)
from .nodes.scoring import language_name
from .state import Article
from .telegram_handler import TelegramClient

logger = logging.getLogger(__name__)

TRANSLATE_INPUT_CHARS = 15000

TRANSLATE_PROMPT = """\
Translate the following technical article into fluent {language}, keeping technical terms accurate.
Separate paragraphs with a blank line.

{content}

Return only the translation, with no extra commentary."""


class TranslationState(str, enum.Enum):
    UNTRANSLATED = "untranslated"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    FAILED = "failed"


class TranslationInProgress(Exception):
    pass


class TranslationFailed(Exception):
    pass


class Translator:
    """Owns translation of one article at a time, guarded by the store's per-article lock."""

    def __init__(self, store: DigestStore, invoker: ResilientInvoker):
        self.store = store
        self.invoker = invoker

    def state_of(self, article: Article) -> TranslationState:
        if article.translated_content is not None:
            return TranslationState.TRANSLATED
        if self.store.article_locked(article.id):
            return TranslationState.TRANSLATING
        if self.store.translation_failed(article.id):
            return TranslationState.FAILED
        return TranslationState.UNTRANSLATED

    async def translate(self, article: Article, config: AppConfig) -> Article:
        """Return the article with ``translated_content`` set, translating at most once.

        Raises TranslationInProgress if another caller holds this article,
        TranslationFailed if the LLM could not produce a translation.
        """
        if article.translated_content is not None:
            return article
        if self.store.article_locked(article.id):
            raise TranslationInProgress(article.id)
        try:
            async with self.store.article_lock(article.id):
                return await self._translate_locked(article, config)
        finally:
            self.store.discard_article_lock(article.id)

    async def _translate_locked(self, article: Article, config: AppConfig) -> Article:
        # Re-read: another handler may have finished while we were waiting to get here
        fresh = await self.store.get_article(article.id) or article
        if fresh.translated_content is not None:
            return fresh
        self.store.mark_translation_failed(fresh.id, False)

        timeout_ms = translation_timeout_ms(config.llm_settings.timeout_ms)
        logger.info(
            f"Translating article {fresh.id} '{fresh.localized_title[:50]}' "
            f"(timeout {timeout_ms / 1000:.0f}s)"
        )
        prompt = TRANSLATE_PROMPT.format(
            language=language_name(config.rss.language),
            content=fresh.content[:TRANSLATE_INPUT_CHARS],
        )
        try:
            translated = await self.invoker.invoke(prompt, config.resilience(), timeout_ms)
        except LLMUnavailableError as e:
            logger.error(f"Translation failed for {fresh.id}: {e}")
            self.store.mark_translation_failed(fresh.id)
            raise TranslationFailed(str(e)) from e

        fresh.translated_content = translated.strip()
        await self.store.update_article_fields(
            fresh.id, translated_content=fresh.translated_content
        )
        logger.info(f"Translation complete for {fresh.id}")
        return fresh


def build_jump_url(chat: Dict, chat_id, message_id: int) -> Optional[str]:
    """Deep link to a message, or None when the chat type has no linkable form."""
    if chat.get("username"):
        return f"https://t.me/{chat['username']}/{message_id}"
    if chat.get("type") in ("supergroup", "channel"):
        short_id = str(chat_id)
        if short_id.startswith("-100"):
            short_id = short_id[4:]
        return f"https://t.me/c/{short_id}/{message_id}"
    return None


class CallbackHandler:
    def __init__(
        self,
        store: DigestStore,
        invoker: ResilientInvoker,
        telegram: TelegramClient,
        config: AppConfig,
    ):
        self.store = store
        self.telegram = telegram
        self.config = config
        self.translator = Translator(store, invoker)

    async def handle(self, callback_query: Dict) -> None:
        """Top-level boundary for one callback event; never raises."""
        query_id = callback_query.get("id", "")
        data = callback_query.get("data") or ""
        try:
            if data.startswith("read_"):
                await self._handle_read(query_id, data[len("read_"):])
            elif data.startswith("back_"):
                chat_id = (callback_query.get("message") or {}).get("chat", {}).get("id")
                await self._handle_back(query_id, data[len("back_"):], chat_id)
            else:
                # Always answer, or the client shows a generic error spinner
                await self.telegram.answer_callback(query_id, "⚠️ Unknown action")
        except Exception as e:
            logger.error(f"Callback '{data}' failed: {e}", exc_info=True)

    async def _handle_read(self, query_id: str, article_id: str) -> None:
        article = await self.store.get_article(article_id)
        if article is None:
            await self.telegram.answer_callback(
                query_id, "❌ Article not found or expired", show_alert=True
            )
            return

        state = self.translator.state_of(article)
        if state is TranslationState.TRANSLATING:
            await self.telegram.answer_callback(query_id, "⏳ Translation already in progress")
            return
        await self.telegram.answer_callback(query_id, "⏳ Loading...")

        if state in (TranslationState.UNTRANSLATED, TranslationState.FAILED):
            loading_msg_id = await self.telegram.send_message(format_loading_message(article))
            try:
                article = await self.translator.translate(article, self.config)
            except TranslationInProgress:
                if loading_msg_id:
                    await self.telegram.delete_message(loading_msg_id)
                return
            except TranslationFailed as e:
                # FAILED: surface it and leave the article retryable
                if loading_msg_id:
                    await self.telegram.delete_message(loading_msg_id)
                await self.telegram.send_message(format_translation_error(article, str(e)))
                return
            if loading_msg_id:
                await self.telegram.delete_message(loading_msg_id)

        texts, markup = format_full_text_messages(article)
        last_msg_id = await self.telegram.send_messages(texts, markup)
        await self.store.update_article_fields(article.id, full_text_msg_id=last_msg_id)

    async def _handle_back(self, query_id: str, raw_msg_id: str, chat_id) -> None:
        try:
            message_id = int(raw_msg_id)
        except ValueError:
            message_id = 0
        if not message_id or chat_id is None:
            await self.telegram.answer_callback(
                query_id, "↩️ Scroll up to find the summary message", show_alert=True
            )
            return

        chat = await self.telegram.get_chat(chat_id) or {}
        jump_url = build_jump_url(chat, chat_id, message_id)
        if jump_url:
            await self.telegram.answer_callback(query_id, url=jump_url)
        elif chat.get("type") == "private":
            await self.telegram.answer_callback(
                query_id,
                f"📍 The summary is message #{message_id}, scroll up to find it",
                show_alert=True,
            )
        else:
            await self.telegram.answer_callback(
                query_id, "↩️ Scroll up to find the summary message", show_alert=True
            )
