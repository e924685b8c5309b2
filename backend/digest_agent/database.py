"""MongoDB persistence for feeds, the dedup ledger, articles, run history and config."""
import asyncio
import logging
import os
import time
from typing import Dict, List, Optional, Set

from motor.motor_asyncio import AsyncIOMotorClient

from .config import (
    DEFAULT_FEEDS,
    AppConfig,
    FeedSource,
    clean_patch,
    config_from_env,
    merge_config,
)
from .ledger import LEDGER_CAPACITY, DedupLedger
from .state import Article, RunHistoryEntry

logger = logging.getLogger(__name__)

MAX_HISTORY = 30
ARTICLE_MAX_AGE_DAYS = 7
_SEEN_ID = "seen_links"
_CONFIG_ID = "config"
_HISTORY_ID = "history"

_client = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(os.environ.get("MONGO_URL", "mongodb://localhost:27017"))
        _db = _client[os.environ.get("DB_NAME", "ai_daily_digest")]
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


class DigestStore:
    """Read/write contract over the persisted digest state."""

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()
        self._article_locks: Dict[str, asyncio.Lock] = {}
        # Ids whose last translation attempt failed; cleared on the next attempt
        self._failed_translations: Set[str] = set()

    def article_lock(self, article_id: str) -> asyncio.Lock:
        lock = self._article_locks.get(article_id)
        if lock is None:
            lock = self._article_locks[article_id] = asyncio.Lock()
        return lock

    def article_locked(self, article_id: str) -> bool:
        lock = self._article_locks.get(article_id)
        return lock is not None and lock.locked()

    def discard_article_lock(self, article_id: str) -> None:
        """Forget an idle lock; a held one stays until its owner is done."""
        lock = self._article_locks.get(article_id)
        if lock is not None and not lock.locked():
            del self._article_locks[article_id]

    def mark_translation_failed(self, article_id: str, failed: bool = True) -> None:
        if failed:
            self._failed_translations.add(article_id)
        else:
            self._failed_translations.discard(article_id)

    def translation_failed(self, article_id: str) -> bool:
        return article_id in self._failed_translations

    # -- config ----------------------------------------------------------------

    async def load_config_patch(self) -> Dict:
        doc = await self.db.state.find_one({"_id": _CONFIG_ID})
        return (doc or {}).get("patch", {})

    async def load_config(self) -> AppConfig:
        base = config_from_env()
        try:
            return merge_config(base, await self.load_config_patch())
        except ValueError as e:
            logger.error(f"Stored config patch is invalid, using env defaults: {e}")
            return base

    async def update_config(self, patch: Dict) -> AppConfig:
        """Validate ``patch`` against the live config, then fold it into the stored patch."""
        current = await self.load_config()
        updated = merge_config(current, patch)
        stored = await self.load_config_patch()
        for section, values in clean_patch(patch).items():
            stored.setdefault(section, {}).update(values)
        await self.db.state.replace_one(
            {"_id": _CONFIG_ID}, {"_id": _CONFIG_ID, "patch": stored}, upsert=True
        )
        logger.info("Config updated")
        return updated

    # -- feeds -----------------------------------------------------------------

    async def load_feeds(self) -> List[FeedSource]:
        docs = await self.db.feeds.find({}, {"_id": 0}).to_list(None)
        if not docs:
            await self.save_feeds(DEFAULT_FEEDS)
            return list(DEFAULT_FEEDS)
        return [FeedSource.model_validate(d) for d in docs]

    async def save_feeds(self, feeds: List[FeedSource]) -> None:
        await self.db.feeds.delete_many({})
        if feeds:
            await self.db.feeds.insert_many([f.model_dump() for f in feeds])

    # -- ledger ----------------------------------------------------------------

    async def load_ledger(self) -> DedupLedger:
        doc = await self.db.state.find_one({"_id": _SEEN_ID})
        return DedupLedger((doc or {}).get("links", []))

    async def save_ledger(self, ledger: DedupLedger) -> None:
        await self.db.state.replace_one(
            {"_id": _SEEN_ID}, {"_id": _SEEN_ID, "links": ledger.to_list()}, upsert=True
        )

    async def prune_ledger(self) -> int:
        doc = await self.db.state.find_one({"_id": _SEEN_ID})
        links = (doc or {}).get("links", [])
        if len(links) <= LEDGER_CAPACITY:
            return 0
        await self.save_ledger(DedupLedger(links))
        removed = len(links) - LEDGER_CAPACITY
        logger.info(f"Pruned ledger: {len(links)} -> {LEDGER_CAPACITY}")
        return removed

    # -- articles --------------------------------------------------------------

    async def get_article(self, article_id: str) -> Optional[Article]:
        doc = await self.db.articles.find_one({"_id": article_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return Article.model_validate(doc)

    async def load_articles(self) -> Dict[str, Article]:
        docs = await self.db.articles.find({}, {"_id": 0}).to_list(None)
        return {d["id"]: Article.model_validate(d) for d in docs}

    async def save_article(self, article: Article) -> None:
        doc = {"_id": article.id, **article.model_dump()}
        await self.db.articles.replace_one({"_id": article.id}, doc, upsert=True)

    async def save_articles(self, articles: List[Article]) -> None:
        for article in articles:
            await self.save_article(article)

    async def update_article_fields(self, article_id: str, **fields) -> None:
        # Field-level $set so a concurrent digest run never clobbers translation state
        await self.db.articles.update_one({"_id": article_id}, {"$set": fields})

    async def prune_articles(self, max_age_days: int = ARTICLE_MAX_AGE_DAYS) -> int:
        cutoff = time.time() - max_age_days * 24 * 3600
        expired = {"created_at": {"$lte": cutoff}}
        ids = [d["_id"] for d in await self.db.articles.find(expired, {"_id": 1}).to_list(None)]
        if not ids:
            return 0
        result = await self.db.articles.delete_many({"_id": {"$in": ids}})
        for article_id in ids:
            self.discard_article_lock(article_id)
            self._failed_translations.discard(article_id)
        if result.deleted_count:
            logger.info(f"Pruned {result.deleted_count} expired articles")
        return result.deleted_count

    # -- run history -----------------------------------------------------------

    async def load_history(self) -> List[RunHistoryEntry]:
        doc = await self.db.run_history.find_one({"_id": _HISTORY_ID})
        return [RunHistoryEntry.model_validate(e) for e in (doc or {}).get("entries", [])]

    async def prepend_history(self, entry: RunHistoryEntry) -> None:
        entries = [entry] + await self.load_history()
        await self.db.run_history.replace_one(
            {"_id": _HISTORY_ID},
            {"_id": _HISTORY_ID, "entries": [e.model_dump() for e in entries[:MAX_HISTORY]]},
            upsert=True,
        )
