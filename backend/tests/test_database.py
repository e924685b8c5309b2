"""DigestStore over an in-memory Mongo."""
import asyncio

import pytest

from conftest import BASE_PATCH
from digest_agent.config import DEFAULT_FEEDS, FeedSource
from digest_agent.database import MAX_HISTORY
from digest_agent.ledger import LEDGER_CAPACITY, DedupLedger
from digest_agent.state import Article, RunHistoryEntry


def _article(article_id="a1", **extra):
    return Article(id=article_id, title="t", localized_title="t", link=f"https://x/{article_id}",
                   content="c", summary="s", category="ai", score=7, **extra)


class TestConfigPersistence:
    def test_env_defaults_when_nothing_stored(self, store, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "sk-from-env")
        monkeypatch.setenv("RSS_TOP_N", "7")
        config = asyncio.run(store.load_config())
        assert config.llm.api_key == "sk-from-env"
        assert config.rss.top_n == 7

    def test_stored_patch_overrides_env_and_keeps_secrets(self, store):
        async def scenario():
            await store.update_config(BASE_PATCH)
            await store.update_config({"llm": {"api_key": "***", "model": "other"}})
            return await store.load_config(), await store.load_config_patch()

        config, patch = asyncio.run(scenario())
        assert config.llm.api_key == "sk-primary-0000"
        assert config.llm.model == "other"
        assert patch["llm"]["api_key"] == "sk-primary-0000"

    def test_invalid_update_is_rejected_and_not_stored(self, store):
        async def scenario():
            with pytest.raises(ValueError):
                await store.update_config({"rss": {"hours": 0}})
            return await store.load_config_patch()

        assert asyncio.run(scenario()) == {}


class TestFeedsAndLedger:
    def test_default_feeds_seeded_once(self, store):
        async def scenario():
            first = await store.load_feeds()
            await store.save_feeds([FeedSource(url="https://only.test/rss", source="Only")])
            return first, await store.load_feeds()

        first, second = asyncio.run(scenario())
        assert [f.url for f in first] == [f.url for f in DEFAULT_FEEDS]
        assert [f.source for f in second] == ["Only"]

    def test_ledger_round_trip_and_prune(self, store):
        async def scenario():
            await store.save_ledger(DedupLedger(["a", "b"]))
            loaded = await store.load_ledger()
            oversized = [f"l{i}" for i in range(LEDGER_CAPACITY + 25)]
            await store.db.state.replace_one(
                {"_id": "seen_links"}, {"_id": "seen_links", "links": oversized}, upsert=True
            )
            removed = await store.prune_ledger()
            return loaded, removed, await store.load_ledger()

        loaded, removed, pruned = asyncio.run(scenario())
        assert loaded.to_list() == ["a", "b"]
        assert removed == 25
        assert len(pruned) == LEDGER_CAPACITY
        assert pruned.is_new("l0")
        assert not pruned.is_new(f"l{LEDGER_CAPACITY + 24}")


class TestArticlesAndHistory:
    def test_field_update_does_not_clobber_other_fields(self, store):
        async def scenario():
            await store.save_article(_article(summary_msg_id=5))
            await store.update_article_fields("a1", translated_content="译文")
            await store.update_article_fields("a1", full_text_msg_id=9)
            return await store.get_article("a1")

        article = asyncio.run(scenario())
        assert article.translated_content == "译文"
        assert article.full_text_msg_id == 9
        assert article.summary_msg_id == 5

    def test_missing_article_is_none(self, store):
        assert asyncio.run(store.get_article("nope")) is None

    def test_history_newest_first_and_capped(self, store):
        async def scenario():
            for i in range(MAX_HISTORY + 5):
                await store.prepend_history(RunHistoryEntry(date=f"day-{i}", count=i))
            return await store.load_history()

        history = asyncio.run(scenario())
        assert len(history) == MAX_HISTORY
        assert history[0].date == f"day-{MAX_HISTORY + 4}"
        assert history[-1].date == "day-5"


class TestArticleLocks:
    def test_prune_forgets_locks_and_failure_marks(self, store):
        async def scenario():
            await store.save_articles([_article("old1", created_at=0), _article("new1")])
            store.article_lock("old1")
            store.mark_translation_failed("old1")
            removed = await store.prune_articles()
            return removed, await store.get_article("old1"), await store.get_article("new1")

        removed, old, new = asyncio.run(scenario())
        assert removed == 1
        assert old is None
        assert new is not None
        assert "old1" not in store._article_locks
        assert not store.translation_failed("old1")

    def test_held_lock_is_not_discarded(self, store):
        async def scenario():
            async with store.article_lock("a1"):
                store.discard_article_lock("a1")
                held = store.article_locked("a1")
            store.discard_article_lock("a1")
            return held

        assert asyncio.run(scenario()) is True
        assert store._article_locks == {}
        assert store.article_locked("a1") is False
        assert store._article_locks == {}
