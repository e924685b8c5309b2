"""LangGraph orchestrator for the digest run, behind a single-flight guard."""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from langgraph.graph import END, START, StateGraph

from .config import AppConfig, FeedSource
from .database import DigestStore
from .ledger import DedupLedger
from .llm import ConfigurationError, ResilientInvoker
from .nodes.digest import format_summary_message
from .nodes.fetchers import fetch_all_feeds
from .nodes.scoring import score_and_select
from .state import AgentState, Article, HistoryArticle, RawItem, RunHistoryEntry, RunOutcome
from .telegram_handler import TelegramClient

logger = logging.getLogger(__name__)

PUSH_DELAY_SEC = 0.3

FeedLoader = Callable[[Sequence[FeedSource], int], Awaitable[List[RawItem]]]


class DigestRunner:
    """Runs digests end to end; at most one run at a time, process-wide."""

    def __init__(
        self,
        store: DigestStore,
        invoker: Optional[ResilientInvoker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        feed_loader: FeedLoader = fetch_all_feeds,
        score_delay: Optional[float] = None,
    ):
        self.store = store
        self.http_client = http_client
        self.invoker = invoker or ResilientInvoker(client=http_client)
        self.feed_loader = feed_loader
        self.score_delay = score_delay
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def try_start(self) -> bool:
        return self._running.acquire(blocking=False)

    def finish(self) -> None:
        self._running.release()

    def telegram_for(self, config: AppConfig) -> TelegramClient:
        return TelegramClient(config.telegram, client=self.http_client)

    async def run(self, run_id: Optional[str] = None) -> RunOutcome:
        if not self.try_start():
            logger.info("Digest run requested while another is in progress")
            return RunOutcome(
                success=False,
                message="A digest run is already in progress, try again later",
                status="already_running",
            )
        run_id = run_id or str(uuid.uuid4())
        try:
            logger.info(f"Starting digest run: {run_id}")
            return await self._run(run_id)
        except ConfigurationError as e:
            logger.error(f"Run {run_id} not started: {e}")
            return RunOutcome(success=False, message=str(e), status="failed")
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            return RunOutcome(success=False, message=f"Run failed: {e}", status="failed")
        finally:
            self.finish()

    async def _run(self, run_id: str) -> RunOutcome:
        config = await self.store.load_config()
        if not config.llm.api_key:
            raise ConfigurationError("Configure the primary LLM API key first")

        graph = build_graph(self, config, await self.store.load_ledger())
        initial_state: AgentState = {
            "run_id": run_id,
            "raw_items": [],
            "new_items": [],
            "selected": [],
            "pushed": [],
            "stats": {},
            "errors": [],
        }
        result = await graph.ainvoke(initial_state)
        stats = result.get("stats", {})
        logger.info(f"Run {run_id} complete. Stats: {stats}")

        count = len(result.get("pushed", []))
        if not result.get("new_items"):
            return RunOutcome(success=True, message="No new articles", count=0)
        return RunOutcome(success=True, message=f"Pushed {count} articles", count=count)


def build_graph(runner: DigestRunner, config: AppConfig, ledger: DedupLedger):
    """Wire the run's nodes over one config snapshot and one ledger snapshot."""
    store = runner.store
    telegram = runner.telegram_for(config)

    async def fetch_sources(state: AgentState) -> Dict:
        feeds = await store.load_feeds()
        items = await runner.feed_loader(feeds, config.rss.hours)
        return {"raw_items": items, "stats": {**state["stats"], "total_fetched": len(items)}}

    async def deduplicate(state: AgentState) -> Dict:
        new_items = [i for i in state["raw_items"] if ledger.is_new(i["link"])]
        logger.info(f"{len(new_items)} new items after dedup")
        return {"new_items": new_items, "stats": {**state["stats"], "after_dedup": len(new_items)}}

    async def score(state: AgentState) -> Dict:
        kwargs = {} if runner.score_delay is None else {"delay": runner.score_delay}
        selected = await score_and_select(
            runner.invoker,
            config.resilience(),
            state["new_items"],
            top_n=config.rss.top_n,
            push_count=config.telegram.push_count,
            language=config.rss.language,
            **kwargs,
        )
        return {"selected": selected, "stats": {**state["stats"], "selected": len(selected)}}

    async def push(state: AgentState) -> Dict:
        pushed: List[Article] = []
        for idx, candidate in enumerate(state["selected"]):
            article = Article.from_candidate(candidate)
            text, markup = format_summary_message(article)
            article.summary_msg_id = await telegram.send_message(text, markup)
            if article.summary_msg_id is None and telegram.enabled:
                logger.warning(f"Summary for {article.id} was not delivered")
            ledger.mark_seen(article.link)
            pushed.append(article)
            if idx < len(state["selected"]) - 1:
                await asyncio.sleep(PUSH_DELAY_SEC)
        return {"pushed": pushed, "stats": {**state["stats"], "pushed": len(pushed)}}

    async def save_results(state: AgentState) -> Dict:
        errors = list(state["errors"])
        pushed = state["pushed"]
        checkpoints = [
            ("articles", store.save_articles(pushed)),
            ("ledger", store.save_ledger(ledger)),
            ("history", store.prepend_history(RunHistoryEntry(
                date=datetime.now(timezone.utc).date().isoformat(),
                count=len(pushed),
                articles=[
                    HistoryArticle(id=a.id, title=a.localized_title, score=a.score)
                    for a in pushed
                ],
            ))),
        ]
        for name, write in checkpoints:
            try:
                await write
            except Exception as e:
                logger.error(f"Persisting {name} failed: {e}")
                errors.append(f"persist {name}: {e}")
        logger.info(f"Run {state['run_id']} saved")
        return {"errors": errors}

    def after_dedup(state: AgentState) -> str:
        return "score" if state["new_items"] else END

    builder = StateGraph(AgentState)

    builder.add_node("fetch_sources", fetch_sources)
    builder.add_node("deduplicate", deduplicate)
    builder.add_node("score", score)
    builder.add_node("push", push)
    builder.add_node("save_results", save_results)

    builder.add_edge(START, "fetch_sources")
    builder.add_edge("fetch_sources", "deduplicate")
    builder.add_conditional_edges("deduplicate", after_dedup, ["score", END])
    builder.add_edge("score", "push")
    builder.add_edge("push", "save_results")
    builder.add_edge("save_results", END)

    return builder.compile()


async def maintenance(store: DigestStore) -> None:
    """Trim the ledger to capacity and evict aged articles. Best-effort."""
    try:
        await store.prune_ledger()
        await store.prune_articles()
    except Exception as e:
        logger.error(f"Maintenance failed: {e}")
