"""FastAPI server for the AI Daily Digest agent."""
import hmac
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from fastapi import APIRouter, BackgroundTasks, FastAPI, Header, HTTPException, Request
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

from digest_agent.callbacks import (  # noqa: E402
    CallbackHandler,
    TranslationFailed,
    TranslationInProgress,
    Translator,
)
from digest_agent.config import FeedSource, mask_config  # noqa: E402
from digest_agent.database import DigestStore, close_db  # noqa: E402
from digest_agent.llm import LLMCallError  # noqa: E402
from digest_agent.main import DigestRunner, maintenance  # noqa: E402
from digest_agent.nodes.digest import format_test_message  # noqa: E402
from digest_agent.scheduler import Scheduler  # noqa: E402
from digest_agent.telegram_handler import TelegramClient  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="AI Daily Digest API")
api_router = APIRouter(prefix="/api")

BACKEND_URL = os.environ.get("BACKEND_URL", "")
AGENT_SECRET_KEY = os.environ.get("AGENT_SECRET_KEY", "")

_store = None
_runner = None
_scheduler = None


def get_store() -> DigestStore:
    global _store
    if _store is None:
        _store = DigestStore()
    return _store


def get_runner() -> DigestRunner:
    global _runner
    if _runner is None:
        _runner = DigestRunner(get_store())
    return _runner


def _require_admin(authorization: str) -> None:
    if not AGENT_SECRET_KEY:
        return
    expected = f"Bearer {AGENT_SECRET_KEY}"
    if not hmac.compare_digest((authorization or "").encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def startup():
    global _scheduler
    store = get_store()
    await maintenance(store)

    config = await store.load_config()
    _scheduler = Scheduler(
        config.schedule,
        trigger=get_runner().run,
        maintenance=lambda: maintenance(store),
    )
    _scheduler.reload(config.schedule)
    _scheduler.start()

    if config.telegram.bot_token and BACKEND_URL:
        telegram = get_runner().telegram_for(config)
        await telegram.setup_webhook(f"{BACKEND_URL.rstrip('/')}/api/telegram/webhook")


@app.on_event("shutdown")
async def shutdown():
    if _scheduler is not None:
        await _scheduler.stop()
    close_db()


# ---------------------------------------------------------------------------
# Digest trigger
# ---------------------------------------------------------------------------
@api_router.post("/agent/trigger")
async def trigger_agent(authorization: str = Header(default=None)):
    """Run one digest now. A concurrent call returns status=already_running."""
    _require_admin(authorization)
    logger.info("Manual digest run triggered")
    outcome = await get_runner().run()
    return outcome.model_dump()


# ---------------------------------------------------------------------------
# Telegram webhook
# ---------------------------------------------------------------------------
@api_router.post("/telegram/webhook")
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
    """Handle inline-button callbacks (read_<id>, back_<msgId>)."""
    try:
        data = await request.json()
    except Exception:
        return {"ok": True}

    callback_query = data.get("callback_query") if isinstance(data, dict) else None
    if not callback_query:
        return {"ok": True}

    runner = get_runner()
    config = await runner.store.load_config()
    handler = CallbackHandler(runner.store, runner.invoker, runner.telegram_for(config), config)
    background_tasks.add_task(handler.handle, callback_query)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Connectivity checks
# ---------------------------------------------------------------------------
@api_router.post("/llm/test")
async def check_llm_connection(authorization: str = Header(default=None)):
    """One attempt per configured endpoint, no retries, so the result reflects each provider."""
    _require_admin(authorization)
    runner = get_runner()
    config = await runner.store.load_config()

    success, message = False, "Primary LLM has no API key configured"
    if config.llm.api_key:
        try:
            await runner.invoker.ping(config.llm)
            success, message = True, f"Primary LLM {config.llm.model} responded"
        except LLMCallError as e:
            message = f"Primary LLM failed: {e}"
    logger.info(f"LLM connectivity check: {message}")

    result = {
        "success": success,
        "message": message,
        "backup_tested": False,
        "backup_success": False,
        "backup_error": None,
    }
    if config.llm_backup.api_key:
        result["backup_tested"] = True
        try:
            await runner.invoker.ping(config.llm_backup)
            result["backup_success"] = True
        except LLMCallError as e:
            result["backup_error"] = str(e)
    return result


def _telegram_client(config) -> TelegramClient:
    # Checks run even while scheduled pushes are switched off
    settings = config.telegram.model_copy(update={"enabled": True})
    return TelegramClient(settings, client=get_runner().http_client)


@api_router.post("/telegram/test")
async def send_telegram_test(authorization: str = Header(default=None)):
    _require_admin(authorization)
    config = await get_store().load_config()
    if not config.telegram.bot_token or not config.telegram.chat_id:
        return {"success": False, "message": "Configure the bot token and chat id first"}

    telegram = _telegram_client(config)
    sent_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    msg_id = await telegram.send_message(format_test_message(sent_at))
    if msg_id is None:
        return {"success": False, "message": f"Telegram rejected the message: {telegram.last_error}"}
    return {"success": True, "message": "Test message sent", "message_id": msg_id}


@api_router.get("/telegram/webhook")
async def get_telegram_webhook(authorization: str = Header(default=None)):
    _require_admin(authorization)
    config = await get_store().load_config()
    if not config.telegram.bot_token:
        return {"success": False, "message": "Configure the bot token first"}

    telegram = _telegram_client(config)
    info = await telegram.get_webhook_info()
    if info is None:
        return {"success": False, "message": telegram.last_error}
    return {
        "success": True,
        "url": info.get("url", ""),
        "pending_update_count": info.get("pending_update_count", 0),
        "last_error_message": info.get("last_error_message"),
    }


@api_router.delete("/telegram/webhook")
async def delete_telegram_webhook(authorization: str = Header(default=None)):
    _require_admin(authorization)
    config = await get_store().load_config()
    if not config.telegram.bot_token:
        return {"success": False, "message": "Configure the bot token first"}

    telegram = _telegram_client(config)
    if not await telegram.delete_webhook():
        return {"success": False, "message": telegram.last_error}
    return {"success": True, "message": "Webhook removed"}


# ---------------------------------------------------------------------------
# Status, history, articles
# ---------------------------------------------------------------------------
@api_router.get("/agent/status")
async def get_agent_status():
    config = await get_store().load_config()
    return {
        "configured": bool(config.llm.api_key),
        "telegram_enabled": config.telegram.enabled,
        "schedule_enabled": config.schedule.enabled,
        "running": get_runner().is_running,
    }


@api_router.get("/agent/history")
async def get_digest_history():
    history = await get_store().load_history()
    return {"history": [h.model_dump() for h in history], "count": len(history)}


@api_router.get("/article/{article_id}")
async def get_article(article_id: str):
    article = await get_store().get_article(article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Not found")
    return article.model_dump()


@api_router.post("/translate/{article_id}")
async def translate_article(article_id: str, authorization: str = Header(default=None)):
    _require_admin(authorization)
    runner = get_runner()
    article = await runner.store.get_article(article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Not found")
    config = await runner.store.load_config()
    try:
        article = await Translator(runner.store, runner.invoker).translate(article, config)
    except TranslationInProgress:
        raise HTTPException(status_code=409, detail="Translation already in progress")
    except TranslationFailed as e:
        raise HTTPException(status_code=502, detail=f"Translation failed: {e}")
    return {"content": article.translated_content}


# ---------------------------------------------------------------------------
# Config & feeds
# ---------------------------------------------------------------------------
@api_router.get("/config")
async def get_config(authorization: str = Header(default=None)):
    _require_admin(authorization)
    return mask_config(await get_store().load_config())


@api_router.post("/config")
async def update_config(patch: Dict, authorization: str = Header(default=None)):
    _require_admin(authorization)
    try:
        config = await get_store().update_config(patch)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if _scheduler is not None:
        _scheduler.reload(config.schedule)
    return {"success": True, "config": mask_config(config)}


@api_router.get("/feeds")
async def get_feeds(authorization: str = Header(default=None)):
    _require_admin(authorization)
    feeds = await get_store().load_feeds()
    return {"feeds": [f.model_dump() for f in feeds], "count": len(feeds)}


@api_router.put("/feeds")
async def replace_feeds(feeds: List[FeedSource], authorization: str = Header(default=None)):
    _require_admin(authorization)
    await get_store().save_feeds(feeds)
    logger.info(f"Feed list replaced ({len(feeds)} feeds)")
    return {"success": True, "count": len(feeds)}


@api_router.get("/")
async def root():
    return {
        "service": "AI Daily Digest",
        "status": "running",
        "endpoints": [
            "POST /api/agent/trigger",
            "GET /api/agent/status",
            "GET /api/agent/history",
            "GET /api/article/{id}",
            "POST /api/translate/{id}",
            "GET|POST /api/config",
            "GET|PUT /api/feeds",
            "POST /api/llm/test",
            "POST /api/telegram/test",
            "GET|DELETE /api/telegram/webhook",
            "POST /api/telegram/webhook",
        ],
    }


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
