"""Shared fakes: in-memory Mongo, and one httpx transport for LLM + Telegram traffic."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from digest_agent import main as main_mod
from digest_agent import telegram_handler
from digest_agent.database import DigestStore

_ENV_KEYS = [
    "LLM_BASE_URL", "LLM_API_KEY", "LLM_MODEL",
    "LLM_BACKUP_BASE_URL", "LLM_BACKUP_API_KEY", "LLM_BACKUP_MODEL",
    "LLM_TIMEOUT_MS", "LLM_MAX_RETRIES", "LLM_USE_BACKUP_ON_FAIL",
    "RSS_HOURS", "RSS_TOP_N", "DIGEST_LANGUAGE",
    "TELEGRAM_ENABLED", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "TELEGRAM_PUSH_COUNT",
    "SCHEDULE_ENABLED", "SCHEDULE_CRON", "SCHEDULE_TIMEZONE",
]

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

BASE_PATCH = {
    "llm": {"base_url": "https://primary.test/v1", "api_key": "sk-primary-0000", "model": "main"},
    "llm_settings": {"max_retries": 0},
    "telegram": {"enabled": True, "bot_token": "123:abc", "chat_id": "-100555", "push_count": 10},
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(telegram_handler, "SEGMENT_DELAY_SEC", 0)
    monkeypatch.setattr(main_mod, "PUSH_DELAY_SEC", 0)


@pytest.fixture
def store():
    return DigestStore(AsyncMongoMockClient()["digest_test"])


def chat_response(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def score_json(score, title="本地标题", category="ai"):
    return json.dumps({
        "score": score,
        "category": category,
        "localized_title": title,
        "summary": "摘要内容。",
        "keywords": ["llm", "python"],
        "reason": "值得一读。",
    })


def make_item(title, hours_ago=1, source="Feed", link=None, content="Body text."):
    return {
        "title": title,
        "link": link or f"https://example.com/{title.replace(' ', '-').lower()}",
        "content": content,
        "published_at": NOW - timedelta(hours=hours_ago),
        "source": source,
    }


class FakeApis:
    """Records every outbound call; LLM answers come from ``llm_responder``."""

    def __init__(self, llm_responder=None):
        self.telegram_calls = []
        self.llm_calls = []
        self.llm_responder = llm_responder or (lambda request, payload: chat_response(score_json(8)))
        self.chat = {"id": -100555, "type": "supergroup"}
        self.webhook_info = {"url": "", "pending_update_count": 0}
        self.rejected = {}
        self._next_msg_id = 100

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content or b"{}")
        if request.url.host == "api.telegram.org":
            method = request.url.path.rsplit("/", 1)[-1]
            self.telegram_calls.append((method, payload))
            if method in self.rejected:
                return httpx.Response(400, json={"ok": False, "description": self.rejected[method]})
            if method == "sendMessage":
                self._next_msg_id += 1
                return httpx.Response(200, json={"ok": True, "result": {"message_id": self._next_msg_id}})
            if method == "getChat":
                return httpx.Response(200, json={"ok": True, "result": self.chat})
            if method == "getWebhookInfo":
                return httpx.Response(200, json={"ok": True, "result": self.webhook_info})
            return httpx.Response(200, json={"ok": True, "result": True})
        self.llm_calls.append((request.url.host, payload))
        return self.llm_responder(request, payload)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, method):
        return [p for m, p in self.telegram_calls if m == method]


@pytest.fixture
def apis():
    return FakeApis()


async def no_sleep(_seconds):
    return None
