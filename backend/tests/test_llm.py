"""Tests for the resilient LLM invoker."""
import asyncio

import httpx
import pytest

from conftest import chat_response
from digest_agent.config import LLMEndpoint, ResilienceConfig
from digest_agent.llm import (
    PING_TIMEOUT_MS,
    LLMCallError,
    LLMUnavailableError,
    ResilientInvoker,
    translation_timeout_ms,
)

PRIMARY = LLMEndpoint(base_url="https://primary.test/v1", api_key="sk-p", model="p")
BACKUP = LLMEndpoint(base_url="https://backup.test/v1", api_key="sk-b", model="b")


def _config(backup=BACKUP, max_retries=2, use_backup=True, timeout_ms=5000):
    return ResilienceConfig(
        primary=PRIMARY,
        backup=backup,
        timeout_ms=timeout_ms,
        max_retries=max_retries,
        use_backup_on_fail=use_backup,
    )


class _Recorder:
    def __init__(self, behaviour):
        self.hosts = []
        self.timeouts = []
        self.sleeps = []
        self.behaviour = behaviour

    def handler(self, request):
        self.hosts.append(request.url.host)
        self.timeouts.append(request.extensions.get("timeout", {}).get("read"))
        return self.behaviour(request, len(self.hosts))

    async def sleep(self, seconds):
        self.sleeps.append(seconds)

    def invoker(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return ResilientInvoker(client=client, sleep=self.sleep)


class TestPrimaryPath:
    def test_first_attempt_success(self):
        rec = _Recorder(lambda req, n: chat_response("hello"))
        result = asyncio.run(rec.invoker().invoke("hi", _config()))
        assert result == "hello"
        assert rec.hosts == ["primary.test"]
        assert rec.sleeps == []

    def test_empty_content_is_retried(self):
        rec = _Recorder(lambda req, n: chat_response("" if n == 1 else "second"))
        result = asyncio.run(rec.invoker().invoke("hi", _config()))
        assert result == "second"
        assert rec.hosts == ["primary.test", "primary.test"]
        assert rec.sleeps == [1.0]

    def test_malformed_body_is_a_failure(self):
        def behaviour(req, n):
            if n == 1:
                return httpx.Response(200, json={"unexpected": True})
            return chat_response("ok")

        rec = _Recorder(behaviour)
        assert asyncio.run(rec.invoker().invoke("hi", _config())) == "ok"

    def test_transport_timeout_is_a_failure(self):
        def behaviour(req, n):
            if n == 1:
                raise httpx.ReadTimeout("timed out", request=req)
            return chat_response("ok")

        rec = _Recorder(behaviour)
        assert asyncio.run(rec.invoker().invoke("hi", _config())) == "ok"


class TestFailover:
    def test_backup_used_after_primary_exhausted(self):
        def behaviour(req, n):
            if req.url.host == "primary.test":
                return httpx.Response(500, text="down")
            return chat_response("from backup")

        rec = _Recorder(behaviour)
        result = asyncio.run(rec.invoker().invoke("hi", _config(max_retries=2)))
        assert result == "from backup"
        assert rec.hosts.count("primary.test") == 3
        assert rec.hosts.count("backup.test") == 1
        # Increasing backoff, none after the final primary attempt
        assert rec.sleeps == [1.0, 2.0]

    def test_all_providers_exhausted(self):
        rec = _Recorder(lambda req, n: httpx.Response(503))
        with pytest.raises(LLMUnavailableError, match="All LLM providers failed"):
            asyncio.run(rec.invoker().invoke("hi", _config(max_retries=1)))
        assert rec.hosts == ["primary.test"] * 2 + ["backup.test"] * 2
        assert rec.sleeps == [1.0, 1.0]

    def test_no_backup_configured(self):
        rec = _Recorder(lambda req, n: httpx.Response(500))
        with pytest.raises(LLMUnavailableError):
            asyncio.run(rec.invoker().invoke("hi", _config(backup=None, max_retries=2)))
        assert rec.hosts == ["primary.test"] * 3

    def test_backup_disabled_by_setting(self):
        rec = _Recorder(lambda req, n: httpx.Response(500))
        with pytest.raises(LLMUnavailableError):
            asyncio.run(rec.invoker().invoke("hi", _config(use_backup=False, max_retries=0)))
        assert rec.hosts == ["primary.test"]

    def test_missing_primary_key_goes_straight_to_backup(self):
        rec = _Recorder(lambda req, n: chat_response("b"))
        cfg = _config()
        cfg = cfg.model_copy(update={"primary": LLMEndpoint(base_url="https://primary.test/v1")})
        assert asyncio.run(rec.invoker().invoke("hi", cfg)) == "b"
        assert rec.hosts == ["backup.test"]


class TestTimeouts:
    def test_override_applies_without_mutating_config(self):
        rec = _Recorder(lambda req, n: chat_response("ok"))
        cfg = _config(timeout_ms=5000)
        asyncio.run(rec.invoker().invoke("hi", cfg, timeout_ms=240000))
        assert rec.timeouts == [240.0]
        assert cfg.timeout_ms == 5000

    def test_translation_timeout_floor(self):
        assert translation_timeout_ms(30000) == 120000
        assert translation_timeout_ms(90000) == 180000


class TestPing:
    def test_single_attempt_with_short_timeout(self):
        rec = _Recorder(lambda req, n: chat_response("OK"))
        assert asyncio.run(rec.invoker().ping(PRIMARY)) == "OK"
        assert rec.hosts == ["primary.test"]
        assert rec.timeouts == [PING_TIMEOUT_MS / 1000]

    def test_failure_is_not_retried(self):
        rec = _Recorder(lambda req, n: httpx.Response(401, text="bad key"))
        with pytest.raises(LLMCallError, match="HTTP 401"):
            asyncio.run(rec.invoker().ping(BACKUP))
        assert rec.hosts == ["backup.test"]
        assert rec.sleeps == []

    def test_transport_error_becomes_call_error(self):
        def behaviour(req, n):
            raise httpx.ConnectError("refused", request=req)

        rec = _Recorder(behaviour)
        with pytest.raises(LLMCallError, match="ConnectError"):
            asyncio.run(rec.invoker().ping(PRIMARY))
