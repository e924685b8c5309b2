"""Resilient chat-completions invoker: timeout, retry with backoff, backup failover."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .config import LLMEndpoint, ResilienceConfig

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SEC = 1.0
TRANSLATE_MIN_TIMEOUT_MS = 120000
PING_TIMEOUT_MS = 15000
PING_PROMPT = "Hi, please respond with 'OK' to confirm the connection is working."


class ConfigurationError(Exception):
    """Required configuration is missing."""


class LLMCallError(Exception):
    """A single attempt against one endpoint failed."""


class LLMUnavailableError(Exception):
    """Every configured provider was exhausted."""


def translation_timeout_ms(base_timeout_ms: int) -> int:
    return max(base_timeout_ms * 2, TRANSLATE_MIN_TIMEOUT_MS)


class ResilientInvoker:
    """Single choke point for every language-model call.

    Pass ``client`` to share a connection pool (or a mock transport);
    otherwise a short-lived client is opened per attempt.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._sleep = sleep

    async def invoke(
        self,
        prompt: str,
        config: ResilienceConfig,
        timeout_ms: Optional[int] = None,
    ) -> str:
        timeout = (timeout_ms or config.timeout_ms) / 1000
        attempts = config.max_retries + 1

        if config.primary.api_key:
            result = await self._try_endpoint("primary", config.primary, prompt, timeout, attempts)
            if result is not None:
                return result
        else:
            logger.warning("Primary LLM has no API key configured, skipping")

        if config.use_backup_on_fail and config.backup and config.backup.api_key:
            logger.info("Switching to backup LLM")
            result = await self._try_endpoint("backup", config.backup, prompt, timeout, attempts)
            if result is not None:
                return result

        raise LLMUnavailableError("All LLM providers failed")

    async def ping(self, endpoint: LLMEndpoint, timeout_ms: int = PING_TIMEOUT_MS) -> str:
        """Single attempt against one endpoint: no retry, no failover.

        Used by connectivity checks. Raises LLMCallError on any failure.
        """
        try:
            return await self._call_once(endpoint, PING_PROMPT, timeout_ms / 1000)
        except httpx.HTTPError as e:
            raise LLMCallError(f"{type(e).__name__}: {e}") from e

    async def _try_endpoint(
        self,
        label: str,
        endpoint: LLMEndpoint,
        prompt: str,
        timeout: float,
        attempts: int,
    ) -> Optional[str]:
        for attempt in range(1, attempts + 1):
            logger.info(f"Calling {label} LLM {endpoint.model} (attempt {attempt}/{attempts})")
            try:
                content = await self._call_once(endpoint, prompt, timeout)
                logger.info(f"{label.capitalize()} LLM succeeded on attempt {attempt}")
                return content
            except (LLMCallError, httpx.HTTPError) as e:
                logger.error(
                    f"{label.capitalize()} LLM failed ({attempt}/{attempts}): "
                    f"{type(e).__name__}: {e}"
                )
            if attempt < attempts:
                await self._sleep(RETRY_BASE_DELAY_SEC * attempt)
        return None

    async def _call_once(self, endpoint: LLMEndpoint, prompt: str, timeout: float) -> str:
        url = f"{endpoint.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {endpoint.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": endpoint.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.7,
        }
        if self._client is not None:
            resp = await self._client.post(url, headers=headers, json=payload, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(url, headers=headers, json=payload)

        if resp.status_code != 200:
            raise LLMCallError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMCallError(f"Malformed response body: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise LLMCallError("Empty response content")
        return content
