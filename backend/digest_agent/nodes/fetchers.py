"""Async feed fetchers: concurrent RSS/Atom ingestion with recency filtering."""
import asyncio
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

import aiohttp
import feedparser
from bs4 import BeautifulSoup

from ..config import FeedSource
from ..state import RawItem

logger = logging.getLogger(__name__)

USER_AGENT = "AI-Daily-Digest/1.0"
FETCH_TIMEOUT_SEC = 20
MAX_CONTENT_CHARS = 5000
MAX_TITLE_CHARS = 300

# First present wins
_DATE_FIELDS = ("published_parsed", "updated_parsed", "created_parsed")

FeedFetcher = Callable[[aiohttp.ClientSession, FeedSource], Awaitable[List[RawItem]]]


def _clean_html(raw: str) -> str:
    if not raw:
        return ""
    try:
        soup = BeautifulSoup(raw, "html.parser")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = soup.get_text(separator=" ")
    except Exception:
        text = raw
    return " ".join(text.split())


def _entry_published(entry) -> Optional[datetime]:
    for field in _DATE_FIELDS:
        parsed = entry.get(field)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return None


def _entry_content(entry) -> str:
    contents = entry.get("content") or []
    if contents and contents[0].get("value"):
        return contents[0]["value"]
    return entry.get("summary", entry.get("description", ""))


def parse_feed(payload: str, source: str) -> List[RawItem]:
    """Parse an RSS/Atom document into RawItems.

    Entries without title or link are dropped. So are entries with no
    usable publish date, since they can never pass the recency window.
    """
    feed = feedparser.parse(payload)
    items: List[RawItem] = []
    for entry in feed.entries:
        title = _clean_html(entry.get("title", ""))[:MAX_TITLE_CHARS]
        link = (entry.get("link") or "").strip()
        if not title or not link:
            continue
        published = _entry_published(entry)
        if published is None:
            logger.debug(f"[{source}] no publish date, skipping: {title[:60]}")
            continue
        items.append(
            {
                "title": title,
                "link": link,
                "content": _clean_html(_entry_content(entry))[:MAX_CONTENT_CHARS],
                "published_at": published,
                "source": source,
            }
        )
    return items


async def fetch_feed(session: aiohttp.ClientSession, feed: FeedSource) -> List[RawItem]:
    try:
        async with session.get(
            feed.url, timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT_SEC)
        ) as resp:
            if resp.status != 200:
                logger.warning(f"RSS fetch failed for {feed.source}: HTTP {resp.status}")
                return []
            text = await resp.text(errors="replace")
        return parse_feed(text, feed.source)
    except Exception as e:
        logger.warning(f"RSS fetch failed for {feed.source} ({feed.url}): {e}")
        return []


async def fetch_all_feeds(
    feeds: Sequence[FeedSource],
    hours: int,
    fetcher: FeedFetcher = fetch_feed,
    now: Optional[datetime] = None,
) -> List[RawItem]:
    """Fetch every enabled feed in parallel; keep items newer than the window, newest first."""
    enabled = [f for f in feeds if f.enabled]
    if not enabled:
        logger.warning("No enabled feeds configured")
        return []

    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
    }
    connector = aiohttp.TCPConnector(limit=20)
    async with aiohttp.ClientSession(headers=headers, connector=connector) as session:
        results = await asyncio.gather(
            *[fetcher(session, f) for f in enabled], return_exceptions=True
        )

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
    items: List[RawItem] = []
    for feed, result in zip(enabled, results):
        if isinstance(result, Exception):
            logger.warning(f"Source {feed.source} error: {result}")
            continue
        items.extend(i for i in result if i["published_at"] > cutoff)

    items.sort(key=lambda i: i["published_at"], reverse=True)
    logger.info(f"Fetched {len(items)} items from {len(enabled)} feeds (last {hours}h)")
    return items
