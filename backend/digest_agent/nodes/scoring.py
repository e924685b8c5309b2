"""LLM scoring of raw items, threshold admission, and ranking."""
import asyncio
import json
import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from ..config import ResilienceConfig
from ..llm import LLMUnavailableError, ResilientInvoker
from ..state import Candidate, RawItem, ScoreResult

logger = logging.getLogger(__name__)

MIN_SCORE = 6
SCORE_CAP_MULTIPLIER = 2
SCORE_EXCERPT_CHARS = 3000
INTER_ITEM_DELAY_SEC = 0.5

LANGUAGE_NAMES = {
    "zh": "Simplified Chinese",
    "en": "English",
    "ja": "Japanese",
    "ko": "Korean",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
}

SCORING_PROMPT = """\
Analyze the following technical article and return JSON.

Title: {title}
Source: {source}
Content: {content}

Return ONLY valid JSON (no prose, no markdown, no code fences):
{{
  "score": <integer 1-10, how worth reading this is>,
  "category": "engineering|ai|tools|other",
  "localized_title": "<title translated into {language}>",
  "summary": "<4-6 sentence summary in {language}>",
  "keywords": ["<keyword>", "<keyword>", "<keyword>"],
  "reason": "<one sentence in {language} on why it is worth reading>"
}}"""


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def build_scoring_prompt(item: RawItem, language: str) -> str:
    return SCORING_PROMPT.format(
        title=item["title"],
        source=item["source"],
        content=item["content"][:SCORE_EXCERPT_CHARS],
        language=language_name(language),
    )


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} substring, honouring JSON string escapes."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_score_result(text: str) -> Optional[ScoreResult]:
    block = extract_json_object(text or "")
    if block is None:
        return None
    try:
        return ScoreResult.model_validate(json.loads(block))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Score JSON rejected: {e}")
        return None


async def score_item(
    invoker: ResilientInvoker, config: ResilienceConfig, item: RawItem, language: str
) -> Optional[ScoreResult]:
    try:
        response = await invoker.invoke(build_scoring_prompt(item, language), config)
    except LLMUnavailableError as e:
        logger.error(f"AI scoring error for '{item['title'][:60]}': {e}")
        return None
    result = parse_score_result(response)
    if result is None:
        logger.warning(f"Could not parse LLM JSON for: {item['title'][:60]}")
    return result


def select_candidates(candidates: Sequence[Candidate], push_count: int) -> List[Candidate]:
    """Admit score >= MIN_SCORE, rank by score (stable), keep the top push_count."""
    admitted = [c for c in candidates if c["result"].score >= MIN_SCORE]
    admitted.sort(key=lambda c: c["result"].score, reverse=True)
    return admitted[:push_count]


async def score_and_select(
    invoker: ResilientInvoker,
    config: ResilienceConfig,
    items: Sequence[RawItem],
    top_n: int,
    push_count: int,
    language: str,
    delay: float = INTER_ITEM_DELAY_SEC,
) -> List[Candidate]:
    """Score items one at a time, then select. Sequential on purpose: provider rate limits."""
    to_process = list(items[: top_n * SCORE_CAP_MULTIPLIER])
    logger.info(f"AI scoring {len(to_process)} of {len(items)} new items")

    scored: List[Candidate] = []
    for idx, item in enumerate(to_process, 1):
        logger.info(f"[{idx}/{len(to_process)}] {item['title'][:50]}")
        result = await score_item(invoker, config, item, language)
        if result is None:
            logger.info("   scoring failed")
        elif result.score >= MIN_SCORE:
            logger.info(f"   score {result.score}")
            scored.append({"item": item, "result": result})
        else:
            logger.info(f"   score {result.score} (skipped)")
        if delay and idx < len(to_process):
            await asyncio.sleep(delay)

    selected = select_candidates(scored, push_count)
    logger.info(f"Selected {len(selected)} of {len(scored)} admitted candidates")
    return selected
