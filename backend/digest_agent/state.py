import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional, TypedDict

from pydantic import BaseModel, Field, field_validator


class RawItem(TypedDict):
    title: str
    link: str
    content: str              # Plain text, bounded length
    published_at: datetime    # Timezone-aware UTC
    source: str


class ScoreResult(BaseModel):
    score: int = Field(ge=1, le=10)
    category: str = "other"
    localized_title: str
    summary: str
    keywords: List[str] = Field(default_factory=list)
    reason: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _round_score(cls, value):
        if isinstance(value, float):
            return round(value)
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value):
        return str(value or "other").strip().lower()


class Candidate(TypedDict):
    item: RawItem
    result: ScoreResult


def new_article_id() -> str:
    return uuid.uuid4().hex[:8]


class Article(BaseModel):
    id: str = Field(default_factory=new_article_id)
    title: str
    localized_title: str
    link: str
    content: str
    summary: str
    category: str
    score: int
    keywords: List[str] = Field(default_factory=list)
    reason: str = ""
    summary_msg_id: Optional[int] = None
    full_text_msg_id: Optional[int] = None
    translated_content: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "Article":
        item, result = candidate["item"], candidate["result"]
        return cls(
            title=item["title"],
            localized_title=result.localized_title,
            link=item["link"],
            content=item["content"],
            summary=result.summary,
            category=result.category,
            score=result.score,
            keywords=result.keywords,
            reason=result.reason,
        )


class HistoryArticle(BaseModel):
    id: str
    title: str
    score: int


class RunHistoryEntry(BaseModel):
    date: str
    count: int
    articles: List[HistoryArticle] = Field(default_factory=list)


class RunOutcome(BaseModel):
    success: bool
    message: str
    count: int = 0
    status: str = "completed"   # completed/failed/already_running


class AgentState(TypedDict):
    run_id: str
    raw_items: List[RawItem]        # From feed fetchers
    new_items: List[RawItem]        # After ledger filter
    selected: List[Candidate]       # Scored, admitted, ranked, truncated
    pushed: List[Article]           # Sent to the channel this run
    stats: Dict
    errors: List[str]
