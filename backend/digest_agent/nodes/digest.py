"""Render articles into Telegram summary cards and paginated full-text messages."""
import html
import re
from typing import Dict, List, Optional, Tuple

from ..state import Article

MAX_MESSAGE_CHARS = 4000
MAX_SEGMENT_CHARS = 3800
MAX_TITLE_CHARS = 300
MAX_KEYWORDS = 10
MAX_KEYWORD_CHARS = 40
PART_MARKER_RESERVE = 40
MIN_FIRST_SEGMENT_CHARS = 200

CATEGORY_LABEL = {
    "engineering": "⚙️ Engineering",
    "ai": "🤖 AI",
    "tools": "🛠️ Tools",
    "other": "📰 News",
}
BANNER = "━━━━━━━━━━━━━━━━━━━━"

# A sentence ends at CJK full-width punctuation, or ASCII punctuation followed by whitespace
_SENTENCE_END = re.compile(r"[。！？]|[.!?](?=\s)")

InlineMarkup = Dict[str, List[List[Dict[str, str]]]]


def _esc(text: str) -> str:
    return html.escape(text or "", quote=False)


def score_stars(score: int) -> str:
    filled = max(0, min(5, int(score / 2 + 0.5)))
    return "★" * filled + "☆" * (5 - filled)


def _keyword_line(keywords: List[str]) -> str:
    shown = [k[:MAX_KEYWORD_CHARS] for k in (keywords or [])[:MAX_KEYWORDS]]
    return f"🏷️ <code>{_esc(' · '.join(shown))}</code>"


def format_summary_message(article: Article) -> Tuple[str, InlineMarkup]:
    label = CATEGORY_LABEL.get(article.category, CATEGORY_LABEL["other"])
    text = (
        f"┏{BANNER}┓\n"
        f"┃ {label}  {score_stars(article.score)} <b>{article.score}</b>/10\n"
        f"┗{BANNER}┛\n\n"
        f"<b>📌 {_esc(article.localized_title)}</b>\n"
        f"<i>{_esc(article.title)}</i>\n\n"
        f"━━━ 📝 Summary ━━━\n"
        f"{_esc(article.summary)}\n\n"
        f"━━━ 💡 Why read it ━━━\n"
        f"{_esc(article.reason)}\n\n"
        f"{_keyword_line(article.keywords)}"
    )
    markup = {
        "inline_keyboard": [
            [{"text": "📖 Read full text", "callback_data": f"read_{article.id}"}],
            [{"text": "🔗 Original link", "url": article.link}],
        ]
    }
    return text, markup


def format_loading_message(article: Article) -> str:
    return (
        f"┏{BANNER}┓\n"
        f"┃ 📖 <b>Full translation</b>\n"
        f"┗{BANNER}┛\n\n"
        f"<b>{_esc(article.localized_title)}</b>\n\n"
        f"⏳ <i>Translating, please wait...</i>"
    )


def format_translation_error(article: Article, reason: str) -> str:
    return (
        f"❌ <b>Translation failed</b>\n\n"
        f"{_esc(article.localized_title)}\n\n"
        f"Reason: {_esc(reason)}\n\n"
        f"Please retry later or check the LLM configuration."
    )


def format_test_message(now_text: str) -> str:
    return (
        f"✅ <b>AI Daily Digest</b>\n\n"
        f"Telegram push is configured correctly.\n"
        f"<i>Sent at {_esc(now_text)}</i>"
    )


def normalize_body(content: str) -> str:
    """Trim each paragraph and join them with exactly one blank line."""
    paragraphs = (p.strip() for p in (content or "").split("\n\n"))
    return "\n\n".join(p for p in paragraphs if p)


def find_split_point(text: str, limit: int) -> int:
    """Where to cut ``text`` so the first piece is at most ``limit`` chars.

    Tries paragraph break, then sentence end, then whitespace; a candidate
    in the first half of the window is too early and falls through. The
    separator stays with the left piece, so pieces concatenate losslessly.
    """
    if len(text) <= limit:
        return len(text)
    window = text[:limit]
    half = limit / 2

    para = window.rfind("\n\n")
    if para != -1 and para + 2 >= half:
        return para + 2

    sentence_ends = [m.end() for m in _SENTENCE_END.finditer(window)]
    if sentence_ends and sentence_ends[-1] >= half:
        return sentence_ends[-1]

    space = max(window.rfind(" "), window.rfind("\n"))
    if space != -1 and space + 1 >= half:
        return space + 1

    # Hard cut, stepping back off a half-emitted HTML entity
    amp = text.rfind("&", max(0, limit - 6), limit)
    if amp > 0 and text.find(";", amp, limit) == -1:
        return amp
    return limit


def split_long_text(
    text: str, limit: int = MAX_SEGMENT_CHARS, first_limit: Optional[int] = None
) -> List[str]:
    """Split losslessly; ``first_limit`` leaves room for a header on the first piece."""
    parts = []
    remaining = text
    budget = first_limit or limit
    while len(remaining) > budget:
        cut = find_split_point(remaining, budget)
        parts.append(remaining[:cut])
        remaining = remaining[cut:]
        budget = limit
    if remaining or not parts:
        parts.append(remaining)
    return parts


def _full_text_markup(article: Article) -> InlineMarkup:
    keyboard = []
    if article.summary_msg_id:
        keyboard.append(
            [{"text": "↩️ Back to summary", "callback_data": f"back_{article.summary_msg_id}"}]
        )
    keyboard.append([{"text": "🔗 Original link", "url": article.link}])
    return {"inline_keyboard": keyboard}


def full_text_body(article: Article) -> str:
    return _esc(normalize_body(article.translated_content or ""))


def format_full_text_messages(article: Article) -> Tuple[List[str], Optional[InlineMarkup]]:
    """Return message texts plus the markup that belongs on the last one only."""
    header = (
        f"┏{BANNER}┓\n"
        f"┃ 📖 <b>Full translation</b>\n"
        f"┗{BANNER}┛\n\n"
        f"<b>{_esc(article.localized_title[:MAX_TITLE_CHARS])}</b>\n\n"
        f"{BANNER}"
    )
    footer = f"{BANNER}\n{_keyword_line(article.keywords)}"
    body = full_text_body(article)
    markup = _full_text_markup(article)

    single = f"{header}\n\n{body}\n\n{footer}"
    if len(single) <= MAX_MESSAGE_CHARS:
        return [single], markup

    # Every page must fit one message: the first carries the header, the
    # last the footer, the rest a part marker
    limit = min(MAX_SEGMENT_CHARS, MAX_MESSAGE_CHARS - max(len(footer), PART_MARKER_RESERVE) - 2)
    first_limit = max(limit - len(header) - 2, MIN_FIRST_SEGMENT_CHARS)
    parts = split_long_text(body, limit, first_limit=first_limit)
    total = len(parts)
    texts = []
    for idx, part in enumerate(parts, 1):
        chunk = part.strip()
        if idx == 1:
            chunk = f"{header}\n\n{chunk}"
        if idx < total:
            chunk = f"{chunk}\n\n<i>📄 Part {idx}/{total}</i>"
        else:
            chunk = f"{chunk}\n\n{footer}"
        texts.append(chunk)
    return texts, markup
