"""Typed runtime configuration with env defaults and partial-patch merging."""
import logging
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

SECRET_MASK = "***"
_SECRET_FIELDS = {"api_key", "bot_token"}
HINT_SUFFIX = "_hint"
_HINT_FIELDS = {f"{name}{HINT_SUFFIX}" for name in _SECRET_FIELDS}


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LLMEndpoint(_Section):
    base_url: str = ""
    api_key: str = ""
    model: str = ""


class LLMSettings(_Section):
    timeout_ms: int = Field(default=120000, ge=1000)
    max_retries: int = Field(default=2, ge=0, le=10)
    use_backup_on_fail: bool = True


class RSSSettings(_Section):
    hours: int = Field(default=48, ge=1)
    top_n: int = Field(default=15, ge=1)
    language: str = "zh"


class TelegramSettings(_Section):
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    push_count: int = Field(default=10, ge=1)


class ScheduleSettings(_Section):
    enabled: bool = False
    cron: str = "0 8 * * *"
    timezone: str = "UTC"


class ResilienceConfig(_Section):
    """Everything the LLM invoker needs for one call. Never mutated in place."""

    primary: LLMEndpoint
    backup: Optional[LLMEndpoint] = None
    timeout_ms: int
    max_retries: int
    use_backup_on_fail: bool


class AppConfig(_Section):
    llm: LLMEndpoint = Field(default_factory=lambda: LLMEndpoint(
        base_url="https://api.openai.com/v1", model="gpt-4o"))
    llm_backup: LLMEndpoint = Field(default_factory=LLMEndpoint)
    llm_settings: LLMSettings = Field(default_factory=LLMSettings)
    rss: RSSSettings = Field(default_factory=RSSSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)

    def resilience(self) -> ResilienceConfig:
        backup = self.llm_backup if self.llm_backup.api_key else None
        return ResilienceConfig(
            primary=self.llm,
            backup=backup,
            timeout_ms=self.llm_settings.timeout_ms,
            max_retries=self.llm_settings.max_retries,
            use_backup_on_fail=self.llm_settings.use_backup_on_fail,
        )


class FeedSource(BaseModel):
    url: str
    source: str
    enabled: bool = True


DEFAULT_FEEDS: List[FeedSource] = [
    FeedSource(url="https://lobste.rs/rss", source="Lobste.rs"),
    FeedSource(url="https://hnrss.org/newest?points=100", source="HackerNews"),
    FeedSource(url="https://simonwillison.net/atom/everything/", source="Simon Willison"),
    FeedSource(url="https://huggingface.co/blog/feed.xml", source="HuggingFace"),
    FeedSource(url="https://martinfowler.com/feed.atom", source="Martin Fowler", enabled=False),
]


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip().strip('"')


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return default


def config_from_env() -> AppConfig:
    """Build the base config from environment variables (.env already loaded)."""
    return AppConfig(
        llm=LLMEndpoint(
            base_url=_env("LLM_BASE_URL", "https://api.openai.com/v1"),
            api_key=_env("LLM_API_KEY"),
            model=_env("LLM_MODEL", "gpt-4o"),
        ),
        llm_backup=LLMEndpoint(
            base_url=_env("LLM_BACKUP_BASE_URL"),
            api_key=_env("LLM_BACKUP_API_KEY"),
            model=_env("LLM_BACKUP_MODEL"),
        ),
        llm_settings=LLMSettings(
            timeout_ms=_env_int("LLM_TIMEOUT_MS", 120000),
            max_retries=_env_int("LLM_MAX_RETRIES", 2),
            use_backup_on_fail=_env_bool("LLM_USE_BACKUP_ON_FAIL", True),
        ),
        rss=RSSSettings(
            hours=_env_int("RSS_HOURS", 48),
            top_n=_env_int("RSS_TOP_N", 15),
            language=_env("DIGEST_LANGUAGE", "zh"),
        ),
        telegram=TelegramSettings(
            enabled=_env_bool("TELEGRAM_ENABLED", bool(_env("TELEGRAM_BOT_TOKEN"))),
            bot_token=_env("TELEGRAM_BOT_TOKEN"),
            chat_id=_env("TELEGRAM_CHAT_ID"),
            push_count=_env_int("TELEGRAM_PUSH_COUNT", 10),
        ),
        schedule=ScheduleSettings(
            enabled=_env_bool("SCHEDULE_ENABLED", False),
            cron=_env("SCHEDULE_CRON", "0 8 * * *"),
            timezone=_env("SCHEDULE_TIMEZONE", "UTC"),
        ),
    )


def _keeps_current(key: str, value) -> bool:
    """A secret sent back empty or still masked means "leave it as it is"."""
    if key not in _SECRET_FIELDS:
        return False
    return value in ("", None) or (isinstance(value, str) and SECRET_MASK in value)


def clean_patch(patch: Dict) -> Dict:
    """Strip display-only hint fields and unchanged secrets from an operator patch."""
    cleaned = {}
    for section, values in (patch or {}).items():
        if not isinstance(values, dict):
            cleaned[section] = values
            continue
        cleaned[section] = {
            k: v for k, v in values.items()
            if k not in _HINT_FIELDS and not _keeps_current(k, v)
        }
    return cleaned


def merge_config(current: AppConfig, patch: Dict) -> AppConfig:
    """Apply a partial update, keeping every field the patch leaves out.

    The masked view from ``mask_config`` can be posted straight back: its
    hint fields are ignored and blank or masked secrets keep their stored value.
    Raises ValueError for unknown sections/fields or invalid values.
    """
    merged = current.model_dump()
    for section, values in clean_patch(patch).items():
        if section not in merged:
            raise ValueError(f"Unknown config section: {section}")
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section} must be an object")
        for key, value in values.items():
            if key not in merged[section]:
                raise ValueError(f"Unknown config field: {section}.{key}")
            merged[section][key] = value
    return AppConfig.model_validate(merged)


def _mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) < 12:
        return SECRET_MASK
    return f"{value[:6]}{SECRET_MASK}{value[-4:]}"


def mask_config(config: AppConfig) -> Dict:
    """Operator view: secrets blanked, with a ``<field>_hint`` showing their shape."""
    data = config.model_dump()
    for section in data.values():
        for key in _SECRET_FIELDS & section.keys():
            section[f"{key}{HINT_SUFFIX}"] = _mask_secret(section[key])
            section[key] = ""
    return data
