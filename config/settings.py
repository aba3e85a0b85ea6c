"""
Configuration & Settings
Review Insights Pipeline
"""

from pydantic import BaseModel
from typing import List, Optional
import os


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(key: str, default: int) -> int:
    return int(_env(key, str(default)))


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


class Settings(BaseModel):
    # App
    APP_NAME: str = "Review Insights Pipeline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = _env("DEBUG", "0") in ("1", "true", "yes")

    # Database
    DATABASE_URL: str = _env("DATABASE_URL", "sqlite:///./review_insights.db")

    # Trigger
    CRON_SECRET: Optional[str] = _env("CRON_SECRET")
    CRON_MAX_SECONDS: float = _env_float("CRON_MAX_SECONDS", 24.0)
    CRON_MAX_REVIEWS: int = _env_int("CRON_MAX_REVIEWS", 40)

    # Review API
    REVIEW_API_BASE_URL: str = _env("REVIEW_API_BASE_URL", "https://mybusiness.googleapis.com/v4")
    REVIEW_API_TOKEN: Optional[str] = _env("REVIEW_API_TOKEN")
    REVIEW_PAGE_SIZE: int = _env_int("REVIEW_PAGE_SIZE", 50)
    SYNC_MAX_ROWS: int = _env_int("SYNC_MAX_ROWS", 500)
    REQUEST_TIMEOUT: float = _env_float("REQUEST_TIMEOUT", 8.0)

    # LLM
    OPENAI_API_KEY: Optional[str] = _env("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = _env("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_MODEL: str = _env("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_REPLY_MODEL: Optional[str] = _env("OPENAI_REPLY_MODEL")

    # Retry
    RETRY_TRIES: int = _env_int("RETRY_TRIES", 4)
    RETRY_BASE_SECONDS: float = _env_float("RETRY_BASE_SECONDS", 0.3)
    AI_RETRY_TRIES: int = _env_int("AI_RETRY_TRIES", 3)
    AI_RETRY_BASE_SECONDS: float = _env_float("AI_RETRY_BASE_SECONDS", 0.5)

    # Locks & queue
    # LOCK_TTL_SECONDS bounds a single lease; STALE_SECONDS is the maintenance
    # threshold for locks and processing jobs left behind by a crashed run.
    LOCK_TTL_SECONDS: int = _env_int("LOCK_TTL_SECONDS", 90)
    STALE_SECONDS: int = _env_int("STALE_SECONDS", 900)
    QUEUE_BATCH: int = _env_int("JOB_QUEUE_MAX", 20)
    RECENT_LIMIT: int = 20
    RETRY_ERRORS_LIMIT: int = 50
    BACKLOG_PAGE_SIZE: int = 250
    BACKLOG_MAX_PAGES: int = 10

    # Analysis
    AI_TAG_MAX_TOPICS: int = _env_int("AI_TAG_MAX_TOPICS", 8)
    SUMMARY_MAX_CHARS: int = 180
    EVIDENCE_MAX_CHARS: int = 90
    DRAFT_MODE: str = _env("DRAFT_MODE", "draft")

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = _env_int("PORT", 8000)

    def missing_secrets(self) -> List[str]:
        missing = []
        if not self.CRON_SECRET:
            missing.append("CRON_SECRET")
        if not self.OPENAI_API_KEY:
            missing.append("OPENAI_API_KEY")
        if not self.REVIEW_API_TOKEN:
            missing.append("REVIEW_API_TOKEN")
        return missing

    @property
    def reply_model(self) -> str:
        return self.OPENAI_REPLY_MODEL or self.OPENAI_MODEL


settings = Settings()
