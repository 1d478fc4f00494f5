# aba_scheduling/config.py
from dataclasses import dataclass
from datetime import time
from typing import List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "dev"
    APP_NAME: str = "ABA Scheduling Engine"

    # DB URL – SQLite file by default
    DATABASE_URL: str = "sqlite:///./aba_scheduling.db"

    LOG_LEVEL: str = "INFO"

    # Session shape and operating window
    SESSION_DURATION_HOURS: int = 3
    BUSINESS_HOURS_START: time = time(9, 0)
    BUSINESS_HOURS_END: time = time(19, 0)
    # 0=Sunday ... 6=Saturday
    BUSINESS_DAYS: List[int] = [1, 2, 3, 4, 5]

    # Continuity scoring
    CONTINUITY_RECENCY_DAYS: int = 30
    CONTINUITY_TREND_THRESHOLD: float = 5.0  # percentage points

    # Disruption analytics
    DISRUPTION_TREND_THRESHOLD: float = 20.0  # percent change
    TOP_REASONS_LIMIT: int = 10

    # Rescheduling search
    RESCHEDULE_HORIZON_BUSINESS_DAYS: int = 14
    RESCHEDULE_SLOT_STEP_MINUTES: int = 60
    RESCHEDULE_MAX_OPTIONS: int = 10

    # Staff workload
    MAX_SESSIONS_PER_DAY: int = 2
    MIN_BREAK_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@dataclass(frozen=True)
class SchedulingRules:
    """
    Immutable snapshot of the scheduling configuration.

    Built once at process start and handed to every engine component,
    so none of them reads settings (or any other global) on its own.
    """

    session_duration_hours: int = 3
    business_start: time = time(9, 0)
    business_end: time = time(19, 0)
    business_days: Tuple[int, ...] = (1, 2, 3, 4, 5)
    recency_days: int = 30
    continuity_trend_threshold: float = 5.0
    disruption_trend_threshold: float = 20.0
    top_reasons_limit: int = 10
    horizon_business_days: int = 14
    slot_step_minutes: int = 60
    max_options: int = 10
    max_sessions_per_day: int = 2
    min_break_minutes: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulingRules":
        return cls(
            session_duration_hours=settings.SESSION_DURATION_HOURS,
            business_start=settings.BUSINESS_HOURS_START,
            business_end=settings.BUSINESS_HOURS_END,
            business_days=tuple(sorted(set(settings.BUSINESS_DAYS))),
            recency_days=settings.CONTINUITY_RECENCY_DAYS,
            continuity_trend_threshold=settings.CONTINUITY_TREND_THRESHOLD,
            disruption_trend_threshold=settings.DISRUPTION_TREND_THRESHOLD,
            top_reasons_limit=settings.TOP_REASONS_LIMIT,
            horizon_business_days=settings.RESCHEDULE_HORIZON_BUSINESS_DAYS,
            slot_step_minutes=settings.RESCHEDULE_SLOT_STEP_MINUTES,
            max_options=settings.RESCHEDULE_MAX_OPTIONS,
            max_sessions_per_day=settings.MAX_SESSIONS_PER_DAY,
            min_break_minutes=settings.MIN_BREAK_MINUTES,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
