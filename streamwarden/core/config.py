from pydantic_settings import BaseSettings
from typing import Optional

from . import constants


class Settings(BaseSettings):
    database_url: str = "sqlite:///./streamwarden.db"
    redis_url: str = "redis://localhost:6379/0"
    secret_key: str = "change-me"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Poller
    poller_enabled: bool = True
    poll_interval_ms: int = constants.DEFAULT_POLL_INTERVAL_MS
    sweep_interval_ms: int = constants.STALE_SWEEP_INTERVAL_MS
    reconciliation_interval_ms: int = constants.RECONCILIATION_INTERVAL_MS
    snapshot_fetch_timeout_seconds: float = constants.SNAPSHOT_FETCH_TIMEOUT_SECONDS

    # Session tracking
    stale_session_timeout_ms: int = constants.STALE_SESSION_TIMEOUT_MS
    min_play_time_ms: int = constants.MIN_PLAY_TIME_MS
    watch_completion_threshold: float = constants.WATCH_COMPLETION_THRESHOLD
    grouping_window_ms: int = constants.CONTINUED_SESSION_THRESHOLD_MS
    resume_window_hours: int = constants.RESUME_WINDOW_HOURS
    recent_history_hours: int = constants.RECENT_HISTORY_HOURS
    max_recent_sessions_per_user: int = constants.MAX_RECENT_PER_USER

    # Rules
    violation_dedup_window_ms: int = constants.VIOLATION_DEDUP_WINDOW_MS
    trust_score_floor: int = constants.TRUST_SCORE_FLOOR

    # Provider settings
    plex_client_id: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
