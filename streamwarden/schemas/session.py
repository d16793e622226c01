from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime


class SessionResponse(BaseModel):
    """Session state as published to real-time subscribers"""
    id: int
    server_id: int
    server_user_id: int
    session_key: str
    rating_key: Optional[str] = None
    reference_id: Optional[int] = None
    state: str

    media_type: str
    media_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    year: Optional[int] = None

    started_at: datetime
    stopped_at: Optional[datetime] = None
    last_seen_at: datetime
    duration_ms: Optional[int] = None
    paused_duration_ms: int = 0
    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None

    watched: bool = False
    short_session: bool = False
    force_stopped: bool = False

    ip_address: Optional[str] = None
    player_name: Optional[str] = None
    product: Optional[str] = None
    platform: Optional[str] = None
    quality: Optional[str] = None
    is_transcode: bool = False
    bitrate: Optional[int] = None

    geo_city: Optional[str] = None
    geo_country: Optional[str] = None

    class Config:
        from_attributes = True


class ViolationResponse(BaseModel):
    id: int
    rule_id: int
    rule_type: str
    server_user_id: int
    session_id: int
    severity: str
    trust_penalty: int
    data: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PollerStatusResponse(BaseModel):
    is_running: bool
    enabled: bool
    interval_ms: int
    sweep_interval_ms: int
    last_poll_at: Optional[datetime] = None
    last_sweep_at: Optional[datetime] = None
    last_error: Optional[str] = None
    tracked_sessions: int = 0
