from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime

from ..core.database import to_naive_utc


class SessionSnapshot(BaseModel):
    """One active playback entry as reported by a media server, normalized across vendors"""
    session_key: str
    rating_key: Optional[str] = None
    external_user_id: str
    username: str
    user_thumb: Optional[str] = None
    state: str = "playing"  # playing or paused

    # Media
    media_type: str = "unknown"
    media_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    year: Optional[int] = None
    thumb_path: Optional[str] = None
    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    last_paused_at: Optional[datetime] = None  # Vendor-reported pause start, when known

    # Client
    ip_address: Optional[str] = None
    player_name: Optional[str] = None
    device_id: Optional[str] = None
    product: Optional[str] = None
    device: Optional[str] = None
    platform: Optional[str] = None

    # Stream quality
    quality: Optional[str] = None
    is_transcode: bool = False
    video_decision: Optional[str] = None
    audio_decision: Optional[str] = None
    bitrate: Optional[int] = None

    @field_validator("last_paused_at")
    @classmethod
    def normalize_paused_at(cls, value):
        return to_naive_utc(value)


class HistoryEntry(BaseModel):
    """A playback position the server recorded in its own watch history"""
    rating_key: str
    external_user_id: str
    viewed_at: datetime
    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None

    @field_validator("viewed_at")
    @classmethod
    def normalize_viewed_at(cls, value):
        return to_naive_utc(value)
