from pydantic import BaseModel, field_validator
from typing import Literal, Optional
from datetime import datetime

from ..core.database import to_naive_utc
from .snapshot import SessionSnapshot


class PushEvent(BaseModel):
    """A real-time playback notification from a media server webhook or event stream"""
    event: Literal["playing", "paused", "progress", "stopped"]
    session_key: str
    snapshot: Optional[SessionSnapshot] = None  # Required for everything except stopped
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value):
        """Webhook timestamps often carry an offset; stored times are naive UTC"""
        return to_naive_utc(value)
