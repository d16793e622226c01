from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Float, Index, text
from sqlalchemy.orm import relationship
from ..core.database import Base


class Session(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        # At most one active row per vendor session key
        Index(
            "uq_sessions_active_key",
            "server_id",
            "session_key",
            unique=True,
            postgresql_where=text("stopped_at IS NULL"),
            sqlite_where=text("stopped_at IS NULL"),
        ),
        Index("ix_sessions_user_started", "server_user_id", "started_at"),
        Index("ix_sessions_stopped_last_seen", "stopped_at", "last_seen_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id"), nullable=False)
    server_user_id = Column(Integer, ForeignKey("server_users.id"), nullable=False)
    session_key = Column(String, nullable=False)  # Session ID from the media server
    rating_key = Column(String, nullable=True)  # Media ID from the media server
    reference_id = Column(Integer, nullable=True, index=True)  # First session of a resumed chain
    state = Column(String, nullable=False, default="playing")  # playing, paused, stopped

    # Media
    media_type = Column(String, nullable=False, default="unknown")
    media_title = Column(String, nullable=True)
    grandparent_title = Column(String, nullable=True)  # Show name
    season_number = Column(Integer, nullable=True)
    episode_number = Column(Integer, nullable=True)
    year = Column(Integer, nullable=True)
    thumb_path = Column(String, nullable=True)

    # Timing
    started_at = Column(DateTime, nullable=False)
    stopped_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=False)
    last_paused_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    paused_duration_ms = Column(Integer, nullable=False, default=0)
    progress_ms = Column(Integer, nullable=True)
    total_duration_ms = Column(Integer, nullable=True)

    # Outcome
    watched = Column(Boolean, nullable=False, default=False)
    short_session = Column(Boolean, nullable=False, default=False)
    force_stopped = Column(Boolean, nullable=False, default=False)

    # Client
    ip_address = Column(String, nullable=True)
    player_name = Column(String, nullable=True)
    device_id = Column(String, nullable=True)
    product = Column(String, nullable=True)
    device = Column(String, nullable=True)
    platform = Column(String, nullable=True)

    # Stream quality
    quality = Column(String, nullable=True)
    is_transcode = Column(Boolean, nullable=False, default=False)
    video_decision = Column(String, nullable=True)
    audio_decision = Column(String, nullable=True)
    bitrate = Column(Integer, nullable=True)

    # Written by geo enrichment only
    geo_city = Column(String, nullable=True)
    geo_region = Column(String, nullable=True)
    geo_country = Column(String, nullable=True)
    geo_lat = Column(Float, nullable=True)
    geo_lon = Column(Float, nullable=True)

    # Relationships
    server = relationship("Server", back_populates="sessions")
    server_user = relationship("ServerUser", back_populates="sessions")
    violations = relationship("Violation", back_populates="session")
