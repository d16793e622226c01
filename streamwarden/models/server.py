from sqlalchemy import Column, Integer, String, DateTime, Enum, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from ..core.database import Base


class ServerType(enum.Enum):
    plex = "plex"
    emby = "emby"
    jellyfin = "jellyfin"


class Server(Base):
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    type = Column(Enum(ServerType), nullable=False)
    base_url = Column(String, nullable=False)
    enabled = Column(Boolean, default=True)
    push_enabled = Column(Boolean, default=False)  # Real-time events connected; normal polls skip it
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    credentials = relationship("Credential", back_populates="server", cascade="all, delete-orphan")
    sessions = relationship("Session", back_populates="server")
    users = relationship("ServerUser", back_populates="server", cascade="all, delete-orphan")
