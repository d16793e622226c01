from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..core.constants import TRUST_SCORE_DEFAULT
from ..core.database import Base


class ServerUser(Base):
    """An account on one media server, identified by the vendor's user id"""
    __tablename__ = "server_users"
    __table_args__ = (
        UniqueConstraint("server_id", "external_id", name="uq_server_users_server_external"),
    )

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    username = Column(String, nullable=False)
    thumb_url = Column(String, nullable=True)
    trust_score = Column(Integer, nullable=False, default=TRUST_SCORE_DEFAULT)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    server = relationship("Server", back_populates="users")
    sessions = relationship("Session", back_populates="server_user")
    violations = relationship("Violation", back_populates="server_user")
