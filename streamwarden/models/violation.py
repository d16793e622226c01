from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from ..core.database import Base


class Violation(Base):
    __tablename__ = "violations"
    __table_args__ = (
        UniqueConstraint("rule_id", "session_id", name="uq_violations_rule_session"),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("rules.id"), nullable=False)
    server_user_id = Column(Integer, ForeignKey("server_users.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False)
    rule_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)  # low, warning, high
    trust_penalty = Column(Integer, nullable=False, default=0)
    data = Column(JSON, nullable=True)  # Evidence the rule produced
    created_at = Column(DateTime, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)

    # Relationships
    rule = relationship("Rule", back_populates="violations")
    server_user = relationship("ServerUser", back_populates="violations")
    session = relationship("Session", back_populates="violations")
