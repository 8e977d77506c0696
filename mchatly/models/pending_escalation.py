from sqlalchemy import Boolean, Column, DateTime, String

from mchatly.database import Base


class PendingEscalation(Base):
    __tablename__ = "pending_escalations"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    session_id = Column(String(128), nullable=False, index=True)
    armed_at = Column(DateTime(timezone=True), nullable=False)
    fire_at = Column(DateTime(timezone=True), nullable=False)
    fired = Column(Boolean, nullable=False, default=False)
    cancelled = Column(Boolean, nullable=False, default=False)
    fired_at = Column(DateTime(timezone=True))
