from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint

from mchatly.database import Base


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (UniqueConstraint("tenant_id", "session_id", name="uq_chat_sessions_tenant_session"),)

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    session_id = Column(String(128), nullable=False)
    visitor_name = Column(Text)
    visitor_contact = Column(Text)
    mode = Column(String(16), nullable=False, default="bot")  # bot, live
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True))
