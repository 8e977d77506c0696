from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from mchatly.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_session_created", "tenant_id", "session_id", "created_at"),)

    # Autoincrement id doubles as the insertion-order tie breaker.
    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    session_id = Column(String(128), nullable=False)
    role = Column(String(16), nullable=False)  # visitor, bot, operator, system
    content = Column(Text, nullable=False)
    kind = Column(String(16), nullable=False, default="text")  # text, image, voice
    created_at = Column(DateTime(timezone=True), nullable=False)
    media_reclaimed_at = Column(DateTime(timezone=True))
