from sqlalchemy import Column, DateTime, String, Text

from mchatly.database import Base


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(String(64), primary_key=True)
    token = Column(String(128), nullable=False, unique=True, index=True)
    name = Column(Text, nullable=False)
    instruction_text = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)
