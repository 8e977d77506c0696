from typing import Optional

from pydantic import BaseModel, Field

from mchatly.services.records import MessageKind


class VisitorMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)
    type: MessageKind = MessageKind.TEXT
    name: Optional[str] = None
    contact: Optional[str] = None


class VisitorMessageResponse(BaseModel):
    success: bool
    session_id: str
    mode: str
    forwarded: bool = False
    reply: Optional[str] = None
    used_knowledge_count: int = 0
    error_code: Optional[str] = None
