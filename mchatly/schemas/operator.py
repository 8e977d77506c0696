from typing import Optional

from pydantic import BaseModel, Field

from mchatly.services.records import MessageKind


class OperatorMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)
    type: MessageKind = MessageKind.TEXT
    operator_id: Optional[str] = None


class OperatorMessageResponse(BaseModel):
    accepted: bool
    message_id: Optional[int] = None


class PresenceRequest(BaseModel):
    operator_id: str


class PresenceResponse(BaseModel):
    session_id: str
    mode: str
