"""Plain records exchanged between the store, the router and the scheduler."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class MessageRole(str, Enum):
    VISITOR = "visitor"
    BOT = "bot"
    OPERATOR = "operator"
    SYSTEM = "system"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimelineMessage:
    tenant_id: str
    session_id: str
    role: MessageRole
    content: str
    kind: MessageKind = MessageKind.TEXT
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class SessionRecord:
    tenant_id: str
    session_id: str
    mode: str = "bot"
    visitor_name: Optional[str] = None
    visitor_contact: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: Optional[datetime] = None


@dataclass
class ChatbotRecord:
    id: str
    token: str
    name: str
    instruction_text: str = ""


@dataclass
class Subscriber:
    id: str
    endpoint: str
    keys: dict
    tenant_id: Optional[str] = None

    def subscription_info(self) -> dict:
        return {"endpoint": self.endpoint, "keys": dict(self.keys)}


@dataclass
class EscalationRecord:
    id: str
    tenant_id: str
    session_id: str
    armed_at: datetime
    fire_at: datetime
    fired: bool = False
    cancelled: bool = False
