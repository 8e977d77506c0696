from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List

MESSAGE_EVENT = "message"
PRESENCE_ENTER = "presence.enter"
PRESENCE_LEAVE = "presence.leave"


def channel_name(tenant_id: str, session_id: str) -> str:
    """One channel per session; reconnecting clients land on the same name."""
    return f"live-chat:{tenant_id}:{session_id}"


@dataclass
class PresenceMember:
    member_id: str
    data: dict = field(default_factory=dict)

    @property
    def role(self) -> str | None:
        return self.data.get("role")


MessageCallback = Callable[[dict], Awaitable[None]]
PresenceCallback = Callable[[PresenceMember], Awaitable[None]]


class Channel(ABC):
    """Channel-scoped publish/subscribe with presence."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def publish(self, event: str, payload: dict) -> None:
        pass

    @abstractmethod
    async def subscribe(self, event: str, callback: MessageCallback) -> None:
        pass

    @abstractmethod
    async def subscribe_presence(self, on_enter: PresenceCallback, on_leave: PresenceCallback) -> None:
        pass

    @abstractmethod
    async def enter_presence(self, member_id: str, data: dict) -> None:
        pass

    @abstractmethod
    async def refresh_presence(self, member_id: str) -> bool:
        """Mark a present member as still here. False when the member is not present."""

    @abstractmethod
    async def leave_presence(self, member_id: str) -> None:
        pass

    @abstractmethod
    async def query_presence(self) -> List[PresenceMember]:
        pass

    async def close(self) -> None:
        return None


class RealtimeTransport(ABC):
    @abstractmethod
    def channel_for(self, tenant_id: str, session_id: str) -> Channel:
        pass

    async def close(self) -> None:
        return None
