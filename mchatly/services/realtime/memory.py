from collections import defaultdict
from typing import Dict, List

from mchatly.logging_config import get_logger
from mchatly.services.realtime.base import (
    Channel,
    MessageCallback,
    PresenceCallback,
    PresenceMember,
    RealtimeTransport,
    channel_name,
)

logger = get_logger("realtime.memory")


class InMemoryChannel(Channel):
    def __init__(self, name: str):
        super().__init__(name)
        self.members: Dict[str, PresenceMember] = {}
        self.published: List[tuple[str, dict]] = []
        self._subscribers: Dict[str, List[MessageCallback]] = defaultdict(list)
        self._on_enter: List[PresenceCallback] = []
        self._on_leave: List[PresenceCallback] = []

    async def publish(self, event: str, payload: dict) -> None:
        self.published.append((event, dict(payload)))
        for callback in list(self._subscribers.get(event, [])):
            try:
                await callback(dict(payload))
            except Exception as exc:
                logger.error(
                    "Channel subscriber failed",
                    extra={"context": {"channel": self.name, "event": event, "error": str(exc)}},
                )

    async def subscribe(self, event: str, callback: MessageCallback) -> None:
        self._subscribers[event].append(callback)

    async def subscribe_presence(self, on_enter: PresenceCallback, on_leave: PresenceCallback) -> None:
        self._on_enter.append(on_enter)
        self._on_leave.append(on_leave)

    async def _notify(self, callbacks: List[PresenceCallback], member: PresenceMember) -> None:
        for callback in list(callbacks):
            try:
                await callback(member)
            except Exception as exc:
                logger.error(
                    "Presence subscriber failed",
                    extra={"context": {"channel": self.name, "member": member.member_id, "error": str(exc)}},
                )

    async def enter_presence(self, member_id: str, data: dict) -> None:
        member = PresenceMember(member_id=member_id, data=dict(data))
        self.members[member_id] = member
        await self._notify(self._on_enter, member)

    async def refresh_presence(self, member_id: str) -> bool:
        return member_id in self.members

    async def leave_presence(self, member_id: str) -> None:
        member = self.members.pop(member_id, None)
        if member is None:
            return
        await self._notify(self._on_leave, member)

    async def query_presence(self) -> List[PresenceMember]:
        return list(self.members.values())


class InMemoryTransport(RealtimeTransport):
    """Single-process transport; callbacks run inline in publish order."""

    def __init__(self):
        self.channels: Dict[str, InMemoryChannel] = {}

    def channel_for(self, tenant_id: str, session_id: str) -> InMemoryChannel:
        name = channel_name(tenant_id, session_id)
        channel = self.channels.get(name)
        if channel is None:
            channel = InMemoryChannel(name)
            self.channels[name] = channel
        return channel
