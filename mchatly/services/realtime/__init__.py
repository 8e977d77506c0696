from mchatly.services.realtime.base import (
    MESSAGE_EVENT,
    Channel,
    PresenceMember,
    RealtimeTransport,
    channel_name,
)
from mchatly.services.realtime.memory import InMemoryTransport
from mchatly.services.realtime.redis_transport import RedisTransport

__all__ = [
    "MESSAGE_EVENT",
    "Channel",
    "InMemoryTransport",
    "PresenceMember",
    "RealtimeTransport",
    "RedisTransport",
    "channel_name",
]
