"""Redis pub/sub transport with hash-backed presence.

Every session channel maps to one Redis pub/sub channel carrying JSON
envelopes `{"event": ..., "data": ...}`. Presence members live in the hash
`<channel>:presence`; their last-seen times live in the sorted set
`<channel>:presence:seen`. A member not refreshed within the presence window
is pruned on the next query. Enter/leave are broadcast as
`presence.enter` / `presence.leave` envelopes on the same channel.
"""

import asyncio
import json
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis_async

from mchatly.logging_config import get_logger
from mchatly.services.realtime.base import (
    PRESENCE_ENTER,
    PRESENCE_LEAVE,
    Channel,
    MessageCallback,
    PresenceCallback,
    PresenceMember,
    RealtimeTransport,
    channel_name,
)

logger = get_logger("realtime.redis")


class RedisChannel(Channel):
    def __init__(self, name: str, client, presence_ttl_seconds: int, clock: Callable[[], float] = time.time):
        super().__init__(name)
        self.client = client
        self.presence_key = f"{name}:presence"
        self.seen_key = f"{name}:presence:seen"
        self.presence_ttl_seconds = presence_ttl_seconds
        self.clock = clock
        self._subscribers: Dict[str, List[MessageCallback]] = defaultdict(list)
        self._on_enter: List[PresenceCallback] = []
        self._on_leave: List[PresenceCallback] = []
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def _send(self, event: str, data: dict) -> None:
        envelope = json.dumps({"event": event, "data": data}, ensure_ascii=False)
        try:
            await self.client.publish(self.name, envelope)
        except Exception as exc:
            # Transient transport failures are best effort: log and move on.
            logger.warning(
                "Redis publish failed",
                extra={"context": {"channel": self.name, "event": event, "error": str(exc)}},
            )

    async def publish(self, event: str, payload: dict) -> None:
        await self._send(event, payload)

    async def _ensure_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            return
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.name)
        self._listener = asyncio.create_task(self._listen(self._pubsub))

    async def subscribe(self, event: str, callback: MessageCallback) -> None:
        self._subscribers[event].append(callback)
        await self._ensure_listener()

    async def subscribe_presence(self, on_enter: PresenceCallback, on_leave: PresenceCallback) -> None:
        self._on_enter.append(on_enter)
        self._on_leave.append(on_leave)
        await self._ensure_listener()

    async def dispatch(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed envelope", extra={"context": {"channel": self.name}})
            return

        event = envelope.get("event")
        data = envelope.get("data") or {}
        if event in (PRESENCE_ENTER, PRESENCE_LEAVE):
            member = PresenceMember(member_id=str(data.get("member_id")), data=data.get("data") or {})
            callbacks = self._on_enter if event == PRESENCE_ENTER else self._on_leave
            for callback in list(callbacks):
                await self._safe_call(callback, member, event)
            return

        for callback in list(self._subscribers.get(event, [])):
            await self._safe_call(callback, data, event)

    async def _safe_call(self, callback, arg, event: str) -> None:
        try:
            await callback(arg)
        except Exception as exc:
            logger.error(
                "Channel subscriber failed",
                extra={"context": {"channel": self.name, "event": event, "error": str(exc)}},
            )

    async def _listen(self, pubsub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.dispatch(message.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Redis listener stopped", extra={"context": {"channel": self.name, "error": str(exc)}})

    async def _touch(self) -> None:
        # Both keys vanish together once nobody on the channel has refreshed for a full window.
        await self.client.expire(self.presence_key, self.presence_ttl_seconds)
        await self.client.expire(self.seen_key, self.presence_ttl_seconds)

    async def enter_presence(self, member_id: str, data: dict) -> None:
        await self.client.hset(self.presence_key, member_id, json.dumps(data, ensure_ascii=False))
        await self.client.zadd(self.seen_key, {member_id: self.clock()})
        await self._touch()
        await self._send(PRESENCE_ENTER, {"member_id": member_id, "data": data})

    async def refresh_presence(self, member_id: str) -> bool:
        if not await self.client.hexists(self.presence_key, member_id):
            return False
        await self.client.zadd(self.seen_key, {member_id: self.clock()})
        await self._touch()
        return True

    async def leave_presence(self, member_id: str) -> None:
        removed = await self.client.hdel(self.presence_key, member_id)
        await self.client.zrem(self.seen_key, member_id)
        if removed:
            await self._send(PRESENCE_LEAVE, {"member_id": member_id, "data": {}})

    async def _prune(self) -> None:
        """Drop members not refreshed within the presence window; each counts as a leave."""
        cutoff = self.clock() - self.presence_ttl_seconds
        expired = await self.client.zrangebyscore(self.seen_key, "-inf", cutoff)
        for member_id in expired or []:
            await self.client.zrem(self.seen_key, member_id)
            if await self.client.hdel(self.presence_key, member_id):
                logger.info("Presence expired", extra={"context": {"channel": self.name, "member": member_id}})
                await self._send(PRESENCE_LEAVE, {"member_id": member_id, "data": {}})

    async def query_presence(self) -> List[PresenceMember]:
        await self._prune()
        raw_members = await self.client.hgetall(self.presence_key)
        members = []
        for member_id, raw in (raw_members or {}).items():
            try:
                data = json.loads(raw) if raw else {}
            except ValueError:
                data = {}
            members.append(PresenceMember(member_id=member_id, data=data))
        return members

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.name)
                await self._pubsub.aclose()
            except Exception as exc:
                logger.warning("Redis unsubscribe failed", extra={"context": {"channel": self.name, "error": str(exc)}})
            self._pubsub = None


class RedisTransport(RealtimeTransport):
    def __init__(
        self,
        redis_url: str,
        presence_ttl_seconds: int = 60,
        client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client or redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5.0,
        )
        self.presence_ttl_seconds = presence_ttl_seconds
        self.clock = clock
        self.channels: Dict[str, RedisChannel] = {}

    def channel_for(self, tenant_id: str, session_id: str) -> RedisChannel:
        name = channel_name(tenant_id, session_id)
        channel = self.channels.get(name)
        if channel is None:
            channel = RedisChannel(name, self.client, self.presence_ttl_seconds, self.clock)
            self.channels[name] = channel
        return channel

    async def close(self) -> None:
        for channel in list(self.channels.values()):
            await channel.close()
        self.channels.clear()
        await self.client.aclose()
