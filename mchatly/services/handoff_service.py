"""Bot/live handoff per session, driven by operator presence on the session channel."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from mchatly.logging_config import get_logger, session_logger
from mchatly.services.channel_events import (
    ChannelEvent,
    OperatorJoined,
    OperatorLeft,
    OperatorMessage,
    UnknownEventError,
    VisitorMessage,
    is_operator,
    message_payload,
    parse_channel_event,
)
from mchatly.services.realtime.base import (
    MESSAGE_EVENT,
    PRESENCE_ENTER,
    PRESENCE_LEAVE,
    Channel,
    PresenceMember,
    RealtimeTransport,
)
from mchatly.services.records import MessageKind, MessageRole, TimelineMessage
from mchatly.services.response_service import ResponseRouter
from mchatly.services.state_machine import SessionMode, mode_for_presence, operator_joined, operator_left
from mchatly.services.store import MessageStore
from mchatly.services.validation import validate_identifier

logger = get_logger("handoff_service")

OPERATOR_JOINED_TEXT = "Operator joined the chat."
OPERATOR_LEFT_TEXT = "Operator left the chat."


@dataclass
class SessionState:
    tenant_id: str
    session_id: str
    channel: Channel
    mode: SessionMode = SessionMode.BOT
    operators: Set[str] = field(default_factory=set)
    message_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    mode_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class VisitorOutcome:
    mode: SessionMode
    forwarded: bool = False
    reply: Optional[str] = None
    used_knowledge_count: int = 0
    needs_human: bool = False
    error_code: Optional[str] = None


class SessionHandoffCoordinator:
    """Routes visitor messages to the bot or to a present operator."""

    def __init__(self, store: MessageStore, transport: RealtimeTransport, router: ResponseRouter):
        self.store = store
        self.transport = transport
        self.router = router
        self._sessions: Dict[tuple[str, str], SessionState] = {}
        self._attach_lock = asyncio.Lock()

    def mode_of(self, tenant_id: str, session_id: str) -> SessionMode:
        state = self._sessions.get((tenant_id, session_id))
        return state.mode if state else SessionMode.BOT

    async def attach(self, tenant_id: str, session_id: str) -> SessionState:
        """Subscribe to the session channel once and sync mode with current presence."""
        key = (tenant_id, session_id)
        state = self._sessions.get(key)
        if state is not None:
            return state

        async with self._attach_lock:
            state = self._sessions.get(key)
            if state is not None:
                return state

            channel = self.transport.channel_for(tenant_id, session_id)
            state = SessionState(tenant_id=tenant_id, session_id=session_id, channel=channel)
            self._sessions[key] = state

            async def on_enter(member: PresenceMember) -> None:
                await self._on_channel_event(state, PRESENCE_ENTER, member)

            async def on_leave(member: PresenceMember) -> None:
                await self._on_channel_event(state, PRESENCE_LEAVE, member)

            async def on_message(payload: dict) -> None:
                await self._on_channel_event(state, MESSAGE_EVENT, payload)

            await channel.subscribe_presence(on_enter, on_leave)
            await channel.subscribe(MESSAGE_EVENT, on_message)

        await self.reconcile(state)
        return state

    async def _on_channel_event(self, state: SessionState, event: str, payload) -> None:
        try:
            parsed = parse_channel_event(event, payload)
        except UnknownEventError as exc:
            logger.warning(
                "Ignoring unknown channel event",
                extra={"context": {"channel": state.channel.name, "event": event, "error": str(exc)}},
            )
            return
        if parsed is not None:
            await self.dispatch(state, parsed)

    async def dispatch(self, state: SessionState, event: ChannelEvent) -> None:
        if isinstance(event, OperatorJoined):
            await self._operator_entered(state, event.operator_id)
        elif isinstance(event, OperatorLeft):
            await self._operator_exited(state, event.operator_id)
        elif isinstance(event, OperatorMessage):
            if not event.logged:
                await self._record(state, MessageRole.OPERATOR, event.text, event.kind)
        elif isinstance(event, VisitorMessage):
            # Visitor messages reach the server over HTTP; channel copies are echoes.
            return
        else:
            raise UnknownEventError(f"Unhandled channel event: {event!r}")

    async def _record(self, state: SessionState, role: MessageRole, text: str, kind: MessageKind) -> TimelineMessage:
        return await self.store.append(
            TimelineMessage(tenant_id=state.tenant_id, session_id=state.session_id, role=role, content=text, kind=kind)
        )

    async def _switch(self, state: SessionState, target: SessionMode) -> None:
        """Apply a mode change with its side effects. Caller holds mode_lock."""
        if target == SessionMode.LIVE:
            state.mode = operator_joined(state.mode)
            text = OPERATOR_JOINED_TEXT
        else:
            state.mode = operator_left(state.mode)
            text = OPERATOR_LEFT_TEXT

        log = session_logger("handoff_service", state.tenant_id, state.session_id)
        log.info("Session mode changed", context={"mode": state.mode.value, "operators": sorted(state.operators)})

        try:
            await self.store.set_session_mode(state.tenant_id, state.session_id, state.mode.value)
            await self._record(state, MessageRole.SYSTEM, text, MessageKind.TEXT)
        except Exception as exc:
            log.error("Failed to record mode change", context={"error": str(exc)})
        await state.channel.publish(MESSAGE_EVENT, message_payload(MessageRole.SYSTEM, text))

    async def _operator_entered(self, state: SessionState, operator_id: str) -> None:
        async with state.mode_lock:
            state.operators.add(operator_id)
            if state.mode == SessionMode.BOT:
                await self._switch(state, SessionMode.LIVE)

    async def _operator_exited(self, state: SessionState, operator_id: str) -> None:
        async with state.mode_lock:
            state.operators.discard(operator_id)
            if not state.operators and state.mode == SessionMode.LIVE:
                await self._switch(state, SessionMode.BOT)

    async def reconcile(self, state: SessionState) -> SessionMode:
        """Re-read presence; covers missed enter/leave events and presence that expired."""
        try:
            members = await state.channel.query_presence()
        except Exception as exc:
            logger.warning(
                "Presence query failed, keeping current mode",
                extra={"context": {"channel": state.channel.name, "error": str(exc)}},
            )
            return state.mode

        async with state.mode_lock:
            state.operators = {m.member_id for m in members if is_operator(m)}
            target = mode_for_presence(len(state.operators))
            if target != state.mode:
                await self._switch(state, target)
        return state.mode

    async def handle_visitor_message(
        self,
        tenant_id: str,
        session_id: str,
        text: str,
        kind: MessageKind = MessageKind.TEXT,
        visitor_name: Optional[str] = None,
        visitor_contact: Optional[str] = None,
    ) -> VisitorOutcome:
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")

        await self.store.get_or_create_session(tenant_id, session_id, visitor_name, visitor_contact)
        state = await self.attach(tenant_id, session_id)

        async with state.message_lock:
            mode = await self.reconcile(state)

            if mode == SessionMode.LIVE:
                await self._record(state, MessageRole.VISITOR, text, kind)
                await state.channel.publish(MESSAGE_EVENT, message_payload(MessageRole.VISITOR, text, kind))
                return VisitorOutcome(mode=mode, forwarded=True)

            routed = await self.router.handle_visitor_message(tenant_id, session_id, text, kind)
            await state.channel.publish(MESSAGE_EVENT, message_payload(MessageRole.BOT, routed.reply))
            return VisitorOutcome(
                mode=mode,
                reply=routed.reply,
                used_knowledge_count=routed.used_knowledge_count,
                needs_human=routed.needs_human,
                error_code=routed.error_code,
            )

    async def handle_operator_message(
        self,
        tenant_id: str,
        session_id: str,
        text: str,
        kind: MessageKind = MessageKind.TEXT,
        operator_id: Optional[str] = None,
    ) -> TimelineMessage:
        """Record an operator reply and relay it to the visitor."""
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")
        if operator_id is not None:
            validate_identifier(operator_id, "operator_id")

        state = await self.attach(tenant_id, session_id)
        if operator_id is not None:
            await state.channel.refresh_presence(operator_id)
        async with state.message_lock:
            message = await self._record(state, MessageRole.OPERATOR, text, kind)
            await state.channel.publish(
                MESSAGE_EVENT,
                message_payload(MessageRole.OPERATOR, text, kind, operator_id=operator_id),
            )
        return message

    async def operator_join(self, tenant_id: str, session_id: str, operator_id: str) -> SessionMode:
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")
        validate_identifier(operator_id, "operator_id")

        state = await self.attach(tenant_id, session_id)
        await state.channel.enter_presence(operator_id, {"role": "operator"})
        return await self.reconcile(state)

    async def operator_heartbeat(self, tenant_id: str, session_id: str, operator_id: str) -> SessionMode:
        """Keep an operator's presence alive; re-enters if it already expired."""
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")
        validate_identifier(operator_id, "operator_id")

        state = await self.attach(tenant_id, session_id)
        if not await state.channel.refresh_presence(operator_id):
            await state.channel.enter_presence(operator_id, {"role": "operator"})
        return await self.reconcile(state)

    async def operator_leave(self, tenant_id: str, session_id: str, operator_id: str) -> SessionMode:
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")
        validate_identifier(operator_id, "operator_id")

        state = await self.attach(tenant_id, session_id)
        await state.channel.leave_presence(operator_id)
        return await self.reconcile(state)

    async def close(self) -> None:
        for state in list(self._sessions.values()):
            try:
                await state.channel.close()
            except Exception as exc:
                logger.warning(
                    "Failed to close channel",
                    extra={"context": {"channel": state.channel.name, "error": str(exc)}},
                )
        self._sessions.clear()
