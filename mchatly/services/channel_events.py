"""Typed events arriving on a session channel.

Raw transport payloads are parsed once at the edge into one of four event
types; the coordinator then handles them with an exhaustive dispatch.
"""

from dataclasses import dataclass
from typing import Optional, Union

from mchatly.services.realtime.base import MESSAGE_EVENT, PRESENCE_ENTER, PRESENCE_LEAVE, PresenceMember
from mchatly.services.records import MessageKind, MessageRole

OPERATOR_ROLES = {"operator", "admin"}


class UnknownEventError(ValueError):
    """Payload does not map to any known channel event."""


@dataclass(frozen=True)
class OperatorJoined:
    operator_id: str


@dataclass(frozen=True)
class OperatorLeft:
    operator_id: str


@dataclass(frozen=True)
class VisitorMessage:
    text: str
    kind: MessageKind = MessageKind.TEXT


@dataclass(frozen=True)
class OperatorMessage:
    text: str
    kind: MessageKind = MessageKind.TEXT
    operator_id: Optional[str] = None
    # Already written to the timeline by whoever published it.
    logged: bool = False


ChannelEvent = Union[OperatorJoined, OperatorLeft, VisitorMessage, OperatorMessage]


def is_operator(member: PresenceMember) -> bool:
    return member.role in OPERATOR_ROLES


def parse_presence(action: str, member: PresenceMember) -> Optional[ChannelEvent]:
    """Presence change -> event. Non-operator members are ignored."""
    if not is_operator(member):
        return None
    if action == "enter":
        return OperatorJoined(operator_id=member.member_id)
    if action == "leave":
        return OperatorLeft(operator_id=member.member_id)
    raise UnknownEventError(f"Unknown presence action: {action}")


def _parse_kind(value) -> MessageKind:
    try:
        return MessageKind(value or MessageKind.TEXT.value)
    except ValueError as exc:
        raise UnknownEventError(f"Unknown message type: {value}") from exc


def parse_message(payload: dict) -> Optional[ChannelEvent]:
    """Channel message payload -> event.

    Bot and system messages are echoes of what the server itself published
    and yield None.
    """
    role = payload.get("role")
    text = payload.get("text")
    if not isinstance(text, str):
        raise UnknownEventError("Message payload has no text")

    if role == MessageRole.VISITOR.value:
        return VisitorMessage(text=text, kind=_parse_kind(payload.get("type")))
    if role in OPERATOR_ROLES:
        return OperatorMessage(
            text=text,
            kind=_parse_kind(payload.get("type")),
            operator_id=payload.get("operator_id"),
            logged=bool(payload.get("logged")),
        )
    if role in (MessageRole.BOT.value, MessageRole.SYSTEM.value):
        return None
    raise UnknownEventError(f"Unknown message role: {role}")


def message_payload(role: MessageRole, text: str, kind: MessageKind = MessageKind.TEXT, **extra) -> dict:
    """Payload published by the server; always marked as already logged."""
    payload = {"role": role.value, "text": text, "type": kind.value, "logged": True}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


def parse_channel_event(event: str, payload) -> Optional[ChannelEvent]:
    """Single entry point for everything a channel subscription delivers."""
    if event == PRESENCE_ENTER:
        return parse_presence("enter", payload)
    if event == PRESENCE_LEAVE:
        return parse_presence("leave", payload)
    if event == MESSAGE_EVENT:
        return parse_message(payload)
    raise UnknownEventError(f"Unknown channel event: {event}")
