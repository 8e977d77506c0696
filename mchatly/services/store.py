"""Timeline, session and subscription persistence used by the routing core."""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from mchatly.logging_config import get_logger
from mchatly.models import Chatbot, ChatSession, Message, PendingEscalation, PushSubscription
from mchatly.services.records import (
    ChatbotRecord,
    EscalationRecord,
    MessageKind,
    MessageRole,
    SessionRecord,
    Subscriber,
    TimelineMessage,
    utcnow,
)

logger = get_logger("store")


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class MessageStore(ABC):
    """Abstract document store consumed by the router, coordinator and scheduler."""

    @abstractmethod
    async def get_chatbot(self, tenant_id: str) -> Optional[ChatbotRecord]:
        pass

    @abstractmethod
    async def get_chatbot_by_token(self, token: str) -> Optional[ChatbotRecord]:
        pass

    @abstractmethod
    async def get_or_create_session(
        self,
        tenant_id: str,
        session_id: str,
        visitor_name: Optional[str] = None,
        visitor_contact: Optional[str] = None,
    ) -> SessionRecord:
        """Find the session or create it in bot mode; bumps last activity either way."""

    @abstractmethod
    async def set_session_mode(self, tenant_id: str, session_id: str, mode: str) -> None:
        pass

    @abstractmethod
    async def append(self, message: TimelineMessage) -> TimelineMessage:
        pass

    @abstractmethod
    async def recent_messages(self, tenant_id: str, session_id: str, limit: int) -> List[TimelineMessage]:
        """Last `limit` messages, oldest first."""

    @abstractmethod
    async def find_operator_reply_after(
        self, tenant_id: str, session_id: str, after: datetime
    ) -> Optional[TimelineMessage]:
        pass

    @abstractmethod
    async def list_push_subscribers(self, tenant_id: Optional[str] = None) -> List[Subscriber]:
        """Global subscribers plus, when given, the ones scoped to `tenant_id`."""

    @abstractmethod
    async def add_push_subscriber(self, endpoint: str, keys: dict, tenant_id: Optional[str] = None) -> Subscriber:
        pass

    @abstractmethod
    async def delete_push_subscriber(self, subscriber_id: str) -> None:
        pass

    @abstractmethod
    async def save_pending_escalation(self, record: EscalationRecord) -> None:
        pass

    @abstractmethod
    async def cancel_active_escalations(self, tenant_id: str, session_id: str) -> int:
        pass

    @abstractmethod
    async def claim_escalation(self, escalation_id: str, fired_at: datetime) -> bool:
        """Mark an unfired, uncancelled escalation as fired. False when someone else got there first."""

    @abstractmethod
    async def list_unfired_escalations(self, due_before: Optional[datetime] = None) -> List[EscalationRecord]:
        pass


class InMemoryMessageStore(MessageStore):
    """Process-local store for single-instance deployments and tests."""

    def __init__(self):
        self.chatbots: dict[str, ChatbotRecord] = {}
        self.sessions: dict[tuple[str, str], SessionRecord] = {}
        self.messages: list[TimelineMessage] = []
        self.subscribers: dict[str, Subscriber] = {}
        self.escalations: dict[str, EscalationRecord] = {}
        self._next_id = 1

    def add_chatbot(self, chatbot: ChatbotRecord) -> ChatbotRecord:
        self.chatbots[chatbot.id] = chatbot
        return chatbot

    async def get_chatbot(self, tenant_id: str) -> Optional[ChatbotRecord]:
        return self.chatbots.get(tenant_id)

    async def get_chatbot_by_token(self, token: str) -> Optional[ChatbotRecord]:
        return next((c for c in self.chatbots.values() if c.token == token), None)

    async def get_or_create_session(
        self,
        tenant_id: str,
        session_id: str,
        visitor_name: Optional[str] = None,
        visitor_contact: Optional[str] = None,
    ) -> SessionRecord:
        key = (tenant_id, session_id)
        record = self.sessions.get(key)
        if record is None:
            record = SessionRecord(tenant_id=tenant_id, session_id=session_id)
            self.sessions[key] = record
        if visitor_name:
            record.visitor_name = visitor_name
        if visitor_contact:
            record.visitor_contact = visitor_contact
        record.last_activity_at = utcnow()
        return record

    async def set_session_mode(self, tenant_id: str, session_id: str, mode: str) -> None:
        record = await self.get_or_create_session(tenant_id, session_id)
        record.mode = mode

    async def append(self, message: TimelineMessage) -> TimelineMessage:
        message.id = self._next_id
        self._next_id += 1
        self.messages.append(message)
        return message

    def _timeline(self, tenant_id: str, session_id: str) -> list[TimelineMessage]:
        items = [m for m in self.messages if m.tenant_id == tenant_id and m.session_id == session_id]
        return sorted(items, key=lambda m: (m.created_at, m.id))

    async def recent_messages(self, tenant_id: str, session_id: str, limit: int) -> List[TimelineMessage]:
        if limit <= 0:
            return []
        return self._timeline(tenant_id, session_id)[-limit:]

    async def find_operator_reply_after(
        self, tenant_id: str, session_id: str, after: datetime
    ) -> Optional[TimelineMessage]:
        for message in self._timeline(tenant_id, session_id):
            if message.role == MessageRole.OPERATOR and message.created_at > after:
                return message
        return None

    async def list_push_subscribers(self, tenant_id: Optional[str] = None) -> List[Subscriber]:
        return [s for s in self.subscribers.values() if s.tenant_id is None or s.tenant_id == tenant_id]

    async def add_push_subscriber(self, endpoint: str, keys: dict, tenant_id: Optional[str] = None) -> Subscriber:
        for existing in self.subscribers.values():
            if existing.endpoint == endpoint:
                existing.keys = dict(keys)
                existing.tenant_id = tenant_id
                return existing
        subscriber = Subscriber(id=uuid.uuid4().hex, endpoint=endpoint, keys=dict(keys), tenant_id=tenant_id)
        self.subscribers[subscriber.id] = subscriber
        return subscriber

    async def delete_push_subscriber(self, subscriber_id: str) -> None:
        self.subscribers.pop(subscriber_id, None)

    async def save_pending_escalation(self, record: EscalationRecord) -> None:
        self.escalations[record.id] = record

    async def cancel_active_escalations(self, tenant_id: str, session_id: str) -> int:
        cancelled = 0
        for record in self.escalations.values():
            if (record.tenant_id, record.session_id) != (tenant_id, session_id):
                continue
            if not record.fired and not record.cancelled:
                record.cancelled = True
                cancelled += 1
        return cancelled

    async def claim_escalation(self, escalation_id: str, fired_at: datetime) -> bool:
        record = self.escalations.get(escalation_id)
        if record is None or record.fired or record.cancelled:
            return False
        record.fired = True
        return True

    async def list_unfired_escalations(self, due_before: Optional[datetime] = None) -> List[EscalationRecord]:
        records = [r for r in self.escalations.values() if not r.fired and not r.cancelled]
        if due_before is not None:
            records = [r for r in records if r.fire_at <= due_before]
        return sorted(records, key=lambda r: r.fire_at)


def _to_timeline(row: Message) -> TimelineMessage:
    return TimelineMessage(
        id=row.id,
        tenant_id=row.tenant_id,
        session_id=row.session_id,
        role=MessageRole(row.role),
        content=row.content,
        kind=MessageKind(row.kind or MessageKind.TEXT.value),
        created_at=_ensure_timezone(row.created_at),
    )


def _to_session(row: ChatSession) -> SessionRecord:
    return SessionRecord(
        tenant_id=row.tenant_id,
        session_id=row.session_id,
        mode=row.mode,
        visitor_name=row.visitor_name,
        visitor_contact=row.visitor_contact,
        created_at=_ensure_timezone(row.created_at),
        last_activity_at=_ensure_timezone(row.last_activity_at) if row.last_activity_at else None,
    )


def _to_chatbot(row: Chatbot) -> ChatbotRecord:
    return ChatbotRecord(id=row.id, token=row.token, name=row.name, instruction_text=row.instruction_text or "")


def _to_subscriber(row: PushSubscription) -> Subscriber:
    return Subscriber(id=row.id, endpoint=row.endpoint, keys=dict(row.keys or {}), tenant_id=row.tenant_id)


def _to_escalation(row: PendingEscalation) -> EscalationRecord:
    return EscalationRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        session_id=row.session_id,
        armed_at=_ensure_timezone(row.armed_at),
        fire_at=_ensure_timezone(row.fire_at),
        fired=row.fired,
        cancelled=row.cancelled,
    )


class SqlMessageStore(MessageStore):
    """SQLAlchemy-backed store; blocking ORM work runs in the threadpool."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def _run(self, func, *args):
        def _call():
            db = self.session_factory()
            try:
                result = func(db, *args)
                db.commit()
                return result
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        return await run_in_threadpool(_call)

    async def get_chatbot(self, tenant_id: str) -> Optional[ChatbotRecord]:
        def _get(db: Session):
            row = db.query(Chatbot).filter(Chatbot.id == tenant_id).first()
            return _to_chatbot(row) if row else None

        return await self._run(_get)

    async def get_chatbot_by_token(self, token: str) -> Optional[ChatbotRecord]:
        def _get(db: Session):
            row = db.query(Chatbot).filter(Chatbot.token == token).first()
            return _to_chatbot(row) if row else None

        return await self._run(_get)

    async def get_or_create_session(
        self,
        tenant_id: str,
        session_id: str,
        visitor_name: Optional[str] = None,
        visitor_contact: Optional[str] = None,
    ) -> SessionRecord:
        def _get_or_create(db: Session):
            now = utcnow()
            row = (
                db.query(ChatSession)
                .filter(ChatSession.tenant_id == tenant_id, ChatSession.session_id == session_id)
                .first()
            )
            if not row:
                row = ChatSession(
                    id=uuid.uuid4().hex,
                    tenant_id=tenant_id,
                    session_id=session_id,
                    mode="bot",
                    created_at=now,
                )
                db.add(row)
            if visitor_name:
                row.visitor_name = visitor_name
            if visitor_contact:
                row.visitor_contact = visitor_contact
            row.last_activity_at = now
            db.flush()
            return _to_session(row)

        return await self._run(_get_or_create)

    async def set_session_mode(self, tenant_id: str, session_id: str, mode: str) -> None:
        def _set(db: Session):
            row = (
                db.query(ChatSession)
                .filter(ChatSession.tenant_id == tenant_id, ChatSession.session_id == session_id)
                .first()
            )
            if row:
                row.mode = mode
            else:
                logger.warning(
                    "Mode change for unknown session",
                    extra={"context": {"tenant_id": tenant_id, "session_id": session_id, "mode": mode}},
                )

        await self._run(_set)

    async def append(self, message: TimelineMessage) -> TimelineMessage:
        def _append(db: Session):
            row = Message(
                tenant_id=message.tenant_id,
                session_id=message.session_id,
                role=message.role.value,
                content=message.content,
                kind=message.kind.value,
                created_at=message.created_at,
            )
            db.add(row)
            db.flush()
            message.id = row.id
            return message

        return await self._run(_append)

    async def recent_messages(self, tenant_id: str, session_id: str, limit: int) -> List[TimelineMessage]:
        if limit <= 0:
            return []

        def _recent(db: Session):
            rows = (
                db.query(Message)
                .filter(Message.tenant_id == tenant_id, Message.session_id == session_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
                .all()
            )
            return [_to_timeline(row) for row in reversed(rows)]

        return await self._run(_recent)

    async def find_operator_reply_after(
        self, tenant_id: str, session_id: str, after: datetime
    ) -> Optional[TimelineMessage]:
        def _find(db: Session):
            row = (
                db.query(Message)
                .filter(
                    Message.tenant_id == tenant_id,
                    Message.session_id == session_id,
                    Message.role == MessageRole.OPERATOR.value,
                    Message.created_at > after,
                )
                .order_by(Message.created_at.asc(), Message.id.asc())
                .first()
            )
            return _to_timeline(row) if row else None

        return await self._run(_find)

    async def list_push_subscribers(self, tenant_id: Optional[str] = None) -> List[Subscriber]:
        def _list(db: Session):
            query = db.query(PushSubscription)
            if tenant_id is None:
                query = query.filter(PushSubscription.tenant_id.is_(None))
            else:
                query = query.filter(
                    or_(PushSubscription.tenant_id.is_(None), PushSubscription.tenant_id == tenant_id)
                )
            return [_to_subscriber(row) for row in query.order_by(PushSubscription.created_at).all()]

        return await self._run(_list)

    async def add_push_subscriber(self, endpoint: str, keys: dict, tenant_id: Optional[str] = None) -> Subscriber:
        def _add(db: Session):
            row = db.query(PushSubscription).filter(PushSubscription.endpoint == endpoint).first()
            if not row:
                row = PushSubscription(id=uuid.uuid4().hex, endpoint=endpoint, created_at=utcnow())
                db.add(row)
            row.keys = dict(keys)
            row.tenant_id = tenant_id
            db.flush()
            return _to_subscriber(row)

        return await self._run(_add)

    async def delete_push_subscriber(self, subscriber_id: str) -> None:
        def _delete(db: Session):
            db.query(PushSubscription).filter(PushSubscription.id == subscriber_id).delete()

        await self._run(_delete)

    async def save_pending_escalation(self, record: EscalationRecord) -> None:
        def _save(db: Session):
            db.merge(
                PendingEscalation(
                    id=record.id,
                    tenant_id=record.tenant_id,
                    session_id=record.session_id,
                    armed_at=record.armed_at,
                    fire_at=record.fire_at,
                    fired=record.fired,
                    cancelled=record.cancelled,
                )
            )

        await self._run(_save)

    async def cancel_active_escalations(self, tenant_id: str, session_id: str) -> int:
        def _cancel(db: Session):
            return (
                db.query(PendingEscalation)
                .filter(
                    PendingEscalation.tenant_id == tenant_id,
                    PendingEscalation.session_id == session_id,
                    PendingEscalation.fired.is_(False),
                    PendingEscalation.cancelled.is_(False),
                )
                .update({PendingEscalation.cancelled: True}, synchronize_session=False)
            )

        return await self._run(_cancel)

    async def claim_escalation(self, escalation_id: str, fired_at: datetime) -> bool:
        def _claim(db: Session):
            updated = (
                db.query(PendingEscalation)
                .filter(
                    PendingEscalation.id == escalation_id,
                    PendingEscalation.fired.is_(False),
                    PendingEscalation.cancelled.is_(False),
                )
                .update(
                    {PendingEscalation.fired: True, PendingEscalation.fired_at: fired_at},
                    synchronize_session=False,
                )
            )
            return updated == 1

        return await self._run(_claim)

    async def list_unfired_escalations(self, due_before: Optional[datetime] = None) -> List[EscalationRecord]:
        def _list(db: Session):
            query = db.query(PendingEscalation).filter(
                PendingEscalation.fired.is_(False),
                PendingEscalation.cancelled.is_(False),
            )
            if due_before is not None:
                query = query.filter(PendingEscalation.fire_at <= due_before)
            return [_to_escalation(row) for row in query.order_by(PendingEscalation.fire_at).all()]

        return await self._run(_list)
