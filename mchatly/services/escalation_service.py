"""Deferred "user still waiting" notifications for operators.

A session that the bot could not fully answer is armed with a timer. When the
timer fires, the scheduler re-checks the timeline: an operator reply posted
after the arm time suppresses the notification, otherwise every eligible push
subscriber is notified. Arms are persisted as PendingEscalation rows so that a
restart (`restore`) or an external cron (`process_due`) can still fire them.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from mchatly.config import settings
from mchatly.logging_config import get_logger
from mchatly.services.alert_service import alert_warning
from mchatly.services.push_service import PushGoneError, PushSender
from mchatly.services.records import EscalationRecord, utcnow
from mchatly.services.store import MessageStore

logger = get_logger("escalation_service")

NOTIFICATION_TITLE = "Mchatly: User waiting"
NOTIFICATION_BODY = "A user is waiting for a reply."


def build_notification(tenant_id: str, session_id: str) -> dict:
    return {
        "title": NOTIFICATION_TITLE,
        "body": NOTIFICATION_BODY,
        "tag": session_id,
        "data": {"url": f"/dashboard/chatbots/{tenant_id}/live-chats?session={session_id}"},
    }


@dataclass
class EscalationHandle:
    id: str
    tenant_id: str
    session_id: str
    armed_at: datetime
    fire_at: datetime
    fired: bool = False
    cancelled: bool = False
    persisted: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return not self.fired and not self.cancelled

    def to_record(self) -> EscalationRecord:
        return EscalationRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            session_id=self.session_id,
            armed_at=self.armed_at,
            fire_at=self.fire_at,
            fired=self.fired,
            cancelled=self.cancelled,
        )

    @classmethod
    def from_record(cls, record: EscalationRecord) -> "EscalationHandle":
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            session_id=record.session_id,
            armed_at=record.armed_at,
            fire_at=record.fire_at,
            fired=record.fired,
            cancelled=record.cancelled,
            persisted=True,
        )


@dataclass
class DeliveryReport:
    sent: int = 0
    failed: int = 0
    removed: int = 0


# Returns True while the session still needs a human.
EscalationCondition = Callable[[EscalationHandle], Awaitable[bool]]


class EscalationScheduler:
    def __init__(
        self,
        store: MessageStore,
        push_sender: PushSender,
        delay_seconds: float = settings.escalation_delay_seconds,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.push_sender = push_sender
        self.delay_seconds = delay_seconds
        self.clock = clock
        self.sleep = sleep
        self._timers: Dict[tuple[str, str], EscalationHandle] = {}

    def current(self, tenant_id: str, session_id: str) -> Optional[EscalationHandle]:
        return self._timers.get((tenant_id, session_id))

    async def no_operator_reply(self, handle: EscalationHandle) -> bool:
        reply = await self.store.find_operator_reply_after(handle.tenant_id, handle.session_id, handle.armed_at)
        return reply is None

    async def arm(
        self,
        session_id: str,
        tenant_id: str,
        delay: Optional[float] = None,
        condition: Optional[EscalationCondition] = None,
    ) -> EscalationHandle:
        """Arm (or re-arm) the escalation timer for a session."""
        delay = self.delay_seconds if delay is None else max(0.0, delay)
        now = self.clock()
        handle = EscalationHandle(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            session_id=session_id,
            armed_at=now,
            fire_at=now + timedelta(seconds=delay),
        )

        # Swap timers before the first await so concurrent arms cannot both survive.
        key = (tenant_id, session_id)
        previous = self._timers.pop(key, None)
        if previous is not None:
            self._stop(previous)
        self._timers[key] = handle

        if previous is not None:
            await self._persist(previous)
        # Rows armed by other instances must lose their claim once this arm exists.
        await self._cancel_persisted(tenant_id, session_id)
        await self._persist(handle)
        if self._timers.get(key) is handle:
            handle.task = asyncio.create_task(self._run(handle, delay, condition))

        logger.info(
            "Escalation armed",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "session_id": session_id,
                    "escalation_id": handle.id,
                    "delay_seconds": delay,
                    "replaced": previous.id if previous else None,
                }
            },
        )
        return handle

    async def cancel(self, handle: EscalationHandle) -> bool:
        """Cancel a pending escalation. Only the current handle of a session can be cancelled."""
        key = (handle.tenant_id, handle.session_id)
        if self._timers.get(key) is not handle or not handle.active:
            return False
        self._timers.pop(key, None)
        self._stop(handle)
        await self._persist(handle)
        logger.info(
            "Escalation cancelled",
            extra={"context": {"session_id": handle.session_id, "escalation_id": handle.id}},
        )
        return True

    def _stop(self, handle: EscalationHandle) -> None:
        handle.cancelled = True
        if handle.task is not None and handle.task is not asyncio.current_task():
            handle.task.cancel()

    async def _persist(self, handle: EscalationHandle) -> None:
        try:
            await self.store.save_pending_escalation(handle.to_record())
            handle.persisted = True
        except Exception as exc:
            # The in-memory timer still fires; only restart durability is lost.
            logger.error(
                "Failed to persist escalation",
                extra={"context": {"escalation_id": handle.id, "session_id": handle.session_id, "error": str(exc)}},
            )

    async def _cancel_persisted(self, tenant_id: str, session_id: str) -> None:
        try:
            cancelled = await self.store.cancel_active_escalations(tenant_id, session_id)
        except Exception as exc:
            logger.error(
                "Failed to cancel persisted escalations",
                extra={"context": {"tenant_id": tenant_id, "session_id": session_id, "error": str(exc)}},
            )
            return
        if cancelled:
            logger.info(
                "Superseded persisted escalations",
                extra={"context": {"tenant_id": tenant_id, "session_id": session_id, "cancelled": cancelled}},
            )

    async def _run(
        self,
        handle: EscalationHandle,
        delay: float,
        condition: Optional[EscalationCondition],
    ) -> None:
        try:
            await self.sleep(delay)
            key = (handle.tenant_id, handle.session_id)
            if self._timers.get(key) is not handle:
                return
            self._timers.pop(key, None)
            await self.fire(handle, condition)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.error(
                "Escalation timer failed",
                extra={"context": {"escalation_id": handle.id, "session_id": handle.session_id, "error": str(exc)}},
            )

    async def _claim(self, handle: EscalationHandle) -> bool:
        if not handle.persisted:
            return True
        try:
            return await self.store.claim_escalation(handle.id, self.clock())
        except Exception as exc:
            # Better a duplicate notification than a missed one.
            logger.warning(
                "Escalation claim failed, firing anyway",
                extra={"context": {"escalation_id": handle.id, "error": str(exc)}},
            )
            return True

    async def fire(self, handle: EscalationHandle, condition: Optional[EscalationCondition] = None) -> bool:
        """Fire once: claim, re-check the condition, then notify. Returns True if notified."""
        if not handle.active:
            return False
        handle.fired = True

        if not await self._claim(handle):
            logger.info(
                "Escalation already handled elsewhere",
                extra={"context": {"escalation_id": handle.id, "session_id": handle.session_id}},
            )
            return False

        check = condition or self.no_operator_reply
        if not await check(handle):
            logger.info(
                "Escalation suppressed, operator already replied",
                extra={"context": {"escalation_id": handle.id, "session_id": handle.session_id}},
            )
            return False

        report = await self.notify(handle.tenant_id, handle.session_id)
        logger.info(
            "Escalation fired",
            extra={
                "context": {
                    "escalation_id": handle.id,
                    "session_id": handle.session_id,
                    "sent": report.sent,
                    "failed": report.failed,
                    "removed": report.removed,
                }
            },
        )
        return True

    async def notify(self, tenant_id: str, session_id: str) -> DeliveryReport:
        """Send the waiting-user notification to every eligible subscriber."""
        report = DeliveryReport()
        notification = build_notification(tenant_id, session_id)
        subscribers = await self.store.list_push_subscribers(tenant_id)

        for subscriber in subscribers:
            try:
                await self.push_sender.send(subscriber, notification)
                report.sent += 1
            except PushGoneError:
                report.removed += 1
                try:
                    await self.store.delete_push_subscriber(subscriber.id)
                except Exception as exc:
                    logger.error(
                        "Failed to delete expired subscription",
                        extra={"context": {"subscriber_id": subscriber.id, "error": str(exc)}},
                    )
            except Exception as exc:
                report.failed += 1
                logger.warning(
                    "Push delivery failed",
                    extra={
                        "context": {
                            "subscriber_id": subscriber.id,
                            "session_id": session_id,
                            "status_code": getattr(exc, "status_code", None),
                            "error": str(exc),
                        }
                    },
                )

        if subscribers and report.sent == 0 and report.failed:
            await alert_warning(
                "Waiting-user notification reached no operator",
                {"tenant_id": tenant_id, "session_id": session_id, "failed": report.failed},
            )
        return report

    def _latest_per_session(self, records: List[EscalationRecord]) -> tuple[list, list]:
        latest: Dict[tuple[str, str], EscalationRecord] = {}
        stale = []
        for record in sorted(records, key=lambda r: r.armed_at):
            key = (record.tenant_id, record.session_id)
            if key in latest:
                stale.append(latest[key])
            latest[key] = record
        return list(latest.values()), stale

    async def _cancel_stale(self, stale: List[EscalationRecord]) -> None:
        for record in stale:
            record.cancelled = True
            await self._persist(EscalationHandle.from_record(record))

    async def restore(self) -> int:
        """Re-arm persisted escalations after a restart, keeping their original fire time."""
        records = await self.store.list_unfired_escalations()
        latest, stale = self._latest_per_session(records)
        await self._cancel_stale(stale)

        now = self.clock()
        restored = 0
        for record in latest:
            key = (record.tenant_id, record.session_id)
            if key in self._timers:
                continue
            handle = EscalationHandle.from_record(record)
            delay = max(0.0, (handle.fire_at - now).total_seconds())
            self._timers[key] = handle
            handle.task = asyncio.create_task(self._run(handle, delay, None))
            restored += 1

        logger.info("Escalations restored", extra={"context": {"restored": restored, "stale": len(stale)}})
        return restored

    async def process_due(self, now: Optional[datetime] = None) -> int:
        """Fire every persisted escalation whose time has come. Returns how many notified."""
        now = now or self.clock()
        records = await self.store.list_unfired_escalations(due_before=now)
        latest, stale = self._latest_per_session(records)
        await self._cancel_stale(stale)

        notified = 0
        for record in latest:
            key = (record.tenant_id, record.session_id)
            handle = self._timers.get(key)
            if handle is not None and handle.id == record.id:
                self._timers.pop(key, None)
                if handle.task is not None:
                    handle.task.cancel()
            else:
                handle = EscalationHandle.from_record(record)
            if await self.fire(handle):
                notified += 1
        return notified

    async def shutdown(self) -> None:
        """Stop in-memory timers; persisted rows stay unfired for the next restore."""
        handles = list(self._timers.values())
        self._timers.clear()
        tasks = [h.task for h in handles if h.task is not None and not h.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
