import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from factories import SESSION_ID, TENANT_ID

from mchatly.services.escalation_service import (
    NOTIFICATION_BODY,
    NOTIFICATION_TITLE,
    EscalationScheduler,
    build_notification,
)
from mchatly.services.push_service import PushDeliveryError, PushGoneError
from mchatly.services.records import EscalationRecord, MessageRole, TimelineMessage

T1 = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(store, push_sender):
    return EscalationScheduler(store, push_sender, delay_seconds=0.01, clock=lambda: T1)


@pytest.fixture(autouse=True)
def _no_alerts():
    with patch("mchatly.services.escalation_service.alert_warning", new=AsyncMock(return_value=False)) as alert:
        yield alert


async def _subscribe(store, count=1, tenant_id=None):
    subscribers = []
    for i in range(count):
        subscribers.append(
            await store.add_push_subscriber(f"https://push.example/{i}", {"p256dh": "k", "auth": "a"}, tenant_id)
        )
    return subscribers


async def _operator_reply(store, created_at):
    await store.append(
        TimelineMessage(
            tenant_id=TENANT_ID,
            session_id=SESSION_ID,
            role=MessageRole.OPERATOR,
            content="On it",
            created_at=created_at,
        )
    )


class TestBuildNotification:
    def test_payload(self):
        notification = build_notification("bot-1", "s1")
        assert notification["title"] == NOTIFICATION_TITLE == "Mchatly: User waiting"
        assert notification["body"] == NOTIFICATION_BODY
        assert notification["tag"] == "s1"
        assert notification["data"]["url"] == "/dashboard/chatbots/bot-1/live-chats?session=s1"


class TestArm:
    @pytest.mark.asyncio
    async def test_fires_and_notifies(self, scheduler, store, push_sender):
        await _subscribe(store)

        handle = await scheduler.arm(SESSION_ID, TENANT_ID)
        await handle.task

        assert handle.fired is True
        push_sender.send.assert_awaited_once()
        subscriber, notification = push_sender.send.call_args[0]
        assert notification["tag"] == SESSION_ID
        assert store.escalations[handle.id].fired is True

    @pytest.mark.asyncio
    async def test_double_arm_fires_once(self, scheduler, store, push_sender):
        await _subscribe(store)

        first = await scheduler.arm(SESSION_ID, TENANT_ID)
        second = await scheduler.arm(SESSION_ID, TENANT_ID)
        await second.task
        await asyncio.gather(first.task, return_exceptions=True)

        assert first.cancelled is True
        assert first.fired is False
        assert push_sender.send.await_count == 1
        assert store.escalations[first.id].cancelled is True

    @pytest.mark.asyncio
    async def test_rearm_on_another_instance_fires_once(self, store, push_sender):
        await _subscribe(store)
        first_instance = EscalationScheduler(store, push_sender, delay_seconds=0.05, clock=lambda: T1)
        second_instance = EscalationScheduler(store, push_sender, delay_seconds=0.05, clock=lambda: T1)

        first = await first_instance.arm(SESSION_ID, TENANT_ID)
        second = await second_instance.arm(SESSION_ID, TENANT_ID)
        await asyncio.gather(first.task, second.task)

        assert push_sender.send.await_count == 1
        assert store.escalations[first.id].cancelled is True
        assert store.escalations[second.id].fired is True

    @pytest.mark.asyncio
    async def test_same_session_id_in_two_tenants_is_independent(self, scheduler, store, push_sender):
        await _subscribe(store)

        mine = await scheduler.arm(SESSION_ID, TENANT_ID)
        theirs = await scheduler.arm(SESSION_ID, "bot-2")

        assert scheduler.current(TENANT_ID, SESSION_ID) is mine
        assert scheduler.current("bot-2", SESSION_ID) is theirs
        await asyncio.gather(mine.task, theirs.task)

        assert mine.cancelled is False
        assert store.escalations[mine.id].fired is True
        assert push_sender.send.await_count == 2

    @pytest.mark.asyncio
    async def test_records_arm_time_and_fire_time(self, store, push_sender):
        scheduler = EscalationScheduler(store, push_sender, delay_seconds=1800, clock=lambda: T1)
        handle = await scheduler.arm(SESSION_ID, TENANT_ID)

        assert handle.armed_at == T1
        assert handle.fire_at == T1 + timedelta(seconds=1800)
        record = store.escalations[handle.id]
        assert (record.armed_at, record.fire_at, record.fired) == (T1, handle.fire_at, False)
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_sessions_have_independent_timers(self, scheduler, store, push_sender):
        await _subscribe(store)

        a = await scheduler.arm("s-a", TENANT_ID)
        b = await scheduler.arm("s-b", TENANT_ID)
        await asyncio.gather(a.task, b.task)

        assert push_sender.send.await_count == 2

    @pytest.mark.asyncio
    async def test_persist_failure_still_fires(self, scheduler, store, push_sender):
        await _subscribe(store)
        store.save_pending_escalation = AsyncMock(side_effect=RuntimeError("db down"))

        handle = await scheduler.arm(SESSION_ID, TENANT_ID)
        await handle.task

        push_sender.send.assert_awaited_once()


class TestSuppression:
    @pytest.mark.asyncio
    async def test_operator_reply_after_arm_suppresses(self, scheduler, store, push_sender):
        await _subscribe(store)

        handle = await scheduler.arm(SESSION_ID, TENANT_ID)
        await _operator_reply(store, T1 + timedelta(seconds=5))
        await handle.task

        assert handle.fired is True
        push_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_operator_reply_before_arm_does_not_suppress(self, scheduler, store, push_sender):
        await _subscribe(store)
        await _operator_reply(store, T1 - timedelta(minutes=1))

        handle = await scheduler.arm(SESSION_ID, TENANT_ID)
        await handle.task

        push_sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_condition(self, scheduler, store, push_sender):
        await _subscribe(store)
        condition = AsyncMock(return_value=False)

        handle = await scheduler.arm(SESSION_ID, TENANT_ID, condition=condition)
        await handle.task

        condition.assert_awaited_once_with(handle)
        push_sender.send.assert_not_awaited()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_current_handle(self, store, push_sender):
        scheduler = EscalationScheduler(store, push_sender, delay_seconds=60, clock=lambda: T1)
        handle = await scheduler.arm(SESSION_ID, TENANT_ID)

        assert await scheduler.cancel(handle) is True
        assert scheduler.current(TENANT_ID, SESSION_ID) is None
        assert store.escalations[handle.id].cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_replaced_handle_is_noop(self, store, push_sender):
        scheduler = EscalationScheduler(store, push_sender, delay_seconds=60, clock=lambda: T1)
        old = await scheduler.arm(SESSION_ID, TENANT_ID)
        new = await scheduler.arm(SESSION_ID, TENANT_ID)

        assert await scheduler.cancel(old) is False
        assert scheduler.current(TENANT_ID, SESSION_ID) is new
        await scheduler.shutdown()


class TestDelivery:
    @pytest.mark.asyncio
    async def test_failures_isolated_and_gone_removed(self, scheduler, store, push_sender):
        gone, broken, healthy = await _subscribe(store, count=3)
        push_sender.send.side_effect = [PushGoneError("gone", 410), PushDeliveryError("boom", 500), None]

        report = await scheduler.notify(TENANT_ID, SESSION_ID)

        assert (report.sent, report.failed, report.removed) == (1, 1, 1)
        remaining = {s.id for s in await store.list_push_subscribers(TENANT_ID)}
        assert remaining == {broken.id, healthy.id}

    @pytest.mark.asyncio
    async def test_tenant_scoped_subscribers(self, scheduler, store, push_sender):
        await _subscribe(store)
        await store.add_push_subscriber("https://push.example/mine", {"p256dh": "k", "auth": "a"}, TENANT_ID)
        await store.add_push_subscriber("https://push.example/other", {"p256dh": "k", "auth": "a"}, "bot-2")

        report = await scheduler.notify(TENANT_ID, SESSION_ID)

        assert report.sent == 2
        endpoints = {call.args[0].endpoint for call in push_sender.send.call_args_list}
        assert endpoints == {"https://push.example/0", "https://push.example/mine"}

    @pytest.mark.asyncio
    async def test_total_failure_alerts(self, scheduler, store, push_sender, _no_alerts):
        await _subscribe(store, count=2)
        push_sender.send.side_effect = PushDeliveryError("boom", 500)

        report = await scheduler.notify(TENANT_ID, SESSION_ID)

        assert report.failed == 2
        _no_alerts.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_subscribers(self, scheduler, push_sender):
        report = await scheduler.notify(TENANT_ID, SESSION_ID)
        assert report.sent == 0
        push_sender.send.assert_not_awaited()


class TestDurability:
    def _record(self, id="esc-1", session_id=SESSION_ID, armed_at=T1, fire_in=60):
        return EscalationRecord(
            id=id,
            tenant_id=TENANT_ID,
            session_id=session_id,
            armed_at=armed_at,
            fire_at=armed_at + timedelta(seconds=fire_in),
        )

    @pytest.mark.asyncio
    async def test_restore_fires_overdue_rows(self, store, push_sender):
        await _subscribe(store)
        await store.save_pending_escalation(self._record(fire_in=-60))
        scheduler = EscalationScheduler(store, push_sender, clock=lambda: T1)

        assert await scheduler.restore() == 1
        await scheduler.current(TENANT_ID, SESSION_ID).task

        push_sender.send.assert_awaited_once()
        assert store.escalations["esc-1"].fired is True

    @pytest.mark.asyncio
    async def test_restore_keeps_latest_per_session(self, store, push_sender):
        await store.save_pending_escalation(self._record(id="old", armed_at=T1 - timedelta(minutes=5)))
        await store.save_pending_escalation(self._record(id="new", armed_at=T1))
        scheduler = EscalationScheduler(store, push_sender, clock=lambda: T1)

        assert await scheduler.restore() == 1
        assert scheduler.current(TENANT_ID, SESSION_ID).id == "new"
        assert store.escalations["old"].cancelled is True
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_restore_keeps_rows_of_other_tenants(self, store, push_sender):
        await store.save_pending_escalation(self._record(id="mine"))
        other = self._record(id="theirs", armed_at=T1 + timedelta(seconds=1))
        other.tenant_id = "bot-2"
        await store.save_pending_escalation(other)
        scheduler = EscalationScheduler(store, push_sender, clock=lambda: T1)

        assert await scheduler.restore() == 2
        assert store.escalations["mine"].cancelled is False
        assert scheduler.current("bot-2", SESSION_ID).id == "theirs"
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_process_due_fires_once(self, store, push_sender):
        await _subscribe(store)
        await store.save_pending_escalation(self._record())
        scheduler = EscalationScheduler(store, push_sender, clock=lambda: T1)

        assert await scheduler.process_due(now=T1 + timedelta(minutes=5)) == 1
        assert await scheduler.process_due(now=T1 + timedelta(minutes=10)) == 0
        push_sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_process_due_skips_future_rows(self, store, push_sender):
        await store.save_pending_escalation(self._record(fire_in=3600))
        scheduler = EscalationScheduler(store, push_sender, clock=lambda: T1)

        assert await scheduler.process_due(now=T1) == 0

    @pytest.mark.asyncio
    async def test_timer_does_not_refire_after_other_instance_claimed(self, store, push_sender):
        await _subscribe(store)
        local = EscalationScheduler(store, push_sender, delay_seconds=60, clock=lambda: T1)
        handle = await local.arm(SESSION_ID, TENANT_ID)

        remote = EscalationScheduler(store, push_sender, clock=lambda: T1)
        assert await remote.process_due(now=T1 + timedelta(minutes=5)) == 1

        assert await local.fire(handle) is False
        assert push_sender.send.await_count == 1
        await local.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_leaves_rows_unfired(self, store, push_sender):
        scheduler = EscalationScheduler(store, push_sender, delay_seconds=60, clock=lambda: T1)
        handle = await scheduler.arm(SESSION_ID, TENANT_ID)

        await scheduler.shutdown()

        assert handle.task.cancelled() or handle.task.done()
        assert store.escalations[handle.id].fired is False
        assert scheduler.current(TENANT_ID, SESSION_ID) is None
