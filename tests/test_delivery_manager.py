# tests/test_delivery_manager.py
"""
Tests for DeliveryManager:
- notify creates, persists and sends
- claim guarantees a single send under concurrency
- suppression, carrier failures, escalation
- provider receipts
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from mayday.core.dispatch.domain import ContactPreference, Responder
from mayday.core.errors import NotFoundError, ValidationError
from mayday.core.notifications.delivery import DeliveryManager
from mayday.core.notifications.domain import (
    Channel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
    RecipientVolume,
    SuppressionReason,
)
from mayday.core.notifications.preferences import (
    Batching,
    ChannelPreference,
    NotificationPreferences,
    RateLimits,
    preferences_for_responder,
)
from mayday.core.notifications.retry_worker import NotificationRetryWorker
from mayday.infra.metrics import get_metrics_collector
from tests.fakes import FIXED_NOW, FakeCarrier

PHONE = "+13045550101"


class AckingCarrier(FakeCarrier):
    """The officer acknowledges the dispatch while the SMS is in flight."""

    def __init__(self, repo):
        super().__init__()
        self.repo = repo

    async def send(self, channel, address, body, *, subject=None, reference=None):
        await self.repo.mark_response("dispatch", "d-1", "officer-1", "ACKNOWLEDGED", FIXED_NOW)
        return await super().send(channel, address, body, subject=subject, reference=reference)


class StaleClaimCarrier(FakeCarrier):
    """Sends so slowly that another worker resets the claim to pending meanwhile."""

    def __init__(self, repo):
        super().__init__()
        self.repo = repo

    async def send(self, channel, address, body, *, subject=None, reference=None):
        row = self.repo.rows[reference]
        row.status = NotificationStatus.PENDING
        row.next_retry_at = FIXED_NOW
        row.version += 1
        return await super().send(channel, address, body, subject=subject, reference=reference)


@pytest.fixture
def manager(notification_repo, carrier, clock):
    return DeliveryManager(notification_repo, carrier, clock=clock)


def _responder_prefs(preference=ContactPreference.SMS, phone=PHONE, email="aco@example.org"):
    return preferences_for_responder(
        Responder(officer_id="officer-1", jurisdiction="KANAWHA", phone=phone, email=email, preference=preference)
    )


async def _notify(manager, prefs, **overrides):
    values = dict(
        recipient_id="officer-1",
        recipient_type=RecipientType.OFFICER,
        notification_type=NotificationType.DISPATCH_ASSIGNMENT,
        priority=NotificationPriority.URGENT,
        title="MAYDAY ACO dispatch",
        body="Full dispatch text with citations",
        short_body="Short dispatch text",
        prefs=prefs,
        related_entity_type="dispatch",
        related_entity_id="d-1",
    )
    values.update(overrides)
    return await manager.notify(**values)


async def _pending(manager, notification_repo, address=PHONE, retry_count=0):
    n = manager.router.create_notification(
        recipient_id="officer-1",
        recipient_type=RecipientType.OFFICER,
        notification_type=NotificationType.DISPATCH_ASSIGNMENT,
        priority=NotificationPriority.URGENT,
        title="Dispatch",
        body="Respond to 1 Main St",
        channel=Channel.SMS,
        delivery_address=address,
    )
    n.retry_count = retry_count
    return await notification_repo.create(n)


class TestNotify:
    @pytest.mark.asyncio
    async def test_sends_on_preferred_channel(self, manager, notification_repo, carrier):
        outcome = await _notify(manager, _responder_prefs())

        assert outcome.sent is True
        assert carrier.sent == [(Channel.SMS, PHONE, "Short dispatch text")]
        stored = notification_repo.rows[outcome.notification.id]
        assert stored.status is NotificationStatus.SENT
        assert stored.external_id == "SM0001"
        assert stored.sent_at == FIXED_NOW
        assert stored.related_entity_id == "d-1"

    @pytest.mark.asyncio
    async def test_email_gets_full_body(self, manager, carrier):
        outcome = await _notify(manager, _responder_prefs(preference=ContactPreference.EMAIL))

        assert outcome.sent is True
        assert carrier.sent == [(Channel.EMAIL, "aco@example.org", "Full dispatch text with citations")]

    @pytest.mark.asyncio
    async def test_no_usable_channel_stores_suppressed(self, manager, notification_repo, carrier):
        outcome = await _notify(manager, _responder_prefs(phone=None, email=None))

        assert outcome.sent is False
        assert outcome.claimed is False
        assert outcome.suppressed_reason is SuppressionReason.NO_CHANNEL
        assert carrier.sent == []
        stored = notification_repo.rows[outcome.notification.id]
        assert stored.status is NotificationStatus.SUPPRESSED
        assert stored.channel is None

    @pytest.mark.asyncio
    async def test_opt_out_suppresses_and_persists(self, manager, notification_repo, carrier):
        prefs = _responder_prefs().model_copy(update={"global_opt_out": True})

        outcome = await _notify(manager, prefs)

        assert outcome.suppressed_reason is SuppressionReason.OPT_OUT
        assert carrier.sent == []
        assert notification_repo.rows[outcome.notification.id].status is NotificationStatus.SUPPRESSED

    @pytest.mark.asyncio
    async def test_rate_limited(self, manager, notification_repo, carrier):
        prefs = _responder_prefs().model_copy(
            update={"rate_limits": RateLimits(enabled=True, max_per_hour=3)}
        )
        notification_repo.volume = RecipientVolume(last_hour=3, last_day=3)

        outcome = await _notify(manager, prefs)

        assert outcome.suppressed_reason is SuppressionReason.RATE_LIMIT
        assert carrier.sent == []


class TestDeliver:
    @pytest.mark.asyncio
    async def test_carrier_failure_schedules_retry(self, notification_repo, clock):
        carrier = FakeCarrier(failing={PHONE})
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        n = await _pending(manager, notification_repo)

        outcome = await manager.deliver(n)

        assert outcome.claimed is True
        assert outcome.sent is False
        stored = notification_repo.rows[n.id]
        assert stored.status is NotificationStatus.PENDING
        assert stored.retry_count == 1
        assert stored.next_retry_at == FIXED_NOW + timedelta(minutes=2)
        assert stored.failure_reason == "30003: unreachable destination"

    @pytest.mark.asyncio
    async def test_carrier_exception_is_a_failed_attempt(self, notification_repo, clock):
        carrier = FakeCarrier(raising={PHONE})
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        n = await _pending(manager, notification_repo)

        outcome = await manager.deliver(n)

        assert outcome.sent is False
        assert "ConnectionError" in outcome.error
        assert notification_repo.rows[n.id].retry_count == 1

    @pytest.mark.asyncio
    async def test_last_attempt_fails_and_escalates(self, notification_repo, clock):
        carrier = FakeCarrier(failing={PHONE})
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        n = await _pending(manager, notification_repo, retry_count=2)

        outcome = await manager.deliver(n)

        assert notification_repo.rows[n.id].status is NotificationStatus.FAILED
        assert outcome.needs_escalation is True
        assert outcome.escalate_to == "moderator"
        assert get_metrics_collector().get_counter(
            "notification_escalations_total", {"role": "moderator"}
        ) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliver_sends_once(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)

        outcomes = await asyncio.gather(*(manager.deliver(n) for _ in range(5)))

        assert len(carrier.sent) == 1
        assert notification_repo.claims == 1
        assert sum(1 for o in outcomes if o.claimed) == 1
        assert sum(1 for o in outcomes if o.sent) == 1

    @pytest.mark.asyncio
    async def test_claim_error_returns_unclaimed(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)
        notification_repo.fail_claim = ConnectionError("pool exhausted")

        outcome = await manager.deliver(n)

        assert outcome.claimed is False
        assert outcome.error == "pool exhausted"
        assert carrier.sent == []
        assert get_metrics_collector().get_counter(
            "database_errors_total", {"operation": "notification_claim"}
        ) == 1

    @pytest.mark.asyncio
    async def test_non_pending_not_sent(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)
        notification_repo.rows[n.id].status = NotificationStatus.CANCELLED

        outcome = await manager.deliver(n)

        assert outcome.claimed is False
        assert carrier.sent == []

    @pytest.mark.asyncio
    async def test_stored_preferences_used_when_none_given(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)
        notification_repo.preferences["officer-1"] = NotificationPreferences(
            recipient_id="officer-1",
            channels={Channel.SMS: ChannelPreference(enabled=False, verified=True, address=PHONE)},
        )

        outcome = await manager.deliver(n)

        assert outcome.suppressed_reason is SuppressionReason.CHANNEL_DISABLED
        assert carrier.sent == []

    @pytest.mark.asyncio
    async def test_without_stored_preferences_sends_to_own_address(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)

        outcome = await manager.deliver(n)

        assert outcome.sent is True
        assert carrier.sent[0][1] == PHONE


class TestSendOnce:
    @pytest.mark.asyncio
    async def test_claim_error_is_picked_up_by_retry_worker(self, manager, notification_repo, carrier, clock):
        notification_repo.fail_claim = ConnectionError("pool exhausted")
        outcome = await _notify(manager, _responder_prefs())
        assert outcome.claimed is False
        notification_repo.fail_claim = None
        worker = NotificationRetryWorker(notification_repo, manager, clock=clock)

        assert await worker.run_once() == []
        clock.advance(minutes=2)
        outcomes = await worker.run_once()

        assert [o.sent for o in outcomes] == [True]
        assert carrier.sent == [(Channel.SMS, PHONE, "Short dispatch text")]
        assert notification_repo.rows[outcome.notification.id].status is NotificationStatus.SENT
        assert await worker.run_once() == []
        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_acknowledged_during_send_is_sent_once(self, notification_repo, clock):
        carrier = AckingCarrier(notification_repo)
        manager = DeliveryManager(notification_repo, carrier, clock=clock)

        outcome = await _notify(manager, _responder_prefs())

        stored = notification_repo.rows[outcome.notification.id]
        assert outcome.sent is True
        assert stored.status is NotificationStatus.SENT
        assert stored.response_action == "ACKNOWLEDGED"
        clock.advance(hours=1)
        assert await NotificationRetryWorker(notification_repo, manager, clock=clock).run_once() == []
        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_claim_reset_during_send_still_recorded_as_sent(self, notification_repo, clock):
        carrier = StaleClaimCarrier(notification_repo)
        manager = DeliveryManager(notification_repo, carrier, clock=clock)

        outcome = await _notify(manager, _responder_prefs())

        stored = notification_repo.rows[outcome.notification.id]
        assert outcome.sent is True
        assert stored.status is NotificationStatus.SENT
        assert stored.external_id == "SM0001"
        assert stored.next_retry_at is None
        clock.advance(hours=1)
        assert await NotificationRetryWorker(notification_repo, manager, clock=clock).run_once() == []
        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_already_acknowledged_is_cancelled_not_sent(self, manager, notification_repo, carrier):
        n = await _pending(manager, notification_repo)
        notification_repo.rows[n.id].response_action = "ACKNOWLEDGED"
        notification_repo.rows[n.id].acknowledged_at = FIXED_NOW

        outcome = await manager.deliver(n)

        assert outcome.claimed is True
        assert outcome.sent is False
        assert carrier.sent == []
        stored = notification_repo.rows[n.id]
        assert stored.status is NotificationStatus.CANCELLED
        assert stored.response_action == "ACKNOWLEDGED"


def _batching_prefs(**batching):
    return _responder_prefs().model_copy(update={"batching": Batching(enabled=True, **batching)})


class TestBatching:
    @pytest.mark.asyncio
    async def test_case_update_held_until_window_closes(self, manager, notification_repo, carrier, clock):
        outcome = await _notify(
            manager,
            _batching_prefs(),
            notification_type=NotificationType.CASE_UPDATE,
            priority=NotificationPriority.NORMAL,
        )

        assert outcome.sent is False
        assert outcome.batched_until == FIXED_NOW + timedelta(minutes=15)
        assert carrier.sent == []
        stored = notification_repo.rows[outcome.notification.id]
        assert stored.status is NotificationStatus.PENDING
        assert stored.scheduled_for == FIXED_NOW + timedelta(minutes=15)
        assert get_metrics_collector().get_counter("notifications_batched_total", {"channel": "sms"}) == 1

        worker = NotificationRetryWorker(notification_repo, manager, clock=clock)
        clock.advance(minutes=14)
        assert await worker.run_once() == []
        clock.advance(minutes=1)
        outcomes = await worker.run_once()

        assert [o.sent for o in outcomes] == [True]
        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_full_batch_sends_immediately(self, manager, notification_repo, carrier):
        notification_repo.volume = RecipientVolume(batched=10)

        outcome = await _notify(
            manager,
            _batching_prefs(max_batch_size=10),
            notification_type=NotificationType.CASE_UPDATE,
            priority=NotificationPriority.NORMAL,
        )

        assert outcome.sent is True
        assert outcome.batched_until is None

    @pytest.mark.asyncio
    async def test_dispatch_assignment_never_held(self, manager, carrier):
        outcome = await _notify(manager, _batching_prefs())

        assert outcome.sent is True
        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_not_held(self, manager, notification_repo, carrier):
        notification_repo.preferences["officer-1"] = _batching_prefs(
            batchable_types=[NotificationType.DISPATCH_ASSIGNMENT],
        )
        n = await _pending(manager, notification_repo, retry_count=1)

        outcome = await manager.deliver(n)

        assert outcome.sent is True
        assert outcome.batched_until is None


class TestReceipts:
    @pytest.mark.asyncio
    async def test_delivered_receipt(self, manager, notification_repo, clock):
        outcome = await _notify(manager, _responder_prefs())
        clock.advance(seconds=20)

        n = await manager.record_receipt(outcome.notification.id, "DELIVERED")

        assert n.status is NotificationStatus.DELIVERED
        assert notification_repo.rows[n.id].delivered_at == FIXED_NOW + timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_undelivered_receipt_schedules_retry(self, manager, notification_repo):
        outcome = await _notify(manager, _responder_prefs())

        n = await manager.record_receipt(outcome.notification.id, "undelivered")

        assert n.status is NotificationStatus.PENDING
        assert notification_repo.rows[n.id].retry_count == 1

    @pytest.mark.asyncio
    async def test_receipt_for_terminal_notification_ignored(self, manager, notification_repo):
        outcome = await _notify(manager, _responder_prefs())
        await manager.record_receipt(outcome.notification.id, "delivered")

        n = await manager.record_receipt(outcome.notification.id, "failed")

        assert n.status is NotificationStatus.DELIVERED
        assert notification_repo.rows[n.id].status is NotificationStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_receipt_status(self, manager):
        with pytest.raises(ValidationError):
            await manager.record_receipt("n-1", "bounced-ish")

    @pytest.mark.asyncio
    async def test_unknown_notification(self, manager):
        with pytest.raises(NotFoundError):
            await manager.record_receipt("missing", "delivered")
