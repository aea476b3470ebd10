# mayday/core/notifications/delivery.py
"""
Delivery manager: drives one notification through a send attempt.

    claim (pending -> queued, CAS) -> should_send -> batch hold -> carrier -> sent | retry | failed

Only one worker can win the claim, so a notification is never sent twice
concurrently. Carrier and repository errors during a send are logged and
turned into state transitions; ``deliver`` itself does not raise for them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from mayday.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from mayday.core.notifications.domain import (
    Channel,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
    RecipientVolume,
    SuppressionReason,
)
from mayday.core.notifications.ports import CarrierResult, MessageCarrier, NotificationRepository
from mayday.core.notifications.preferences import (
    NotificationPreferences,
    preferences_for_address,
)
from mayday.core.notifications.router import NotificationRouter, batch_release_time
from mayday.infra.audit_log import audit_event
from mayday.infra.logging_config import get_logger, mask_address
from mayday.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_VOICE_CHANNELS = (Channel.SMS, Channel.PHONE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeliveryOutcome:
    notification: Notification
    claimed: bool = True
    sent: bool = False
    suppressed_reason: Optional[SuppressionReason] = None
    error: Optional[str] = None
    needs_escalation: bool = False
    escalate_to: Optional[str] = None
    batched_until: Optional[datetime] = None


class DeliveryManager:
    def __init__(
        self,
        repository: NotificationRepository,
        carrier: MessageCarrier,
        router: NotificationRouter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repository
        self._carrier = carrier
        self._clock = clock
        self._router = router or NotificationRouter(clock=clock)

    @property
    def router(self) -> NotificationRouter:
        return self._router

    async def notify(
        self,
        *,
        recipient_id: str,
        recipient_type: RecipientType,
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        body: str,
        prefs: NotificationPreferences,
        short_body: str | None = None,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        action_url: str | None = None,
    ) -> DeliveryOutcome:
        """
        Create, persist and deliver one notification.

        The channel is chosen from the recipient's preferences. With no
        usable channel a suppressed (``no_channel``) notification is
        stored instead.

        Raises:
            ValidationError: if recipient fields are missing
            Exception: if the notification cannot be persisted
        """
        channel = self._router.get_best_channel(prefs, notification_type, priority)
        address = None
        if channel is not None:
            channel_pref = prefs.channel(channel)
            address = channel_pref.address if channel_pref else None
            if not address:
                channel = None

        notification = self._router.create_notification(
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            notification_type=notification_type,
            priority=priority,
            title=title,
            body=body,
            short_body=short_body,
            channel=channel,
            delivery_address=address or "",
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            action_url=action_url,
        )

        if channel is None:
            self._router.mark_suppressed(notification, SuppressionReason.NO_CHANNEL, "No usable channel")
            stored = await self._repo.create(notification)
            DispatchMetrics.notification_outcome("none", NotificationStatus.SUPPRESSED.value)
            logger.info(
                f"Notification suppressed, no usable channel: recipient={recipient_id}, "
                f"type={notification_type.value}",
                extra={"notification_id": stored.id, "officer_id": recipient_id},
            )
            return DeliveryOutcome(
                notification=stored,
                claimed=False,
                suppressed_reason=SuppressionReason.NO_CHANNEL,
            )

        stored = await self._repo.create(notification)
        return await self.deliver(stored, prefs)

    async def deliver(
        self,
        notification: Notification,
        prefs: NotificationPreferences | None = None,
    ) -> DeliveryOutcome:
        """
        Make one send attempt for a pending notification.

        ``prefs`` defaults to the recipient's stored preferences, or to
        the notification's own channel when nothing is stored.
        """
        now = self._clock()
        try:
            claimed = await self._repo.claim(notification.id, now)
        except Exception as exc:
            logger.error(
                f"Notification claim failed: {type(exc).__name__}: {exc}",
                extra={"notification_id": notification.id},
                exc_info=True,
            )
            DispatchMetrics.database_error("notification_claim")
            return DeliveryOutcome(notification=notification, claimed=False, error=str(exc))

        if claimed is None:
            logger.debug(
                f"Notification already claimed or no longer pending: id={notification.id}",
                extra={"notification_id": notification.id},
            )
            return DeliveryOutcome(notification=notification, claimed=False)

        n = claimed
        if n.acknowledged_at is not None:
            expected = n.version
            self._router.mark_cancelled(n, f"Recipient already responded: {n.response_action}")
            await self._persist(n, expected)
            DispatchMetrics.notification_outcome(self._channel_label(n), n.status.value)
            logger.info(
                f"Notification cancelled, recipient already responded: action={n.response_action}",
                extra={"notification_id": n.id, "officer_id": n.recipient_id},
            )
            return DeliveryOutcome(notification=n)

        prefs, volume = await self._load_recipient_state(n, prefs, now)

        decision = self._router.should_send(n, prefs, recent_volume=volume, now=now)
        if not decision.allowed:
            expected = n.version
            self._router.mark_suppressed(n, decision.reason, decision.detail)
            await self._persist(n, expected)
            DispatchMetrics.notification_outcome(self._channel_label(n), n.status.value)
            logger.info(
                f"Notification suppressed: reason={decision.reason.value}, detail={decision.detail}",
                extra={"notification_id": n.id, "officer_id": n.recipient_id},
            )
            return DeliveryOutcome(notification=n, suppressed_reason=decision.reason)

        if self._holds_for_batch(n, prefs, volume):
            return await self._hold_for_batch(n, prefs, now)

        result = await self._send(n)

        expected = n.version
        if result.success:
            self._router.mark_sent(n, external_id=result.provider_id)
            n.provider_status = result.provider_status
            if not await self._persist(n, expected):
                n = await self._resave_sent(n, result)
        else:
            self._router.mark_failed(n, result.error or "unknown error")
            await self._persist(n, expected)
        DispatchMetrics.notification_outcome(self._channel_label(n), n.status.value)

        outcome = DeliveryOutcome(notification=n, sent=result.success, error=result.error)
        if result.success:
            logger.info(
                f"Notification sent: channel={n.channel.value}, to={mask_address(n.delivery_address)}",
                extra={"notification_id": n.id, "officer_id": n.recipient_id},
            )
            return outcome

        role = self._router.needs_escalation(n)
        if role:
            outcome.needs_escalation = True
            outcome.escalate_to = role
            self._report_escalation(n, role)
        elif n.status is NotificationStatus.PENDING:
            logger.warning(
                f"Notification send failed, retry {n.retry_count}/{n.max_retries} "
                f"at {n.next_retry_at.isoformat() if n.next_retry_at else None}: {result.error}",
                extra={"notification_id": n.id, "officer_id": n.recipient_id},
            )
        else:
            logger.error(
                f"Notification failed permanently after {n.retry_count} attempts: {result.error}",
                extra={"notification_id": n.id, "officer_id": n.recipient_id},
            )
        return outcome

    async def record_receipt(self, notification_id: str, status: str) -> Notification:
        """
        Apply a provider delivery callback (``delivered``, ``read`` or
        ``failed``). Receipts for notifications already in a terminal
        state are ignored.

        Raises:
            NotFoundError: if the notification does not exist
            ValidationError: if the status is not a receipt status
        """
        receipt = status.strip().lower()
        if receipt not in ("delivered", "read", "failed", "undelivered"):
            raise ValidationError(f"Unsupported receipt status: {status}")

        n = await self._repo.get(notification_id)
        if n is None:
            raise NotFoundError(f"Notification {notification_id} not found")

        expected = n.version
        try:
            if receipt == "delivered":
                self._router.mark_delivered(n)
            elif receipt == "read":
                self._router.mark_read(n)
            else:
                self._router.mark_failed(n, f"Provider reported {receipt}")
        except InvalidTransitionError:
            logger.debug(
                f"Receipt ignored: status={receipt}, current={n.status.value}",
                extra={"notification_id": n.id},
            )
            return n

        await self._persist(n, expected)
        DispatchMetrics.notification_outcome(self._channel_label(n), n.status.value)
        return n

    # ------------------------------------------------------------------

    async def _load_recipient_state(
        self,
        n: Notification,
        prefs: NotificationPreferences | None,
        now: datetime,
    ) -> tuple[NotificationPreferences, RecipientVolume | None]:
        volume = None
        try:
            if prefs is None:
                prefs = await self._repo.get_preferences(n.recipient_id)
            volume = await self._repo.count_sent_since(n.recipient_id, now)
        except Exception as exc:
            logger.warning(
                f"Recipient state lookup failed, using defaults: {type(exc).__name__}: {exc}",
                extra={"notification_id": n.id},
            )
            DispatchMetrics.database_error("notification_recipient_state")

        if prefs is None:
            if n.channel is not None:
                prefs = preferences_for_address(n.recipient_id, n.channel, n.delivery_address)
            else:
                prefs = NotificationPreferences(recipient_id=n.recipient_id)
        return prefs, volume

    def _holds_for_batch(
        self,
        n: Notification,
        prefs: NotificationPreferences,
        volume: RecipientVolume | None,
    ) -> bool:
        # Retries and scheduled sends (including batch releases) go out as they come due
        if n.retry_count or n.scheduled_for is not None:
            return False
        if not self._router.should_batch(n, prefs):
            return False
        held = volume.batched if volume else 0
        return held < prefs.batching.max_batch_size

    async def _hold_for_batch(
        self,
        n: Notification,
        prefs: NotificationPreferences,
        now: datetime,
    ) -> DeliveryOutcome:
        release_at = batch_release_time(now, prefs.batching.window_minutes)
        expected = n.version
        self._router.mark_batched(n, release_at)
        await self._persist(n, expected)
        DispatchMetrics.notification_batched(self._channel_label(n))
        logger.info(
            f"Notification held for batch release at {release_at.isoformat()}",
            extra={"notification_id": n.id, "officer_id": n.recipient_id},
        )
        return DeliveryOutcome(notification=n, batched_until=release_at)

    async def _send(self, n: Notification) -> CarrierResult:
        body = n.body
        if n.channel in _VOICE_CHANNELS and n.short_body:
            body = n.short_body
        try:
            return await self._carrier.send(
                n.channel,
                n.delivery_address,
                body,
                subject=n.title,
                reference=n.id,
            )
        except Exception as exc:
            logger.error(
                f"Carrier raised for channel={n.channel.value}: {type(exc).__name__}: {exc}",
                extra={"notification_id": n.id},
                exc_info=True,
            )
            return CarrierResult.failed(f"{type(exc).__name__}: {exc}")

    async def _persist(self, n: Notification, expected_version: int) -> bool:
        try:
            saved = await self._repo.save(n, expected_version)
        except Exception as exc:
            logger.error(
                f"Notification save failed: status={n.status.value}, {type(exc).__name__}: {exc}",
                extra={"notification_id": n.id},
                exc_info=True,
            )
            DispatchMetrics.database_error("notification_save")
            return False
        if not saved:
            logger.warning(
                f"Notification save lost a concurrent update: expected_version={expected_version}",
                extra={"notification_id": n.id},
            )
        return saved

    async def _resave_sent(self, n: Notification, result: CarrierResult) -> Notification:
        """
        The message went out but the row moved meanwhile (a stale-claim
        reset put it back to pending). Record the send on the current row
        so no worker sends it again.
        """
        try:
            current = await self._repo.get(n.id)
        except Exception as exc:
            logger.error(
                f"Notification reload after lost save failed: {type(exc).__name__}: {exc}",
                extra={"notification_id": n.id},
                exc_info=True,
            )
            DispatchMetrics.database_error("notification_save")
            return n
        if current is None or current.status not in (NotificationStatus.PENDING, NotificationStatus.QUEUED):
            return current or n

        expected = current.version
        self._router.mark_sent(current, external_id=result.provider_id)
        current.provider_status = result.provider_status
        if await self._persist(current, expected):
            logger.info(
                "Sent state recorded on reloaded notification",
                extra={"notification_id": n.id},
            )
        return current

    def _report_escalation(self, n: Notification, role: str) -> None:
        logger.error(
            f"Notification failed permanently, escalation required: role={role}, "
            f"type={n.type.value}, attempts={n.retry_count}",
            extra={"notification_id": n.id, "officer_id": n.recipient_id},
        )
        audit_event(
            "notification.escalation_required",
            dispatch_id=n.related_entity_id if n.related_entity_type == "dispatch" else None,
            detail=f"Delivery to {n.recipient_id} failed after {n.retry_count} attempts",
            extra={
                "notification_id": n.id,
                "escalate_to": role,
                "notification_type": n.type.value,
                "failure_reason": n.failure_reason,
            },
            level=logging.WARNING,
        )
        DispatchMetrics.notification_escalation(role)

    @staticmethod
    def _channel_label(n: Notification) -> str:
        return n.channel.value if n.channel else "none"
