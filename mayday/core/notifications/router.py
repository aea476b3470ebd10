# mayday/core/notifications/router.py
"""
Notification routing and lifecycle.

Pure decision logic: which channel to use, whether a notification may be
sent right now, and how a notification moves through its delivery states.
Nothing here performs I/O; the delivery manager persists the results.

State machine:

    pending -> queued -> sent -> delivered -> read
       |         |        |
       +---------+--------+--> failed (retries exhausted)
       |                  +--> pending (retry scheduled, or held for a batch)
       +--> suppressed / cancelled

delivered, read, failed, cancelled and suppressed are terminal.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from mayday.core.errors import InvalidTransitionError, ValidationError
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
from mayday.core.notifications.preferences import WEEKDAYS, NotificationPreferences, QuietHours
from mayday.core.notifications.routes import (
    DEFAULT_MAX_RETRIES,
    NOTIFICATION_ROUTES,
    NotificationRoute,
    get_route,
)

# Used when a route has no retry schedule but retries remain
DEFAULT_RETRY_DELAY_MINUTES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SendDecision:
    allowed: bool
    reason: Optional[SuppressionReason] = None
    detail: str = ""

    @classmethod
    def allow(cls) -> "SendDecision":
        return cls(allowed=True)

    @classmethod
    def suppress(cls, reason: SuppressionReason, detail: str) -> "SendDecision":
        return cls(allowed=False, reason=reason, detail=detail)


@dataclass(frozen=True)
class NotificationStats:
    total: int
    by_status: dict[str, int]
    by_channel: dict[str, int]
    by_type: dict[str, int]
    delivery_rate: float
    read_rate: float
    failure_rate: float
    avg_delivery_time_seconds: Optional[float]


def is_in_quiet_hours(
    quiet: QuietHours,
    priority: NotificationPriority,
    notification_type: NotificationType,
    now: datetime,
) -> bool:
    """
    Whether a notification sent at ``now`` falls inside the recipient's
    quiet-hours window.

    Override priorities and types are never quiet. Evaluated in the
    recipient's timezone; a window whose start is after its end wraps
    past midnight (22:00-07:00 covers 23:30 and 06:30). The weekday
    checked is the local weekday of ``now``.
    """
    if not quiet.enabled:
        return False
    if priority in quiet.override_for_priority or notification_type in quiet.override_for_types:
        return False

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(quiet.timezone))

    if WEEKDAYS[local.weekday()] not in quiet.days_of_week:
        return False

    current = local.time().replace(tzinfo=None)
    start, end = quiet.start_time, quiet.end_time
    if start > end:
        return current >= start or current < end
    return start <= current < end


def get_best_channel(
    prefs: NotificationPreferences,
    notification_type: NotificationType,
    priority: NotificationPriority,
    routes: Sequence[NotificationRoute] = NOTIFICATION_ROUTES,
) -> Optional[Channel]:
    """
    First usable channel for this notification.

    Candidates are the recipient's per-type channel list, else the route's
    default channels, then the route's fallbacks. A channel is usable when
    the recipient has it enabled and verified.
    """
    route = get_route(notification_type, priority, tuple(routes))
    type_pref = prefs.type_preference(notification_type)

    if type_pref and type_pref.channels:
        candidates = list(type_pref.channels)
    elif route:
        candidates = list(route.default_channels)
    else:
        return None

    for channel in candidates:
        if prefs.is_channel_usable(channel):
            return channel

    if route:
        for channel in route.fallback_channels:
            if prefs.is_channel_usable(channel):
                return channel

    return None


def batch_release_time(now: datetime, window_minutes: int) -> datetime:
    """
    End of the batch window containing ``now``. Windows are aligned to
    the epoch, so everything held for a recipient inside one window is
    released together.
    """
    window = window_minutes * 60
    released = (int(now.timestamp()) // window + 1) * window
    return datetime.fromtimestamp(released, timezone.utc)


def priority_score(notification: Notification) -> int:
    return notification.priority.score


def sort_by_priority(notifications: Iterable[Notification]) -> list[Notification]:
    """Highest priority first; ties by creation time, oldest first."""
    return sorted(notifications, key=lambda n: (-n.priority.score, n.created_at))


def filter_due_retries(
    notifications: Iterable[Notification],
    now: datetime | None = None,
) -> list[Notification]:
    now = now or _utcnow()
    return [
        n for n in notifications
        if n.status is NotificationStatus.PENDING
        and n.next_retry_at is not None
        and n.next_retry_at <= now
    ]


def get_statistics(notifications: Sequence[Notification]) -> NotificationStats:
    by_status: dict[str, int] = {}
    by_channel: dict[str, int] = {}
    by_type: dict[str, int] = {}

    delivered = 0
    read = 0
    failed = 0
    sent_or_later = 0
    delivery_seconds: list[float] = []

    for n in notifications:
        by_status[n.status.value] = by_status.get(n.status.value, 0) + 1
        if n.channel is not None:
            by_channel[n.channel.value] = by_channel.get(n.channel.value, 0) + 1
        by_type[n.type.value] = by_type.get(n.type.value, 0) + 1

        if n.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED, NotificationStatus.READ):
            sent_or_later += 1
        if n.status in (NotificationStatus.DELIVERED, NotificationStatus.READ):
            delivered += 1
        if n.status is NotificationStatus.READ:
            read += 1
        if n.status is NotificationStatus.FAILED:
            failed += 1
        if n.sent_at and n.delivered_at:
            delivery_seconds.append((n.delivered_at - n.sent_at).total_seconds())

    return NotificationStats(
        total=len(notifications),
        by_status=by_status,
        by_channel=by_channel,
        by_type=by_type,
        delivery_rate=delivered / sent_or_later if sent_or_later else 0.0,
        read_rate=read / delivered if delivered else 0.0,
        failure_rate=failed / len(notifications) if notifications else 0.0,
        avg_delivery_time_seconds=(
            sum(delivery_seconds) / len(delivery_seconds) if delivery_seconds else None
        ),
    )


class NotificationRouter:
    """
    Creates notifications and applies send rules and state transitions.

    Transition methods mutate the notification in place, bump its
    ``version`` and return it.
    """

    def __init__(
        self,
        routes: Sequence[NotificationRoute] = NOTIFICATION_ROUTES,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._routes = tuple(routes)
        self._clock = clock

    def get_route(
        self, notification_type: NotificationType, priority: NotificationPriority
    ) -> Optional[NotificationRoute]:
        return get_route(notification_type, priority, self._routes)

    def get_best_channel(
        self,
        prefs: NotificationPreferences,
        notification_type: NotificationType,
        priority: NotificationPriority,
    ) -> Optional[Channel]:
        return get_best_channel(prefs, notification_type, priority, self._routes)

    # ------------------------------------------------------------------
    # Send rules
    # ------------------------------------------------------------------

    def should_send(
        self,
        notification: Notification,
        prefs: NotificationPreferences,
        *,
        recent_volume: RecipientVolume | None = None,
        now: datetime | None = None,
    ) -> SendDecision:
        """
        Apply recipient preferences to a notification.

        Rules are checked in order and the first failing one wins:
        global opt-out, channel not usable, type disabled, quiet hours
        (unless overridden by priority or type), rate limits and the
        cooldown since the last send (unless the type is exempt).
        """
        now = now or self._clock()

        if prefs.global_opt_out:
            return SendDecision.suppress(SuppressionReason.OPT_OUT, "Recipient opted out of all notifications")

        if notification.channel is None:
            return SendDecision.suppress(SuppressionReason.NO_CHANNEL, "No usable channel")

        channel_pref = prefs.channel(notification.channel)
        if channel_pref is None or not channel_pref.enabled:
            return SendDecision.suppress(
                SuppressionReason.CHANNEL_DISABLED,
                f"Channel {notification.channel.value} disabled",
            )
        if not channel_pref.verified:
            return SendDecision.suppress(
                SuppressionReason.CHANNEL_DISABLED,
                f"Channel {notification.channel.value} not verified",
            )

        type_pref = prefs.type_preference(notification.type)
        if type_pref is not None and not type_pref.enabled:
            return SendDecision.suppress(
                SuppressionReason.TYPE_DISABLED,
                f"Notifications of type {notification.type.value} disabled",
            )

        if is_in_quiet_hours(prefs.quiet_hours, notification.priority, notification.type, now):
            return SendDecision.suppress(SuppressionReason.QUIET_HOURS, "Within quiet hours")

        limits = prefs.rate_limits
        if limits.enabled and recent_volume is not None and notification.type not in limits.exempt_types:
            if recent_volume.last_hour >= limits.max_per_hour:
                return SendDecision.suppress(
                    SuppressionReason.RATE_LIMIT,
                    f"Hourly limit reached ({limits.max_per_hour})",
                )
            if recent_volume.last_day >= limits.max_per_day:
                return SendDecision.suppress(
                    SuppressionReason.RATE_LIMIT,
                    f"Daily limit reached ({limits.max_per_day})",
                )
            if recent_volume.last_week >= limits.max_per_week:
                return SendDecision.suppress(
                    SuppressionReason.RATE_LIMIT,
                    f"Weekly limit reached ({limits.max_per_week})",
                )
            # A release from a batch window was already held back once
            if (
                limits.cooldown_minutes
                and notification.scheduled_for is None
                and recent_volume.last_sent_at is not None
                and now - recent_volume.last_sent_at < timedelta(minutes=limits.cooldown_minutes)
            ):
                return SendDecision.suppress(
                    SuppressionReason.RATE_LIMIT,
                    f"Cooldown of {limits.cooldown_minutes} min since last send",
                )

        return SendDecision.allow()

    def should_batch(self, notification: Notification, prefs: NotificationPreferences) -> bool:
        """Whether this notification may wait for the recipient's next batch release."""
        if not prefs.batching.enabled:
            return False
        return notification.type in prefs.batching.batchable_types

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_notification(
        self,
        *,
        recipient_id: str,
        recipient_type: RecipientType,
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        body: str,
        channel: Optional[Channel],
        delivery_address: str,
        short_body: str | None = None,
        scheduled_for: datetime | None = None,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        action_url: str | None = None,
        notification_id: str | None = None,
    ) -> Notification:
        """
        Build a pending notification.

        ``channel`` may be None when no usable channel exists; such a
        notification is suppressed on delivery.

        ``max_retries`` comes from the route's delivery attempts, or the
        default when no route matches.
        """
        if not recipient_id:
            raise ValidationError("recipient_id is required")
        if channel is not None and not delivery_address:
            raise ValidationError(f"delivery_address is required for channel {channel.value}")

        route = self.get_route(notification_type, priority)
        max_retries = route.max_delivery_attempts if route else DEFAULT_MAX_RETRIES

        return Notification(
            id=notification_id or str(uuid.uuid4()),
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            type=notification_type,
            priority=priority,
            title=title,
            body=body,
            short_body=short_body,
            channel=channel,
            delivery_address=delivery_address,
            created_at=self._clock(),
            max_retries=max_retries,
            scheduled_for=scheduled_for,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            action_url=action_url,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _ensure_open(self, notification: Notification, target: NotificationStatus) -> None:
        if notification.is_terminal:
            raise InvalidTransitionError(
                f"Notification {notification.id} is {notification.status.value}; "
                f"cannot move to {target.value}"
            )

    def _touch(self, notification: Notification, now: datetime) -> Notification:
        notification.version += 1
        notification.updated_at = now
        return notification

    def mark_queued(self, notification: Notification) -> Notification:
        if notification.status is not NotificationStatus.PENDING:
            raise InvalidTransitionError(
                f"Notification {notification.id} is {notification.status.value}; only pending can be queued"
            )
        notification.status = NotificationStatus.QUEUED
        return self._touch(notification, self._clock())

    def mark_sent(
        self,
        notification: Notification,
        external_id: str | None = None,
        tracking_id: str | None = None,
    ) -> Notification:
        self._ensure_open(notification, NotificationStatus.SENT)
        now = self._clock()
        notification.status = NotificationStatus.SENT
        notification.sent_at = now
        notification.next_retry_at = None
        if external_id:
            notification.external_id = external_id
        if tracking_id:
            notification.tracking_id = tracking_id
        return self._touch(notification, now)

    def mark_delivered(self, notification: Notification) -> Notification:
        self._ensure_open(notification, NotificationStatus.DELIVERED)
        now = self._clock()
        notification.status = NotificationStatus.DELIVERED
        notification.delivered_at = now
        return self._touch(notification, now)

    def mark_read(self, notification: Notification) -> Notification:
        # Read receipts may arrive after delivered
        if notification.status is not NotificationStatus.DELIVERED:
            self._ensure_open(notification, NotificationStatus.READ)
        now = self._clock()
        notification.status = NotificationStatus.READ
        notification.read_at = now
        if notification.delivered_at is None:
            notification.delivered_at = now
        return self._touch(notification, now)

    def mark_failed(self, notification: Notification, reason: str) -> Notification:
        """
        Record a failed attempt.

        Increments ``retry_count``. Below ``max_retries`` the notification
        returns to pending with ``next_retry_at`` from the route's retry
        schedule; at ``max_retries`` it becomes failed.
        """
        self._ensure_open(notification, NotificationStatus.FAILED)
        now = self._clock()
        notification.retry_count += 1
        notification.failure_reason = reason

        if notification.retry_count >= notification.max_retries:
            notification.status = NotificationStatus.FAILED
            notification.failed_at = now
            notification.next_retry_at = None
            return self._touch(notification, now)

        route = self.get_route(notification.type, notification.priority)
        delay = self._retry_delay(route, notification.retry_count)
        notification.status = NotificationStatus.PENDING
        notification.next_retry_at = now + timedelta(minutes=delay)
        return self._touch(notification, now)

    @staticmethod
    def _retry_delay(route: Optional[NotificationRoute], retry_count: int) -> int:
        if route is None or not route.retry_delay_minutes:
            return DEFAULT_RETRY_DELAY_MINUTES
        delay = route.retry_delay(retry_count)
        if delay is None:
            return route.retry_delay_minutes[-1]
        return delay

    def mark_suppressed(
        self,
        notification: Notification,
        reason: SuppressionReason,
        detail: str = "",
    ) -> Notification:
        self._ensure_open(notification, NotificationStatus.SUPPRESSED)
        notification.status = NotificationStatus.SUPPRESSED
        notification.suppressed_reason = reason
        notification.suppressed_detail = detail or None
        notification.next_retry_at = None
        return self._touch(notification, self._clock())

    def mark_batched(self, notification: Notification, release_at: datetime) -> Notification:
        """Return a claimed notification to pending until its batch window closes."""
        if notification.status not in (NotificationStatus.PENDING, NotificationStatus.QUEUED):
            raise InvalidTransitionError(
                f"Notification {notification.id} is {notification.status.value}; cannot be batched"
            )
        notification.status = NotificationStatus.PENDING
        notification.scheduled_for = release_at
        notification.next_retry_at = None
        return self._touch(notification, self._clock())

    def mark_cancelled(self, notification: Notification, reason: str = "") -> Notification:
        self._ensure_open(notification, NotificationStatus.CANCELLED)
        notification.status = NotificationStatus.CANCELLED
        notification.next_retry_at = None
        if reason:
            notification.failure_reason = reason
        return self._touch(notification, self._clock())

    def record_response(self, notification: Notification, action: str) -> Notification:
        """
        Attach the recipient's response (e.g. acknowledged). Allowed in any
        state. Does not bump the version.
        """
        now = self._clock()
        notification.response_action = action
        notification.acknowledged_at = now
        notification.updated_at = now
        return notification

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def needs_escalation(self, notification: Notification) -> Optional[str]:
        """
        Role to escalate to, if this notification failed permanently and
        its route escalates on failure.
        """
        if notification.status is not NotificationStatus.FAILED:
            return None
        route = self.get_route(notification.type, notification.priority)
        if route and route.escalate_on_failure:
            return route.escalate_to_role
        return None
