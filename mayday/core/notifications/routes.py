# mayday/core/notifications/routes.py
"""
Static delivery policy per (notification type, priority).

Lookup falls back from (type, priority) to the first route for the type.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mayday.core.notifications.domain import Channel, NotificationPriority, NotificationType

DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class NotificationRoute:
    type: NotificationType
    priority: NotificationPriority
    default_channels: tuple[Channel, ...]
    fallback_channels: tuple[Channel, ...]
    requires_delivery_confirmation: bool
    max_delivery_attempts: int
    retry_delay_minutes: tuple[int, ...]  # One entry per retry
    escalate_on_failure: bool
    escalate_to_role: Optional[str] = None

    def retry_delay(self, retry_count: int) -> int | None:
        """Delay before retry number ``retry_count`` (1-based), or None past the schedule."""
        index = retry_count - 1
        if 0 <= index < len(self.retry_delay_minutes):
            return self.retry_delay_minutes[index]
        return None


NOTIFICATION_ROUTES: tuple[NotificationRoute, ...] = (
    # Critical
    NotificationRoute(
        type=NotificationType.SAFETY_ALERT,
        priority=NotificationPriority.CRITICAL,
        default_channels=(Channel.PUSH, Channel.SMS, Channel.PHONE),
        fallback_channels=(Channel.EMAIL,),
        requires_delivery_confirmation=True,
        max_delivery_attempts=5,
        retry_delay_minutes=(1, 2, 5, 10, 15),
        escalate_on_failure=True,
        escalate_to_role="lead_moderator",
    ),
    NotificationRoute(
        type=NotificationType.ESCALATION,
        priority=NotificationPriority.CRITICAL,
        default_channels=(Channel.PUSH, Channel.SMS),
        fallback_channels=(Channel.PHONE, Channel.EMAIL),
        requires_delivery_confirmation=True,
        max_delivery_attempts=4,
        retry_delay_minutes=(1, 3, 5, 10),
        escalate_on_failure=True,
        escalate_to_role="regional_coordinator",
    ),

    # Urgent
    NotificationRoute(
        type=NotificationType.MATCH_FOUND,
        priority=NotificationPriority.URGENT,
        default_channels=(Channel.PUSH, Channel.SMS),
        fallback_channels=(Channel.EMAIL,),
        requires_delivery_confirmation=False,
        max_delivery_attempts=3,
        retry_delay_minutes=(5, 15, 30),
        escalate_on_failure=False,
    ),
    NotificationRoute(
        type=NotificationType.DISPATCH_ASSIGNMENT,
        priority=NotificationPriority.URGENT,
        default_channels=(Channel.PUSH, Channel.SMS),
        fallback_channels=(Channel.EMAIL,),
        requires_delivery_confirmation=True,
        max_delivery_attempts=3,
        retry_delay_minutes=(2, 5, 10),
        escalate_on_failure=True,
        escalate_to_role="moderator",
    ),

    # Normal
    NotificationRoute(
        type=NotificationType.CASE_UPDATE,
        priority=NotificationPriority.NORMAL,
        default_channels=(Channel.PUSH, Channel.EMAIL),
        fallback_channels=(Channel.SMS,),
        requires_delivery_confirmation=False,
        max_delivery_attempts=2,
        retry_delay_minutes=(30, 120),
        escalate_on_failure=False,
    ),
    NotificationRoute(
        type=NotificationType.VERIFICATION_REQUIRED,
        priority=NotificationPriority.NORMAL,
        default_channels=(Channel.EMAIL, Channel.PUSH),
        fallback_channels=(Channel.SMS,),
        requires_delivery_confirmation=False,
        max_delivery_attempts=3,
        retry_delay_minutes=(60, 240, 1440),
        escalate_on_failure=False,
    ),
    NotificationRoute(
        type=NotificationType.HANDOFF,
        priority=NotificationPriority.NORMAL,
        default_channels=(Channel.PUSH, Channel.EMAIL),
        fallback_channels=(Channel.SMS,),
        requires_delivery_confirmation=True,
        max_delivery_attempts=3,
        retry_delay_minutes=(5, 15, 30),
        escalate_on_failure=True,
        escalate_to_role="lead_moderator",
    ),

    # Low
    NotificationRoute(
        type=NotificationType.SYSTEM,
        priority=NotificationPriority.LOW,
        default_channels=(Channel.EMAIL, Channel.IN_APP),
        fallback_channels=(),
        requires_delivery_confirmation=False,
        max_delivery_attempts=1,
        retry_delay_minutes=(),
        escalate_on_failure=False,
    ),
    NotificationRoute(
        type=NotificationType.MARKETING,
        priority=NotificationPriority.LOW,
        default_channels=(Channel.EMAIL,),
        fallback_channels=(),
        requires_delivery_confirmation=False,
        max_delivery_attempts=1,
        retry_delay_minutes=(),
        escalate_on_failure=False,
    ),
)


def get_route(
    notification_type: NotificationType,
    priority: NotificationPriority,
    routes: tuple[NotificationRoute, ...] = NOTIFICATION_ROUTES,
) -> NotificationRoute | None:
    for route in routes:
        if route.type == notification_type and route.priority == priority:
            return route
    for route in routes:
        if route.type == notification_type:
            return route
    return None
