# mayday/core/notifications/preferences.py
"""
Recipient notification preferences.

Long-lived settings, mutated only by the recipient or an administrator
and stored as JSON; parsed and validated with pydantic.
"""
from __future__ import annotations

from datetime import time
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from mayday.core.notifications.domain import Channel, NotificationPriority, NotificationType

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DEFAULT_TIMEZONE = "America/New_York"


class ChannelPreference(BaseModel):
    enabled: bool = False
    verified: bool = False
    address: Optional[str] = None  # Email, phone, device token


class TypePreference(BaseModel):
    type: NotificationType
    enabled: bool = True
    channels: list[Channel] = Field(default_factory=list)


class QuietHours(BaseModel):
    enabled: bool = False
    start_time: time = time(22, 0)
    end_time: time = time(7, 0)
    timezone: str = DEFAULT_TIMEZONE
    days_of_week: list[str] = Field(default_factory=lambda: list(WEEKDAYS))
    override_for_priority: list[NotificationPriority] = Field(default_factory=list)
    override_for_types: list[NotificationType] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("days_of_week")
    @classmethod
    def _known_days(cls, value: list[str]) -> list[str]:
        days = [d.strip().lower() for d in value]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekdays: {unknown}")
        return days


class RateLimits(BaseModel):
    enabled: bool = False
    max_per_hour: int = Field(default=20, ge=1)
    max_per_day: int = Field(default=50, ge=1)
    max_per_week: int = Field(default=200, ge=1)
    # Minimum gap between two sends to the recipient
    cooldown_minutes: int = Field(default=5, ge=0)
    exempt_types: list[NotificationType] = Field(default_factory=list)


class Batching(BaseModel):
    """Hold low-urgency notifications and release them together at the end of a window."""
    enabled: bool = False
    window_minutes: int = Field(default=15, ge=1)
    max_batch_size: int = Field(default=10, ge=1)
    batchable_types: list[NotificationType] = Field(
        default_factory=lambda: [NotificationType.CASE_UPDATE, NotificationType.SYSTEM]
    )


class NotificationPreferences(BaseModel):
    recipient_id: str
    channels: dict[Channel, ChannelPreference] = Field(default_factory=dict)
    type_preferences: list[TypePreference] = Field(default_factory=list)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    batching: Batching = Field(default_factory=Batching)
    global_opt_out: bool = False

    def channel(self, channel: Channel) -> ChannelPreference | None:
        return self.channels.get(channel)

    def type_preference(self, notification_type: NotificationType) -> TypePreference | None:
        for pref in self.type_preferences:
            if pref.type == notification_type:
                return pref
        return None

    def is_channel_usable(self, channel: Channel) -> bool:
        pref = self.channels.get(channel)
        return bool(pref and pref.enabled and pref.verified)


def default_preferences(recipient_id: str) -> NotificationPreferences:
    """Defaults for a newly registered recipient (nothing verified except in-app)."""
    return NotificationPreferences(
        recipient_id=recipient_id,
        channels={
            Channel.EMAIL: ChannelPreference(enabled=True),
            Channel.SMS: ChannelPreference(enabled=False),
            Channel.PUSH: ChannelPreference(enabled=True),
            Channel.PHONE: ChannelPreference(enabled=False),
            Channel.IN_APP: ChannelPreference(enabled=True, verified=True),
        },
        type_preferences=[
            TypePreference(type=NotificationType.CASE_UPDATE, channels=[Channel.PUSH, Channel.EMAIL]),
            TypePreference(type=NotificationType.MATCH_FOUND, channels=[Channel.PUSH, Channel.SMS, Channel.EMAIL]),
            TypePreference(type=NotificationType.VERIFICATION_REQUIRED, channels=[Channel.EMAIL, Channel.PUSH]),
            TypePreference(type=NotificationType.DISPATCH_ASSIGNMENT, channels=[Channel.PUSH, Channel.SMS]),
            TypePreference(type=NotificationType.DISPATCH_UPDATE, channels=[Channel.PUSH]),
            TypePreference(type=NotificationType.SAFETY_ALERT, channels=[Channel.PUSH, Channel.SMS, Channel.PHONE]),
            TypePreference(type=NotificationType.ESCALATION, channels=[Channel.PUSH, Channel.SMS]),
            TypePreference(type=NotificationType.HANDOFF, channels=[Channel.PUSH, Channel.EMAIL]),
            TypePreference(type=NotificationType.SYSTEM, channels=[Channel.EMAIL, Channel.IN_APP]),
            TypePreference(type=NotificationType.MARKETING, enabled=False, channels=[Channel.EMAIL]),
        ],
        quiet_hours=QuietHours(
            enabled=True,
            override_for_priority=[NotificationPriority.CRITICAL, NotificationPriority.URGENT],
            override_for_types=[NotificationType.SAFETY_ALERT, NotificationType.ESCALATION],
        ),
        rate_limits=RateLimits(
            enabled=True,
            exempt_types=[
                NotificationType.SAFETY_ALERT,
                NotificationType.ESCALATION,
                NotificationType.VERIFICATION_REQUIRED,
            ],
        ),
        batching=Batching(enabled=True),
    )


def preferences_for_responder(responder: Any) -> NotificationPreferences:
    """
    Preferences for a responder known only by the contact details on file.

    ``responder`` needs ``officer_id``, ``phone``, ``email`` and a
    ``preference`` of SMS, EMAIL or BOTH. Channels with an address on
    file are treated as verified (officer records are verified at
    registration) and enabled per the contact preference. Dispatch
    alerts bypass quiet hours.
    """
    recipient_id = responder.officer_id
    phone = responder.phone or None
    email = responder.email or None
    contact = str(getattr(responder.preference, "value", responder.preference)).lower()
    sms = contact in ("sms", "both")
    use_email = contact in ("email", "both")

    channels = {
        Channel.SMS: ChannelPreference(enabled=bool(phone and sms), verified=bool(phone), address=phone),
        Channel.PHONE: ChannelPreference(enabled=bool(phone and sms), verified=bool(phone), address=phone),
        Channel.EMAIL: ChannelPreference(enabled=bool(email and use_email), verified=bool(email), address=email),
        Channel.PUSH: ChannelPreference(enabled=False),
        Channel.IN_APP: ChannelPreference(enabled=True, verified=True, address=recipient_id),
    }
    if sms and phone:
        dispatch_channels = [Channel.SMS, Channel.EMAIL]
    else:
        dispatch_channels = [Channel.EMAIL, Channel.SMS]

    return NotificationPreferences(
        recipient_id=recipient_id,
        channels=channels,
        type_preferences=[
            TypePreference(type=NotificationType.DISPATCH_ASSIGNMENT, channels=dispatch_channels),
        ],
        quiet_hours=QuietHours(
            enabled=False,
            override_for_types=[NotificationType.DISPATCH_ASSIGNMENT, NotificationType.SAFETY_ALERT],
        ),
    )


def preferences_for_address(recipient_id: str, channel: Channel, address: str) -> NotificationPreferences:
    """
    Minimal preferences for a recipient with nothing stored: only the
    channel and address the notification was created for.
    """
    return NotificationPreferences(
        recipient_id=recipient_id,
        channels={channel: ChannelPreference(enabled=True, verified=True, address=address)},
    )
