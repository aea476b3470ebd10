# mayday/infra/carriers.py
"""
Message carriers: the provider side of notification delivery.

Supports:
- SMS and voice calls via Twilio
- Email via SMTP
- Push via an HTTP push gateway
- In-app (the stored notification row is the inbox)

Carriers never raise for provider errors. A failed send comes back as a
``CarrierResult`` with ``error`` set, and the delivery manager decides
whether to retry.

Usage:
    carrier = build_carrier()
    result = await carrier.send(Channel.SMS, "+13045550123", "text")
"""
from __future__ import annotations

import abc
import asyncio
import json
import smtplib
from email.mime.text import MIMEText
from email.utils import make_msgid
from functools import partial
from typing import Optional

import aiohttp
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from mayday.config import Settings, settings
from mayday.core.notifications.domain import Channel
from mayday.core.notifications.ports import CarrierResult
from mayday.infra.http_client import get_push_session
from mayday.infra.logging_config import get_logger, mask_address
from mayday.infra.metrics import inc_counter

logger = get_logger(__name__)


class Carrier(abc.ABC):
    """Abstract base class for message carriers"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Carrier name for logging/metrics"""

    @property
    @abc.abstractmethod
    def channels(self) -> frozenset[Channel]:
        """Channels this carrier can deliver on"""

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if carrier is properly configured"""

    @abc.abstractmethod
    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        """Send one message. Provider errors are returned, not raised."""


def _record(carrier: str, channel: Channel, result: CarrierResult) -> CarrierResult:
    inc_counter(
        "carrier_sends",
        carrier=carrier,
        channel=channel.value,
        result="ok" if result.success else "error",
    )
    return result


class TwilioCarrier(Carrier):
    """
    SMS (messages API) and voice (calls API with a spoken TwiML message).

    The Twilio SDK is synchronous; calls run in the default executor.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        client: Optional[Client] = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client

    @property
    def name(self) -> str:
        return "twilio"

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset({Channel.SMS, Channel.PHONE})

    def is_configured(self) -> bool:
        if self._client is not None:
            return bool(self._from_number)
        return bool(self._account_sid and self._auth_token and self._from_number)

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        if not self.is_configured():
            logger.warning("Twilio carrier not configured")
            return _record(self.name, channel, CarrierResult.failed("twilio not configured"))
        if channel not in self.channels:
            return _record(
                self.name, channel, CarrierResult.failed(f"twilio cannot send {channel.value}")
            )

        loop = asyncio.get_running_loop()
        try:
            if channel == Channel.PHONE:
                result = await loop.run_in_executor(None, partial(self._place_call, address, body))
            else:
                result = await loop.run_in_executor(None, partial(self._send_sms, address, body))
        except TwilioRestException as exc:
            logger.warning(
                f"Twilio {channel.value} failed: code={exc.code}, status={exc.status}",
                extra={"notification_id": reference},
            )
            return _record(self.name, channel, CarrierResult.failed(f"twilio {exc.code}: {exc.msg}"))
        except Exception as exc:
            logger.error(
                f"Twilio {channel.value} error: {type(exc).__name__}",
                extra={"notification_id": reference},
                exc_info=True,
            )
            return _record(self.name, channel, CarrierResult.failed(f"twilio error: {type(exc).__name__}"))

        logger.info(
            f"Twilio {channel.value} sent: sid={result.sid[:8]}***, to={mask_address(address)}",
            extra={"notification_id": reference},
        )
        return _record(
            self.name,
            channel,
            CarrierResult(provider_id=result.sid, provider_status=result.status),
        )

    def _send_sms(self, to: str, body: str):
        return self._get_client().messages.create(to=to, from_=self._from_number, body=body)

    def _place_call(self, to: str, body: str):
        response = VoiceResponse()
        response.say(body)
        response.pause(length=1)
        response.say(body)
        return self._get_client().calls.create(to=to, from_=self._from_number, twiml=str(response))


class EmailCarrier(Carrier):
    """Email via SMTP (STARTTLS). Blocking smtplib runs in the default executor."""

    def __init__(
        self,
        host: str | None = None,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        from_address: str | None = None,
    ):
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._from = from_address or user

    @property
    def name(self) -> str:
        return "smtp"

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset({Channel.EMAIL})

    def is_configured(self) -> bool:
        return bool(self._host and self._user and self._password)

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        if not self.is_configured():
            logger.warning("Email carrier not configured")
            return _record(self.name, channel, CarrierResult.failed("smtp not configured"))

        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = self._from
        msg["To"] = address
        msg["Subject"] = subject or "Pet Mayday notification"
        message_id = make_msgid(domain="petmayday.org")
        msg["Message-ID"] = message_id

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_smtp, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                f"Email send failed: {type(exc).__name__}",
                extra={"notification_id": reference},
            )
            return _record(self.name, channel, CarrierResult.failed(f"smtp error: {type(exc).__name__}"))

        logger.info(
            f"Email sent: to={mask_address(address)}",
            extra={"notification_id": reference},
        )
        return _record(self.name, channel, CarrierResult(provider_id=message_id, provider_status="sent"))

    def _send_smtp(self, msg) -> None:
        """Send email via SMTP (blocking)"""
        with smtplib.SMTP(self._host, self._port, timeout=30) as server:
            server.starttls()
            server.login(self._user, self._password)
            server.send_message(msg)


class PushCarrier(Carrier):
    """
    Push via an HTTP gateway.

    POST {gateway_url} with JSON {"to", "title", "body", "reference"};
    any 2xx is accepted and an ``id`` in the response body becomes the
    provider id.
    """

    def __init__(self, gateway_url: str | None = None, token: str | None = None):
        self._gateway_url = gateway_url
        self._token = token

    @property
    def name(self) -> str:
        return "push"

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset({Channel.PUSH})

    def is_configured(self) -> bool:
        return bool(self._gateway_url)

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        if not self.is_configured():
            logger.warning("Push carrier not configured")
            return _record(self.name, channel, CarrierResult.failed("push not configured"))

        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {"to": address, "title": subject, "body": body, "reference": reference}

        session = get_push_session()
        try:
            async with session.post(self._gateway_url, json=payload, headers=headers) as resp:
                if resp.status >= 300:
                    logger.warning(
                        f"Push gateway error: status={resp.status}",
                        extra={"notification_id": reference},
                    )
                    return _record(
                        self.name, channel, CarrierResult.failed(f"push gateway status={resp.status}")
                    )
                raw = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(
                f"Push gateway request failed: {type(exc).__name__}",
                extra={"notification_id": reference},
            )
            return _record(self.name, channel, CarrierResult.failed(f"push error: {type(exc).__name__}"))

        try:
            data = json.loads(raw) if raw else None
        except ValueError:
            data = None
        provider_id = data.get("id") if isinstance(data, dict) else None
        return _record(self.name, channel, CarrierResult(provider_id=provider_id, provider_status="accepted"))


class InAppCarrier(Carrier):
    """In-app notifications are read from the notifications table; nothing to transmit."""

    @property
    def name(self) -> str:
        return "in_app"

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset({Channel.IN_APP})

    def is_configured(self) -> bool:
        return True

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        return _record(self.name, channel, CarrierResult(provider_id=reference, provider_status="stored"))


class DisabledCarrier(Carrier):
    """Dummy carrier when notifications are disabled"""

    @property
    def name(self) -> str:
        return "disabled"

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset(Channel)

    def is_configured(self) -> bool:
        return True  # Always "configured"

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        logger.debug(
            f"Notifications disabled, skipping {channel.value} to {mask_address(address)}",
            extra={"notification_id": reference},
        )
        return CarrierResult(provider_status="disabled")


class ChannelRouterCarrier:
    """Routes each send to the carrier registered for its channel."""

    def __init__(self, carriers: dict[Channel, Carrier]):
        self._carriers = dict(carriers)

    def carrier_for(self, channel: Channel) -> Optional[Carrier]:
        return self._carriers.get(channel)

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult:
        carrier = self._carriers.get(channel)
        if carrier is None:
            logger.error(f"No carrier registered for channel {channel.value}")
            return CarrierResult.failed(f"no carrier for channel {channel.value}")
        return await carrier.send(channel, address, body, subject=subject, reference=reference)


def build_carrier(s: Settings = settings) -> ChannelRouterCarrier | DisabledCarrier:
    """
    Build the carrier for the configured providers.

    Returns DisabledCarrier if notifications are disabled. Unconfigured
    providers are still registered; their sends fail and are retried.
    """
    if not s.notifications_enabled:
        logger.info("Notifications disabled: using DisabledCarrier")
        return DisabledCarrier()

    twilio = TwilioCarrier(s.twilio_account_sid, s.twilio_auth_token, s.twilio_phone_number)
    email = EmailCarrier(s.smtp_host, s.smtp_port, s.smtp_user, s.smtp_password, s.smtp_from)
    push = PushCarrier(s.push_gateway_url, s.push_gateway_token)
    in_app = InAppCarrier()

    carriers: dict[Channel, Carrier] = {}
    for carrier in (twilio, email, push, in_app):
        if not carrier.is_configured():
            logger.warning(f"Carrier '{carrier.name}' not configured, its sends will fail")
        for channel in carrier.channels:
            carriers[channel] = carrier

    return ChannelRouterCarrier(carriers)
