"""Notification fan-out for SOS escalation.

The engine never talks to an SMS/email/push provider directly.  It asks a
:class:`RecipientDirectory` who belongs to a level's recipient class, renders
the level's template, and hands each message to a
:class:`NotificationGateway`.  Every attempt -- delivered, failed, timed out,
or impossible because nobody was configured -- comes back as a
:class:`~lane_sos.models.emergency.NotificationRecord` so the incident's
audit log shows exactly what was tried.

Gateways are best-effort sinks: the fan-out never retries a failed
recipient, and a failure never delays the next level.  The webhook gateway
retries connection-level errors on its own, inside the per-send timeout.

Gateways:
    * ``mock``    -- logs the message and reports SENT (development).
    * ``webhook`` -- POSTs a JSON envelope to a delivery service.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lane_sos.models.emergency import Emergency, NotificationRecord, Recipient
from lane_sos.models.enums import DeliveryStatus, NotificationChannel, RecipientClass
from lane_sos.services.clock import Clock, SystemClock

if TYPE_CHECKING:
    from config.settings import Settings
    from lane_sos.services.policy import PolicyLevel

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class SendResult(BaseModel):
    status: DeliveryStatus
    message_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

_TEMPLATES: Final[dict[str, str]] = {
    "sos_initial": (
        "SOS ALERT: {user} has triggered an emergency alert ({type}). "
        "Location: {maps_link} Ref: {emergency_id}"
    ),
    "sos_urgent_contacts": (
        "URGENT: {user} triggered SOS {elapsed} ago and has not been reached. "
        "Location: {maps_link} Ref: {emergency_id}"
    ),
    "sos_admin_alert": (
        "CRITICAL: SOS escalated - {user} triggered SOS {elapsed} ago with NO RESPONSE. "
        "Immediate action required. Location: {maps_link} Ref: {emergency_id}"
    ),
    "sos_authorities": (
        "EMERGENCY: SOS {emergency_id} escalated to authorities after {elapsed}. "
        "Case: {case_number}. Location: {maps_link}"
    ),
    "sos_dispatch": (
        "DISPATCH REQUEST: {service_type} needed for SOS {emergency_id} "
        "({type}). Case: {case_number}. Location: {maps_link}"
    ),
}

# SMS is truncated, everything else passes through.
_SMS_MAX: Final[int] = 320


def render_message(template: str, context: dict[str, Any]) -> str:
    """Render *template* with *context*; unknown placeholders render empty."""
    text = _TEMPLATES.get(template, template)
    message = text.format_map(defaultdict(str, context))
    return message


def _format_elapsed(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 1:
        return f"{int(seconds)} seconds"
    if minutes == 1:
        return "1 minute"
    return f"{minutes} minutes"


def build_context(emergency: Emergency, level: int, now: datetime) -> dict[str, Any]:
    """Template variables shared by every level."""
    return {
        "emergency_id": emergency.emergency_id,
        "user": emergency.triggered_by,
        "type": emergency.type.value,
        "level": level,
        "maps_link": emergency.location.maps_link,
        "elapsed": _format_elapsed((now - emergency.created_at).total_seconds()),
        "ride": emergency.related_ride or "",
    }


# ---------------------------------------------------------------------------
# Gateway protocol and implementations
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationGateway(Protocol):
    async def send(
        self,
        recipient: Recipient,
        template: str,
        context: dict[str, Any],
    ) -> SendResult: ...


class LoggingNotificationGateway:
    """Mock gateway for local development and tests."""

    __slots__ = ()

    async def send(
        self,
        recipient: Recipient,
        template: str,
        context: dict[str, Any],
    ) -> SendResult:
        message = render_message(template, context)
        logger.info(
            "mock_gateway.sent",
            to=recipient.address,
            channel=recipient.channel,
            template=template,
            message_preview=message[:80],
        )
        return SendResult(status=DeliveryStatus.SENT, message_id=f"mock_{uuid4().hex[:12]}")


class WebhookNotificationGateway:
    """Forwards each message to an HTTP delivery service.

    The service receives ``{"to", "name", "channel", "template",
    "message", "context"}`` and is expected to answer 2xx with an
    optional ``message_id`` and ``status`` (``SENT`` or ``DELIVERED``).
    """

    __slots__ = ("_client", "_url")

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("WebhookNotificationGateway requires a URL")
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def send(
        self,
        recipient: Recipient,
        template: str,
        context: dict[str, Any],
    ) -> SendResult:
        message = render_message(template, context)
        if recipient.channel is NotificationChannel.SMS and len(message) > _SMS_MAX:
            message = message[: _SMS_MAX - 3] + "..."

        payload = {
            "to": recipient.address,
            "name": recipient.name,
            "channel": recipient.channel.value,
            "template": template,
            "message": message,
            "context": context,
        }
        try:
            response = await self._post(payload)
        except httpx.HTTPStatusError as exc:
            return SendResult(
                status=DeliveryStatus.FAILED,
                error=f"HTTP {exc.response.status_code}",
            )
        except httpx.HTTPError as exc:
            return SendResult(status=DeliveryStatus.FAILED, error=type(exc).__name__)

        body: Any = {}
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}
        if not isinstance(body, dict):
            body = {}
        status = DeliveryStatus.DELIVERED if body.get("status") == "DELIVERED" else DeliveryStatus.SENT
        return SendResult(status=status, message_id=body.get("message_id"))

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        response = await self._client.post(self._url, json=payload)
        response.raise_for_status()
        return response

    async def close(self) -> None:
        await self._client.aclose()


def create_gateway(settings: Settings) -> NotificationGateway:
    """Build the gateway selected by ``settings.notification_gateway``."""
    if settings.notification_gateway == "webhook":
        return WebhookNotificationGateway(
            settings.notification_webhook_url,
            token=settings.notification_webhook_token,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotificationGateway()


# ---------------------------------------------------------------------------
# Recipient directory
# ---------------------------------------------------------------------------


@runtime_checkable
class RecipientDirectory(Protocol):
    async def recipients_for(
        self,
        recipient_class: RecipientClass,
        emergency: Emergency,
    ) -> list[Recipient]: ...


def parse_recipients(raw: str) -> list[Recipient]:
    """Parse ``"Ops Desk:+15550100, Night Lead:lead@lane.example"``."""
    recipients: list[Recipient] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, address = chunk.partition(":")
        if not sep:
            name, address = chunk, chunk
        address = address.strip()
        channel = NotificationChannel.EMAIL if "@" in address else NotificationChannel.SMS
        recipients.append(Recipient(name=name.strip(), address=address, channel=channel))
    return recipients


class StaticRecipientDirectory:
    """Recipient lists held in memory.

    Platform-wide classes (admins, authorities, dispatch) come from
    configuration.  Emergency contacts are the ones stored on the incident
    at trigger time; contacts registered per user are the fallback for
    incidents that carry none.
    """

    __slots__ = ("_contacts", "_fixed")

    def __init__(
        self,
        *,
        admins: list[Recipient] | None = None,
        authorities: list[Recipient] | None = None,
        dispatch: list[Recipient] | None = None,
    ) -> None:
        self._contacts: dict[str, list[Recipient]] = {}
        self._fixed: dict[RecipientClass, list[Recipient]] = {
            RecipientClass.PLATFORM_ADMINS: list(admins or []),
            RecipientClass.AUTHORITIES: list(authorities or []),
            RecipientClass.EMERGENCY_SERVICES: list(dispatch or []),
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> StaticRecipientDirectory:
        return cls(
            admins=parse_recipients(settings.admin_recipients),
            authorities=parse_recipients(settings.authority_recipients),
            dispatch=parse_recipients(settings.dispatch_recipients),
        )

    def register_contacts(self, user_id: str, contacts: list[Recipient]) -> None:
        self._contacts[user_id] = list(contacts)

    def contacts_on_file(self, user_id: str) -> list[Recipient]:
        return list(self._contacts.get(user_id, []))

    async def recipients_for(
        self,
        recipient_class: RecipientClass,
        emergency: Emergency,
    ) -> list[Recipient]:
        if recipient_class is RecipientClass.EMERGENCY_CONTACTS:
            if emergency.emergency_contacts:
                return list(emergency.emergency_contacts)
            return self.contacts_on_file(emergency.triggered_by)
        return list(self._fixed.get(recipient_class, []))


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class NotificationFanout:
    """Sends one level's message to every recipient of its class, concurrently.

    Parameters
    ----------
    gateway:
        Delivery sink.
    directory:
        Resolves recipient classes to concrete recipients.
    clock:
        Timestamp source for ``sent_at``.
    timeout_seconds:
        Upper bound on a single send; slower sends are recorded as FAILED.
    """

    __slots__ = ("_clock", "_directory", "_gateway", "_timeout")

    def __init__(
        self,
        gateway: NotificationGateway,
        directory: RecipientDirectory,
        *,
        clock: Clock | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self._directory = directory
        self._clock = clock or SystemClock()
        self._timeout = timeout_seconds

    async def dispatch(
        self,
        emergency: Emergency,
        policy_level: PolicyLevel,
        extra_context: dict[str, Any] | None = None,
    ) -> list[NotificationRecord]:
        """Alert the level's recipient class.  Never raises for delivery problems."""
        recipient_class = policy_level.recipient_class
        level = policy_level.level

        try:
            recipients = await self._directory.recipients_for(recipient_class, emergency)
        except Exception as exc:
            logger.warning(
                "notifications.directory_failed",
                emergency_id=emergency.emergency_id,
                recipient_class=recipient_class,
                exc_info=True,
            )
            return [self._unreachable(recipient_class, level, f"directory error: {exc}")]

        if not recipients:
            logger.warning(
                "notifications.no_recipients",
                emergency_id=emergency.emergency_id,
                recipient_class=recipient_class,
                level=level,
            )
            return [self._unreachable(recipient_class, level, "no recipients configured")]

        context = build_context(emergency, level, self._clock.now())
        if extra_context:
            context.update(extra_context)

        records = await asyncio.gather(
            *(
                self._send_one(recipient, recipient_class, level, policy_level.template, context)
                for recipient in recipients
            )
        )

        failed = sum(1 for r in records if r.status is DeliveryStatus.FAILED)
        logger.info(
            "notifications.fanout_complete",
            emergency_id=emergency.emergency_id,
            level=level,
            recipient_class=recipient_class,
            attempted=len(records),
            failed=failed,
        )
        return list(records)

    async def _send_one(
        self,
        recipient: Recipient,
        recipient_class: RecipientClass,
        level: int,
        template: str,
        context: dict[str, Any],
    ) -> NotificationRecord:
        error: str | None = None
        try:
            result = await asyncio.wait_for(
                self._gateway.send(recipient, template, context),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            result = SendResult(status=DeliveryStatus.FAILED)
            error = f"timed out after {self._timeout:g}s"
        except Exception as exc:
            result = SendResult(status=DeliveryStatus.FAILED)
            error = f"{type(exc).__name__}: {exc}"

        if result.status is DeliveryStatus.FAILED:
            error = error or result.error or "delivery failed"
            logger.warning(
                "notifications.send_failed",
                to=recipient.address,
                level=level,
                error=error,
            )

        return NotificationRecord(
            recipient=recipient.address,
            recipient_name=recipient.name,
            recipient_class=recipient_class,
            channel=recipient.channel,
            level=level,
            sent_at=self._clock.now(),
            status=result.status,
            message_id=result.message_id,
            error=error,
        )

    def _unreachable(
        self, recipient_class: RecipientClass, level: int, reason: str
    ) -> NotificationRecord:
        return NotificationRecord(
            recipient=f"<{recipient_class.value}>",
            recipient_class=recipient_class,
            channel=NotificationChannel.IN_APP,
            level=level,
            sent_at=self._clock.now(),
            status=DeliveryStatus.FAILED,
            error=reason,
        )
