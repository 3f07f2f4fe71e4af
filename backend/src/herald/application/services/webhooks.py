"""Webhook ingest — verified gateway delivery callbacks.

Each gateway family signs its callbacks differently and speaks its own status
vocabulary.  Ingest verifies the signature before anything else, normalises
the statuses and awaits reconciliation of one ``ReconcileRequested`` per
callback, so a failure there reaches the gateway as an error response and
the gateway redelivers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import parse_qsl

import orjson
import structlog

from herald.domain.enums import DeliveryStatus, WebhookFamily
from herald.domain.events import ReconcileRequested
from herald.domain.exceptions import InvalidSignatureError, ValidationError
from herald.shared.observability.metrics import WEBHOOK_CALLBACKS
from herald.shared.security import body_signature, signatures_match, twilio_signature

logger = structlog.get_logger(__name__)

Reconciler = Callable[[ReconcileRequested], Awaitable[Any]]

TWILIO_SIGNATURE_HEADER = "x-twilio-signature"
SIGNATURE_HEADER = "x-herald-signature"

STATUS_MAPS: dict[WebhookFamily, dict[str, DeliveryStatus]] = {
    WebhookFamily.TWILIO: {
        "accepted": DeliveryStatus.ACCEPTED,
        "queued": DeliveryStatus.ACCEPTED,
        "sending": DeliveryStatus.ACCEPTED,
        "sent": DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "failed": DeliveryStatus.FAILED,
        "undelivered": DeliveryStatus.UNDELIVERED,
    },
    WebhookFamily.VONAGE: {
        "accepted": DeliveryStatus.ACCEPTED,
        "buffered": DeliveryStatus.ACCEPTED,
        "submitted": DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "failed": DeliveryStatus.FAILED,
        "rejected": DeliveryStatus.FAILED,
        "expired": DeliveryStatus.UNDELIVERED,
    },
    WebhookFamily.SENDGRID: {
        "processed": DeliveryStatus.ACCEPTED,
        "deferred": DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "dropped": DeliveryStatus.FAILED,
        "bounce": DeliveryStatus.UNDELIVERED,
    },
    WebhookFamily.MAILGUN: {
        "accepted": DeliveryStatus.ACCEPTED,
        "delivered": DeliveryStatus.DELIVERED,
        "failed": DeliveryStatus.FAILED,
        "rejected": DeliveryStatus.FAILED,
    },
    WebhookFamily.FCM: {
        "sent": DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "failed": DeliveryStatus.FAILED,
    },
}


@dataclass(frozen=True, slots=True)
class StatusCallback:
    """One status report for one provider message."""

    provider_message_id: str
    raw_status: str
    error_code: str | None = None


# ── Payload parsers ──────────────────────────────────────────
def _json(body: bytes) -> Any:
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        raise ValidationError(f"Malformed webhook body: {exc}") from exc


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError(f"{what} must be a JSON object")
    return value


def _form(body: bytes) -> dict[str, str]:
    return dict(parse_qsl(body.decode(errors="replace"), keep_blank_values=True))


def _parse_twilio(body: bytes) -> list[StatusCallback]:
    params = _form(body)
    sid = params.get("MessageSid") or params.get("SmsSid")
    status = params.get("MessageStatus") or params.get("SmsStatus")
    if not sid or not status:
        raise ValidationError("Twilio callback lacks MessageSid/MessageStatus")
    return [StatusCallback(sid, status, params.get("ErrorCode") or None)]


def _parse_sendgrid(body: bytes) -> list[StatusCallback]:
    events = _json(body)
    if not isinstance(events, list):
        raise ValidationError("SendGrid callback must be a JSON array")
    callbacks = []
    for item in events:
        event = _object(item, "SendGrid event")
        message_id = str(event.get("sg_message_id") or "")
        if not message_id or not event.get("event"):
            continue
        # sg_message_id carries a ".filter…" suffix after the id returned on send
        callbacks.append(
            StatusCallback(message_id.split(".", 1)[0], str(event["event"]), event.get("reason") or event.get("status"))
        )
    return callbacks


def _parse_fcm(body: bytes) -> list[StatusCallback]:
    payload = _object(_json(body), "FCM callback")
    message_id = payload.get("message_id") or payload.get("messageId")
    if not message_id or not payload.get("status"):
        raise ValidationError("FCM callback lacks message_id/status")
    return [StatusCallback(str(message_id), str(payload["status"]), payload.get("error"))]


def _parse_vonage(body: bytes) -> list[StatusCallback]:
    payload = _object(_json(body), "Vonage callback")
    message_id = payload.get("message_uuid") or payload.get("messageId")
    if not message_id or not payload.get("status"):
        raise ValidationError("Vonage callback lacks message id/status")
    error = payload.get("err-code")
    return [StatusCallback(str(message_id), str(payload["status"]), None if error in (None, "0") else str(error))]


def _parse_mailgun(body: bytes) -> list[StatusCallback]:
    data = _object(_object(_json(body), "Mailgun callback").get("event-data") or {}, "Mailgun event-data")
    message = _object(data.get("message") or {}, "Mailgun message")
    headers = _object(message.get("headers") or {}, "Mailgun message headers")
    message_id = str(headers.get("message-id") or "").strip("<>")
    if not message_id or not data.get("event"):
        raise ValidationError("Mailgun callback lacks message-id/event")
    code = _object(data.get("delivery-status") or {}, "Mailgun delivery-status").get("code")
    return [StatusCallback(message_id, str(data["event"]), str(code) if code else None)]


_PARSERS: dict[WebhookFamily, Callable[[bytes], list[StatusCallback]]] = {
    WebhookFamily.TWILIO: _parse_twilio,
    WebhookFamily.SENDGRID: _parse_sendgrid,
    WebhookFamily.FCM: _parse_fcm,
    WebhookFamily.VONAGE: _parse_vonage,
    WebhookFamily.MAILGUN: _parse_mailgun,
}


class WebhookIngest:
    """Verifies, normalises and reconciles gateway callbacks."""

    def __init__(self, secrets: Mapping[str, str], reconcile: Reconciler) -> None:
        self._secrets = dict(secrets)
        self._reconcile = reconcile

    @staticmethod
    def family_for(name: str) -> WebhookFamily:
        try:
            return WebhookFamily(name)
        except ValueError:
            raise ValidationError(f"Unsupported webhook family {name!r}") from None

    def verify(self, family: WebhookFamily, body: bytes, headers: Mapping[str, str], url: str) -> None:
        """Raise ``InvalidSignatureError`` unless the callback is authentic."""
        secret = self._secrets.get(family.value, "")
        lowered = {k.lower(): v for k, v in headers.items()}
        if family == WebhookFamily.TWILIO:
            expected = twilio_signature(secret, url, _form(body)) if secret else ""
            provided = lowered.get(TWILIO_SIGNATURE_HEADER)
        else:
            expected = body_signature(secret, body) if secret else ""
            provided = lowered.get(SIGNATURE_HEADER)
        if not signatures_match(provided, expected):
            WEBHOOK_CALLBACKS.labels(family=family.value, result="invalid_signature").inc()
            logger.warning("webhook_signature_invalid", family=family.value, has_signature=bool(provided))
            raise InvalidSignatureError(family.value)

    async def ingest(self, family_name: str, body: bytes, headers: Mapping[str, str], url: str) -> int:
        """Verify and reconcile; returns the number of statuses applied.

        Errors from reconciliation propagate to the caller.
        """
        family = self.family_for(family_name)
        self.verify(family, body, headers, url)

        vocabulary = STATUS_MAPS[family]
        events: list[ReconcileRequested] = []
        for callback in _PARSERS[family](body):
            status = vocabulary.get(callback.raw_status.lower())
            if status is None:
                logger.debug("webhook_status_ignored", family=family.value, raw_status=callback.raw_status)
                continue
            events.append(
                ReconcileRequested(
                    family=family.value,
                    provider_message_id=callback.provider_message_id,
                    status=status.value,
                    error_code=callback.error_code,
                    raw_status=callback.raw_status,
                )
            )

        for event in events:
            await self._reconcile(event)
        WEBHOOK_CALLBACKS.labels(family=family.value, result="accepted" if events else "ignored").inc()
        logger.info("webhook_ingested", family=family.value, events=len(events))
        return len(events)
