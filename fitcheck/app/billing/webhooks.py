"""Webhook signature verification and event parsing."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from ..exceptions import InvalidBillingEvent, WebhookVerificationError
from .models import (
    BillingEvent,
    BillingEventType,
    CustomerCreatedPayload,
    OrderPaidPayload,
    SubscriptionPayload,
)

SIGNATURE_TOLERANCE_SECONDS = 300
SECRET_PREFIX = "whsec_"

_PAYLOAD_MODELS: Dict[BillingEventType, Type[BaseModel]] = {
    BillingEventType.SUBSCRIPTION_CREATED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_ACTIVE: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_CANCELED: SubscriptionPayload,
    BillingEventType.ORDER_PAID: OrderPaidPayload,
    BillingEventType.CUSTOMER_CREATED: CustomerCreatedPayload,
}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def _signing_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX):])
        except (binascii.Error, ValueError) as exc:
            raise WebhookVerificationError("Webhook secret is not valid base64") from exc
    return secret.encode("utf-8")


def sign_payload(body: bytes, *, secret: str, message_id: str, timestamp: int) -> str:
    """Return the ``webhook-signature`` header value for ``body``."""

    signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_signing_key(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    *,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> str:
    """Verify a Standard Webhooks signature and return the message id."""

    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")

    message_id = _header(headers, "webhook-id")
    timestamp_raw = _header(headers, "webhook-timestamp")
    signature_header = _header(headers, "webhook-signature")
    if not message_id or not timestamp_raw or not signature_header:
        raise WebhookVerificationError("Missing webhook signature headers")

    try:
        timestamp = int(timestamp_raw)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid webhook timestamp") from exc

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookVerificationError("Webhook timestamp outside the allowed window")

    expected = sign_payload(body, secret=secret, message_id=message_id, timestamp=timestamp)
    for candidate in signature_header.split():
        if hmac.compare_digest(candidate, expected):
            return message_id
    raise WebhookVerificationError()


def _to_sequence(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return int(parsed.timestamp() * 1_000_000)
    return None


def event_sequence(raw: Mapping[str, Any]) -> int:
    """Ordering key of an event: explicit sequence, else modified/created time in microseconds."""

    explicit = _to_sequence(raw.get("sequence"))
    if explicit is not None:
        return explicit
    data = raw.get("data") or {}
    for field in ("modified_at", "created_at"):
        found = _to_sequence(data.get(field))
        if found is not None:
            return found
    return 0


def parse_billing_event(
    raw: Union[bytes, str, Mapping[str, Any]],
    *,
    event_id: Optional[str] = None,
) -> BillingEvent:
    """Build a typed :class:`BillingEvent` from a decoded webhook body."""

    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise InvalidBillingEvent("Webhook body is not valid JSON") from exc
    if not isinstance(raw, Mapping):
        raise InvalidBillingEvent("Webhook body must be a JSON object")

    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise InvalidBillingEvent("Webhook event has no type")
    resolved_id = event_id or raw.get("id")
    if not resolved_id:
        raise InvalidBillingEvent("Webhook event has no id")

    payload = None
    data = raw.get("data")
    try:
        known_type: Optional[BillingEventType] = BillingEventType(event_type)
    except ValueError:
        known_type = None
    if known_type is not None:
        if not isinstance(data, Mapping):
            raise InvalidBillingEvent(f"{event_type} event has no data object")
        try:
            payload = _PAYLOAD_MODELS[known_type].model_validate(data)
        except ValidationError as exc:
            raise InvalidBillingEvent(f"Malformed {event_type} payload: {exc.errors()[0]['msg']}") from exc

    return BillingEvent(
        event_id=str(resolved_id),
        type=event_type,
        sequence=event_sequence(raw),
        payload=payload,
    )


__all__ = [
    "SIGNATURE_TOLERANCE_SECONDS",
    "event_sequence",
    "parse_billing_event",
    "sign_payload",
    "verify_webhook_signature",
]
