"""Billing webhooks, event application and the customer portal."""

from .models import (
    ApplyOutcome,
    ApplyResult,
    BillingEvent,
    BillingEventType,
    CustomerCreatedPayload,
    CustomerInfo,
    OrderPaidPayload,
    SubscriptionPayload,
)
from .portal import BillingPortal, PolarPortalClient, open_customer_portal
from .service import BillingEventApplier
from .webhooks import event_sequence, parse_billing_event, sign_payload, verify_webhook_signature

__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "BillingEvent",
    "BillingEventApplier",
    "BillingEventType",
    "BillingPortal",
    "CustomerCreatedPayload",
    "CustomerInfo",
    "OrderPaidPayload",
    "PolarPortalClient",
    "SubscriptionPayload",
    "event_sequence",
    "open_customer_portal",
    "parse_billing_event",
    "sign_payload",
    "verify_webhook_signature",
]
