"""Application wiring for billing events and the customer portal."""
from __future__ import annotations

from functools import lru_cache

from ... import app_context
from ..billing import BillingEventApplier, BillingPortal
from .credits import get_credit_accountant


@lru_cache(maxsize=1)
def get_billing_applier() -> BillingEventApplier:
    config = app_context.get_config()
    return BillingEventApplier(
        app_context.get_ledger_store(),
        get_credit_accountant(),
        product_tiers=config.product_tiers,
    )


def get_billing_portal() -> BillingPortal:
    return app_context.get_billing_portal()


def get_webhook_secret() -> str:
    return app_context.get_config().billing_webhook_secret or ""


__all__ = ["get_billing_applier", "get_billing_portal", "get_webhook_secret"]
