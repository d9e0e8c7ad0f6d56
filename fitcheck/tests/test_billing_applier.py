"""Tests for applying billing events to accounts and the ledger."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import open_account
from fitcheck.app.billing import (
    ApplyOutcome,
    BillingEvent,
    BillingEventApplier,
    CustomerCreatedPayload,
    CustomerInfo,
    OrderPaidPayload,
    SubscriptionPayload,
)
from fitcheck.app.exceptions import UnknownAccount
from fitcheck.app.ledger import LedgerReason, PlanTier

PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def applier(store, accountant, clock):
    return BillingEventApplier(store, accountant, product_tiers={"prod_unlimited": "unlimited"}, clock=clock)


def subscription_event(event_id, event_type, *, sequence, subscription_id="sub_1", period_end=None, **payload):
    payload.setdefault("customer_id", "cus_1")
    return BillingEvent(
        event_id=event_id,
        type=event_type,
        sequence=sequence,
        payload=SubscriptionPayload(
            id=subscription_id,
            current_period_start=PERIOD_START,
            current_period_end=period_end,
            **payload,
        ),
    )


def order_event(event_id, *, credits, customer_id="cus_1", order_id="ord_1"):
    metadata = {} if credits is None else {"credits": str(credits)}
    return BillingEvent(
        event_id=event_id,
        type="order.paid",
        payload=OrderPaidPayload(id=order_id, customer_id=customer_id, metadata=metadata),
    )


@pytest.mark.asyncio
async def test_order_paid_tops_up_balance(applier, store, accountant):
    await open_account(store, accountant, "acct_1", balance=20, customer_ref="cus_1")

    result = await applier.apply(order_event("evt_1", credits=100))

    assert result.outcome == ApplyOutcome.APPLIED
    assert result.account_id == "acct_1"
    assert (await store.get_account("acct_1")).credit_balance == 120
    topup = (await store.list_entries("acct_1"))[-1]
    assert (topup.reason, topup.delta, topup.reference) == (LedgerReason.TOPUP, 100, "order:ord_1")
    assert topup.billing_event_id == "evt_1"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_applied_once(applier, store, accountant):
    await open_account(store, accountant, "acct_1", balance=20, customer_ref="cus_1")
    event = order_event("evt_1", credits=100)

    first = await applier.apply(event)
    second = await applier.apply(event)

    assert first.outcome == ApplyOutcome.APPLIED
    assert second.outcome == ApplyOutcome.DUPLICATE
    assert (await store.get_account("acct_1")).credit_balance == 120


@pytest.mark.asyncio
async def test_same_order_under_new_event_id_is_credited_once(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(order_event("evt_1", credits=50))
    await applier.apply(order_event("evt_2", credits=50))

    assert (await store.get_account("acct_1")).credit_balance == 50


@pytest.mark.asyncio
async def test_subscription_activation_upgrades_and_grants(applier, store, accountant, resolver):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    result = await applier.apply(subscription_event("evt_1", "subscription.active", sequence=5))

    account = await store.get_account("acct_1")
    assert result.outcome == ApplyOutcome.APPLIED
    assert account.plan_tier == PlanTier.PRO
    assert account.subscription_id == "sub_1"
    assert account.plan_version == 5
    assert account.credit_balance == 100
    assert (await resolver.resolve_plan("acct_1")).plan_tier == PlanTier.PRO


@pytest.mark.asyncio
async def test_created_and_active_in_one_period_grant_once(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(subscription_event("evt_1", "subscription.created", sequence=1))
    await applier.apply(subscription_event("evt_2", "subscription.active", sequence=2))

    grants = [e for e in await store.list_entries("acct_1") if e.reason == LedgerReason.SUBSCRIPTION_GRANT]
    assert len(grants) == 1
    assert (await store.get_account("acct_1")).credit_balance == 100


@pytest.mark.asyncio
async def test_stale_cancellation_does_not_regress_plan(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(subscription_event("evt_active", "subscription.active", sequence=5))
    result = await applier.apply(subscription_event("evt_cancel", "subscription.canceled", sequence=3))

    account = await store.get_account("acct_1")
    assert result.outcome == ApplyOutcome.IGNORED
    assert result.reason == "stale_event"
    assert account.plan_tier == PlanTier.PRO
    assert account.downgrade_at is None
    assert await store.has_event("evt_cancel")


@pytest.mark.asyncio
async def test_cancellation_downgrades_at_period_end_and_keeps_credits(applier, store, accountant, resolver, clock):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")
    period_end = clock() + timedelta(days=10)

    await applier.apply(subscription_event("evt_active", "subscription.active", sequence=5))
    result = await applier.apply(
        subscription_event("evt_cancel", "subscription.canceled", sequence=7, period_end=period_end)
    )

    assert result.outcome == ApplyOutcome.APPLIED
    assert (await store.get_account("acct_1")).downgrade_at == period_end
    assert (await resolver.resolve_plan("acct_1")).plan_tier == PlanTier.PRO

    clock.advance(timedelta(days=11).total_seconds())
    assert (await resolver.resolve_plan("acct_1")).plan_tier == PlanTier.FREE
    assert (await store.get_account("acct_1")).credit_balance == 100


@pytest.mark.asyncio
async def test_cancellation_without_period_end_downgrades_now(applier, store, accountant, resolver):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(subscription_event("evt_active", "subscription.active", sequence=1))
    await applier.apply(subscription_event("evt_cancel", "subscription.canceled", sequence=2))

    assert (await resolver.resolve_plan("acct_1")).plan_tier == PlanTier.FREE


@pytest.mark.asyncio
async def test_cancellation_of_replaced_subscription_is_ignored(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(subscription_event("evt_active", "subscription.active", sequence=4, subscription_id="sub_2"))
    result = await applier.apply(
        subscription_event("evt_cancel", "subscription.canceled", sequence=6, subscription_id="sub_1")
    )

    assert result.reason == "other_subscription"
    assert (await store.get_account("acct_1")).downgrade_at is None


@pytest.mark.asyncio
async def test_reactivation_clears_pending_downgrade(applier, store, accountant, clock):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(subscription_event("evt_1", "subscription.active", sequence=1))
    await applier.apply(
        subscription_event("evt_2", "subscription.canceled", sequence=2, period_end=clock() + timedelta(days=5))
    )
    await applier.apply(subscription_event("evt_3", "subscription.active", sequence=3))

    assert (await store.get_account("acct_1")).downgrade_at is None


@pytest.mark.asyncio
async def test_product_mapping_selects_tier(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_1")

    await applier.apply(
        subscription_event("evt_1", "subscription.active", sequence=1, product_id="prod_unlimited")
    )

    account = await store.get_account("acct_1")
    assert account.plan_tier == PlanTier.UNLIMITED
    assert account.credit_balance == 0


@pytest.mark.asyncio
async def test_subscription_links_account_by_external_id(applier, store, accountant):
    await open_account(store, accountant, "acct_1")

    result = await applier.apply(
        subscription_event(
            "evt_1",
            "subscription.active",
            sequence=1,
            customer_id="cus_9",
            customer=CustomerInfo(id="cus_9", external_id="acct_1"),
        )
    )

    assert result.account_id == "acct_1"
    assert (await store.get_account("acct_1")).billing_customer_ref == "cus_9"


@pytest.mark.asyncio
async def test_customer_created_links_account(applier, store, accountant):
    await open_account(store, accountant, "acct_1")
    event = BillingEvent(
        event_id="evt_1",
        type="customer.created",
        payload=CustomerCreatedPayload(id="cus_1", external_id="acct_1", email="a@example.com"),
    )

    result = await applier.apply(event)

    assert result.outcome == ApplyOutcome.APPLIED
    assert (await store.find_account_by_customer_ref("cus_1")).account_id == "acct_1"


@pytest.mark.asyncio
async def test_customer_created_keeps_existing_link(applier, store, accountant):
    await open_account(store, accountant, "acct_1", customer_ref="cus_old")
    event = BillingEvent(
        event_id="evt_1",
        type="customer.created",
        payload=CustomerCreatedPayload(id="cus_new", external_id="acct_1"),
    )

    result = await applier.apply(event)

    assert result.reason == "customer_mismatch"
    assert (await store.get_account("acct_1")).billing_customer_ref == "cus_old"


@pytest.mark.asyncio
async def test_unknown_event_type_is_recorded_and_ignored(applier, store):
    event = BillingEvent(event_id="evt_1", type="benefit.granted")

    first = await applier.apply(event)
    second = await applier.apply(event)

    assert first.outcome == ApplyOutcome.IGNORED
    assert first.reason == "unknown_event_type"
    assert second.outcome == ApplyOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_unknown_account_is_rejected_and_not_recorded(applier, store):
    with pytest.raises(UnknownAccount) as exc:
        await applier.apply(order_event("evt_1", credits=10, customer_id="cus_nobody"))

    assert exc.value.status_code == 409
    assert await store.has_event("evt_1") is False


@pytest.mark.asyncio
async def test_order_without_credit_amount_is_ignored(applier, store, accountant):
    await open_account(store, accountant, "acct_1", balance=5, customer_ref="cus_1")

    result = await applier.apply(order_event("evt_1", credits=None))

    assert result.reason == "no_credit_amount"
    assert (await store.get_account("acct_1")).credit_balance == 5
    assert await store.has_event("evt_1")
