"""Apply verified billing events to accounts and the credit ledger."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from ..credits.service import CreditAccountant
from ..exceptions import InvalidBillingEvent, UnknownAccount
from ..ledger.models import Account, LedgerReason, ProcessedEvent
from ..ledger.store import AccountSession, LedgerStore
from ..plans.catalog import get_plan_definition, tier_for_product
from .models import (
    ApplyOutcome,
    ApplyResult,
    BillingEvent,
    BillingEventType,
    CustomerCreatedPayload,
    OrderPaidPayload,
    SubscriptionPayload,
)

logger = logging.getLogger("billing")


class BillingEventApplier:
    """Turns billing webhooks into account and ledger changes.

    The processed-event marker is written in the same account session as the
    event's effect, so an event is either fully applied and remembered or not
    applied at all. Subscription events carry a sequence; one older than the
    last applied plan change is ignored instead of regressing the plan.
    """

    def __init__(
        self,
        store: LedgerStore,
        accountant: CreditAccountant,
        *,
        product_tiers: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._accountant = accountant
        self._product_tiers: Dict[str, str] = dict(product_tiers or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def apply(self, event: BillingEvent) -> ApplyResult:
        if await self._store.has_event(event.event_id):
            logger.info("Duplicate billing event %s ignored", event.event_id)
            return ApplyResult(event_id=event.event_id, outcome=ApplyOutcome.DUPLICATE)

        event_type = event.event_type
        if event_type is None or event.payload is None:
            recorded = await self._store.record_standalone_event(self._marker(event, account_id=None))
            if not recorded:
                return ApplyResult(event_id=event.event_id, outcome=ApplyOutcome.DUPLICATE)
            logger.info("Unhandled billing event type %s", event.type, extra={"event_id": event.event_id})
            return ApplyResult(event_id=event.event_id, outcome=ApplyOutcome.IGNORED, reason="unknown_event_type")

        account = await self._resolve_account(event)
        async with self._store.account_session(account.account_id) as session:
            if not await session.record_event(self._marker(event, account_id=account.account_id)):
                logger.info("Duplicate billing event %s ignored", event.event_id)
                return ApplyResult(
                    event_id=event.event_id,
                    outcome=ApplyOutcome.DUPLICATE,
                    account_id=account.account_id,
                )
            result = await self._dispatch(event_type, session, event)

        logger.info(
            "Billing event %s %s",
            event.type,
            result.outcome.value,
            extra={"event_id": event.event_id, "account_id": result.account_id, "reason": result.reason},
        )
        return result

    async def _dispatch(
        self,
        event_type: BillingEventType,
        session: AccountSession,
        event: BillingEvent,
    ) -> ApplyResult:
        if event_type in {BillingEventType.SUBSCRIPTION_CREATED, BillingEventType.SUBSCRIPTION_ACTIVE}:
            return await self._apply_subscription_started(session, event)
        if event_type == BillingEventType.SUBSCRIPTION_CANCELED:
            return await self._apply_subscription_canceled(session, event)
        if event_type == BillingEventType.ORDER_PAID:
            return await self._apply_order_paid(session, event)
        return await self._apply_customer_created(session, event)

    async def _apply_subscription_started(self, session: AccountSession, event: BillingEvent) -> ApplyResult:
        payload = event.payload
        assert isinstance(payload, SubscriptionPayload)
        account = session.account
        if event.sequence < account.plan_version:
            return self._stale(event, account)

        tier = tier_for_product(payload.product_id, self._product_tiers)
        changes: Dict[str, object] = {
            "plan_tier": tier,
            "subscription_id": payload.id,
            "plan_version": max(event.sequence, account.plan_version),
            "downgrade_at": None,
        }
        if account.billing_customer_ref is None and payload.customer_id:
            changes["billing_customer_ref"] = payload.customer_id
        await session.update_account(**changes)

        grant = get_plan_definition(tier).period_grant
        if grant > 0:
            await self._accountant.credit_in_session(
                session,
                grant,
                LedgerReason.SUBSCRIPTION_GRANT,
                reference=payload.period_key,
                billing_event_id=event.event_id,
            )
        return self._applied(event, account)

    async def _apply_subscription_canceled(self, session: AccountSession, event: BillingEvent) -> ApplyResult:
        payload = event.payload
        assert isinstance(payload, SubscriptionPayload)
        account = session.account
        if event.sequence < account.plan_version:
            return self._stale(event, account)
        if account.subscription_id and account.subscription_id != payload.id:
            logger.info(
                "Cancellation for superseded subscription %s ignored",
                payload.id,
                extra={"account_id": account.account_id},
            )
            return ApplyResult(
                event_id=event.event_id,
                outcome=ApplyOutcome.IGNORED,
                reason="other_subscription",
                account_id=account.account_id,
            )

        # Already granted credits stay; the plan lapses at the end of the paid period.
        await session.update_account(
            plan_version=max(event.sequence, account.plan_version),
            downgrade_at=payload.current_period_end or self._clock(),
        )
        return self._applied(event, account)

    async def _apply_order_paid(self, session: AccountSession, event: BillingEvent) -> ApplyResult:
        payload = event.payload
        assert isinstance(payload, OrderPaidPayload)
        account = session.account
        credits = payload.credits
        if credits is None or credits <= 0:
            return ApplyResult(
                event_id=event.event_id,
                outcome=ApplyOutcome.IGNORED,
                reason="no_credit_amount",
                account_id=account.account_id,
            )
        if account.billing_customer_ref is None and payload.customer_id:
            await session.update_account(billing_customer_ref=payload.customer_id)
        await self._accountant.credit_in_session(
            session,
            credits,
            LedgerReason.TOPUP,
            reference=payload.reference,
            billing_event_id=event.event_id,
        )
        return self._applied(event, account)

    async def _apply_customer_created(self, session: AccountSession, event: BillingEvent) -> ApplyResult:
        payload = event.payload
        assert isinstance(payload, CustomerCreatedPayload)
        account = session.account
        if account.billing_customer_ref == payload.id:
            return ApplyResult(
                event_id=event.event_id,
                outcome=ApplyOutcome.IGNORED,
                reason="already_linked",
                account_id=account.account_id,
            )
        if account.billing_customer_ref is not None:
            logger.warning(
                "Account %s is already linked to customer %s; %s not linked",
                account.account_id,
                account.billing_customer_ref,
                payload.id,
            )
            return ApplyResult(
                event_id=event.event_id,
                outcome=ApplyOutcome.IGNORED,
                reason="customer_mismatch",
                account_id=account.account_id,
            )
        await session.update_account(billing_customer_ref=payload.id)
        return self._applied(event, account)

    async def _resolve_account(self, event: BillingEvent) -> Account:
        payload = event.payload
        if isinstance(payload, CustomerCreatedPayload):
            customer_ref, external_id = payload.id, payload.external_id
        elif isinstance(payload, (SubscriptionPayload, OrderPaidPayload)):
            customer_ref = payload.customer_id or (payload.customer.id if payload.customer else None)
            external_id = payload.external_account_id
        else:
            raise InvalidBillingEvent(f"{event.type} event has no payload")

        if customer_ref:
            account = await self._store.find_account_by_customer_ref(customer_ref)
            if account is not None:
                return account
        if external_id:
            account = await self._store.get_account(external_id)
            if account is not None:
                return account

        logger.warning(
            "Billing event %s references unknown account",
            event.event_id,
            extra={"customer_ref": customer_ref, "external_id": external_id},
        )
        raise UnknownAccount(customer_ref or external_id)

    def _stale(self, event: BillingEvent, account: Account) -> ApplyResult:
        logger.info(
            "Stale billing event %s ignored (sequence %s < %s)",
            event.event_id,
            event.sequence,
            account.plan_version,
            extra={"account_id": account.account_id},
        )
        return ApplyResult(
            event_id=event.event_id,
            outcome=ApplyOutcome.IGNORED,
            reason="stale_event",
            account_id=account.account_id,
        )

    @staticmethod
    def _applied(event: BillingEvent, account: Account) -> ApplyResult:
        return ApplyResult(event_id=event.event_id, outcome=ApplyOutcome.APPLIED, account_id=account.account_id)

    @staticmethod
    def _marker(event: BillingEvent, *, account_id: Optional[str]) -> ProcessedEvent:
        return ProcessedEvent(
            event_id=event.event_id,
            event_type=event.type,
            account_id=account_id,
            sequence=event.sequence,
            received_at=event.received_at,
        )


__all__ = ["BillingEventApplier"]
