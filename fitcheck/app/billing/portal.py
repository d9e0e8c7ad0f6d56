"""Customer portal sessions with the billing provider."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from ..exceptions import AccountNotFound, BillingCustomerNotLinked, BillingPortalUnavailable
from ..ledger.store import LedgerStore

logger = logging.getLogger("billing.portal")


class BillingPortal(Protocol):
    async def create_customer_session(self, customer_ref: str) -> str:
        ...


class PolarPortalClient:
    """Creates Polar customer sessions and returns their portal URL."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://api.polar.sh/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not access_token:
            raise ValueError("POLAR_ACCESS_TOKEN is not configured")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_customer_session(self, customer_ref: str) -> str:
        try:
            response = await self._client.post("/customer-sessions/", json={"customer_id": customer_ref})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Portal session request failed: %s", exc, extra={"customer_ref": customer_ref})
            raise BillingPortalUnavailable() from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Portal session response was not JSON", extra={"customer_ref": customer_ref})
            raise BillingPortalUnavailable("Billing provider returned an unreadable response") from exc

        url = payload.get("customer_portal_url") if isinstance(payload, dict) else None
        if not url:
            raise BillingPortalUnavailable("Billing provider did not return a portal URL")
        return url


async def open_customer_portal(store: LedgerStore, portal: BillingPortal, account_id: str) -> str:
    account = await store.get_account(account_id)
    if account is None:
        raise AccountNotFound(account_id)
    if not account.billing_customer_ref:
        raise BillingCustomerNotLinked(account_id)
    return await portal.create_customer_session(account.billing_customer_ref)


__all__ = ["BillingPortal", "PolarPortalClient", "open_customer_portal"]
