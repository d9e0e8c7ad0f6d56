"""API routes for the billing portal and billing webhooks."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status

from ...auth import get_current_account_id
from ..billing import open_customer_portal, parse_billing_event, verify_webhook_signature
from ..exceptions import CreditsError
from ..schemas.billing import PortalSessionResponse, WebhookAckResponse
from ..services.billing import get_billing_applier, get_billing_portal, get_webhook_secret
from ..services.credits import get_credit_accountant

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["billing"])


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(*, account_id: str = Depends(get_current_account_id)) -> PortalSessionResponse:
    accountant = get_credit_accountant()
    try:
        portal_url = await open_customer_portal(accountant.store, get_billing_portal(), account_id)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse(portal_url=portal_url)


@webhook_router.post("/billing", status_code=status.HTTP_202_ACCEPTED, response_model=WebhookAckResponse)
async def receive_billing_webhook(request: Request) -> WebhookAckResponse:
    body = await request.body()
    try:
        message_id = verify_webhook_signature(body, request.headers, get_webhook_secret())
        event = parse_billing_event(body, event_id=message_id)
        result = await get_billing_applier().apply(event)
    except CreditsError as exc:
        logger.warning("Billing webhook rejected: %s", exc.code, extra={"status_code": exc.status_code})
        raise exc.to_http_exception() from exc
    return WebhookAckResponse.from_result(result)
