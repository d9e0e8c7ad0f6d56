"""API routes exposing the caller's credit balance."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ...auth import get_current_account_id
from ..exceptions import CreditsError
from ..schemas.credits import CreditsResponse
from ..services.credits import get_credit_accountant

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("", response_model=CreditsResponse)
async def get_credits(*, account_id: str = Depends(get_current_account_id)) -> CreditsResponse:
    accountant = get_credit_accountant()
    try:
        await accountant.ensure_account(account_id)
        summary = await accountant.get_credits(account_id)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    return CreditsResponse.from_summary(summary)
