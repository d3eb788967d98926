"""Equity Bank API routes: transfer webhook, manual entry and account lookup."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, Response
from sqlalchemy.orm import Session

from rentledger.api.dependencies import get_app_settings, get_dispatcher
from rentledger.api.payments import post_synchronously, read_json_body
from rentledger.api.schemas import (
    AccountVerificationResponse,
    PostingResponse,
    TenantSummary,
    UnitSummary,
)
from rentledger.models.payment import PaymentChannel
from rentledger.models.tenant import Tenant
from rentledger.services import get_db
from rentledger.services.config import Settings
from rentledger.services.posting_dispatcher import PostingDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/equity-bank", tags=["equity-bank"])


@router.post("/webhook")
async def bank_webhook(
    request: Request,
    dispatcher: PostingDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> dict[str, Any]:
    """Bank transfer notification: acknowledge immediately, post in the background."""
    payload = await read_json_body(request)
    try:
        dispatcher.submit(PaymentChannel.BANK_WEBHOOK, payload)
    except Exception:
        logger.exception("Could not queue bank webhook")
    return {"success": True, "message": "Webhook received"}


@router.post("/manual-payment", response_model=PostingResponse, status_code=201)
def manual_bank_payment(
    response: Response,
    payload: dict[str, Any] = Body(...),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
):
    """Staff entry of a bank payment that arrived without a webhook."""
    return post_synchronously(PaymentChannel.BANK_MANUAL, payload, response, db, settings)


@router.get("/verify-account/{account_number}", response_model=AccountVerificationResponse)
def verify_account(
    account_number: str,
    response: Response,
    db: Session = Depends(get_db),  # noqa: B008
):
    """Report whether a bank account number belongs to a tenant."""
    normalized = account_number.strip()
    tenant = (
        db.query(Tenant)
        .filter(Tenant.bank_account_number == normalized)
        .order_by(Tenant.id)
        .first()
    )
    if tenant is None:
        response.status_code = 404
        return AccountVerificationResponse(found=False, account_number=normalized)

    return AccountVerificationResponse(
        found=True,
        account_number=normalized,
        tenant=TenantSummary.model_validate(tenant),
        house=UnitSummary.model_validate(tenant.unit) if tenant.unit else None,
    )
