"""M-Pesa STK push API routes.

The handlers are async for the provider calls; their database work runs in the
threadpool (see StkPushService and apply_stk_callback).
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from rentledger.api.dependencies import get_app_settings, get_mpesa
from rentledger.api.payments import already_settled_response, read_json_body
from rentledger.api.schemas import (
    PaymentResponse,
    StkPushRequest,
    StkPushResponseBody,
    StkStatusResponse,
)
from rentledger.services import get_db
from rentledger.services.config import Settings
from rentledger.services.errors import AlreadySettled, MalformedNotification, PaymentNotFound
from rentledger.services.mpesa_client import MpesaClient
from rentledger.services.stk_push_service import StkPushService, parse_stk_callback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["mpesa"])


@router.post("/stk-push", response_model=StkPushResponseBody)
async def initiate_stk_push(
    payload: StkPushRequest,
    db: Session = Depends(get_db),  # noqa: B008
    client: MpesaClient = Depends(get_mpesa),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
):
    """Send an STK push prompt and record the pending payment.

    Returns:
        200: Checkout request id and pending payment id
        400: Missing or invalid phone number, amount or account reference
        404: Unknown or vacant unit
        502: Provider credentials missing or rejected
        503: Provider unreachable (retry later)
    """
    service = StkPushService(db, client, settings)
    try:
        initiation = await service.initiate(payload.reference, payload.amount, payload.phone_number)
    except AlreadySettled as e:
        return already_settled_response(e)

    return StkPushResponseBody(
        message=initiation.customer_message,
        checkout_request_id=initiation.session.checkout_request_id,
        merchant_request_id=initiation.session.merchant_request_id,
        payment_id=initiation.payment.id,
        state=initiation.session.state.value,
    )


@router.post("/callback")
async def stk_callback(
    request: Request,
    db: Session = Depends(get_db),  # noqa: B008
    client: MpesaClient = Depends(get_mpesa),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """Provider callback for a push. Always acknowledged."""
    payload = await read_json_body(request)
    service = StkPushService(db, client, settings)
    return await run_in_threadpool(apply_stk_callback, service, payload)


def apply_stk_callback(service: StkPushService, payload: dict[str, Any]) -> dict[str, Any]:
    """Settle or reject the push named by a callback body and build the acknowledgement."""
    try:
        callback = parse_stk_callback(payload)
        result = service.resolve_callback(callback)
    except MalformedNotification as e:
        logger.warning("Invalid STK callback: %s", e.message)
        return {"ResultCode": 0, "ResultDesc": "Accepted"}
    except PaymentNotFound as e:
        logger.error("STK callback for unknown session: %s", e.message)
        return {"ResultCode": 0, "ResultDesc": "Accepted"}
    except Exception:
        logger.exception("Error processing STK callback")
        return {"ResultCode": 0, "ResultDesc": "Accepted"}

    logger.info("STK callback %s -> %s", callback.correlation_id, result.outcome.value)
    return {"ResultCode": 0, "ResultDesc": f"Callback {result.outcome.value}"}


@router.get("/status/{checkout_request_id}", response_model=StkStatusResponse)
async def stk_status(
    checkout_request_id: str,
    db: Session = Depends(get_db),  # noqa: B008
    client: MpesaClient = Depends(get_mpesa),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
):
    """Local payment state, cross-checked with the provider when still open."""
    status = await StkPushService(db, client, settings).query_status(checkout_request_id)
    return StkStatusResponse(
        status=status.payment.status.value,
        state=status.session.state.value,
        payment=PaymentResponse.model_validate(status.payment),
        mpesa_status=status.provider,
        error=status.provider_error,
    )
