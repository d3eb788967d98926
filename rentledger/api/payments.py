"""Payment API routes: channel ingestion, batch jobs and ledger reads."""

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rentledger.api.dependencies import get_app_settings, get_dispatcher
from rentledger.api.schemas import (
    CheckOverdueRequest,
    GenerateRentRequest,
    PaymentResponse,
    PostingResponse,
    TenantSummary,
    UnitSearchResponse,
    UnitSummary,
)
from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentChannel
from rentledger.services import get_db
from rentledger.services.config import Settings
from rentledger.services.errors import AlreadySettled, AppError, PaymentNotFound
from rentledger.services.ingestion_service import IngestionGateway, PostingResult
from rentledger.services.overdue_service import OverdueSweeper
from rentledger.services.payment_service import PaymentService
from rentledger.services.posting_dispatcher import PostingDispatcher
from rentledger.services.rent_generator_service import MonthlyRentGenerator
from rentledger.services.resolver_service import BillingUnitResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def already_settled_response(error: AlreadySettled) -> JSONResponse:
    """Duplicate-period answer: success-like, pointing at the existing receipt."""
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "message": error.message,
            "duplicate": True,
            "alreadySettled": True,
            "receiptNumber": error.receipt_number,
            "paymentId": error.payment_id,
        },
    )


def posting_response(result: PostingResult, response: Response) -> PostingResponse:
    if result.is_duplicate:
        response.status_code = status.HTTP_200_OK
        message = "Payment already recorded"
    else:
        response.status_code = status.HTTP_201_CREATED
        message = "Payment recorded successfully"
    return PostingResponse(
        message=message,
        duplicate=result.is_duplicate,
        receipt_number=result.receipt_number,
        payment=PaymentResponse.model_validate(result.payment),
    )


def post_synchronously(
    channel: PaymentChannel,
    payload: dict[str, Any],
    response: Response,
    db: Session,
    settings: Settings,
) -> PostingResponse | JSONResponse:
    """Run the gateway inside the request and answer with the receipt."""
    try:
        result = IngestionGateway(db, settings).ingest(channel, payload)
    except AlreadySettled as e:
        return already_settled_response(e)
    except AppError:
        raise
    except Exception as e:
        logger.error("Error posting %s payment: %s", channel.value, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record payment",
        ) from e
    return posting_response(result, response)


async def read_json_body(request: Request) -> dict[str, Any]:
    """Parse a webhook body; anything but a JSON object yields an empty payload."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook %s sent a non-JSON body", request.url.path)
        return {}
    return payload if isinstance(payload, dict) else {}


# Acknowledge-first provider webhooks


@router.post("/mpesa-confirmation")
async def mpesa_confirmation(
    request: Request,
    dispatcher: PostingDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> dict[str, Any]:
    """M-Pesa C2B confirmation: acknowledge immediately, post in the background."""
    payload = await read_json_body(request)
    try:
        dispatcher.submit(PaymentChannel.MPESA_C2B, payload)
    except Exception:
        logger.exception("Could not queue M-Pesa confirmation %s", payload.get("TransID"))
    return MPESA_ACK


@router.post("/mpesa-validation")
async def mpesa_validation(
    request: Request,
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """M-Pesa C2B validation: accept or reject before funds move."""
    payload = await read_json_body(request)
    reference = payload.get("BillRefNumber") or payload.get("AccountReference")
    gateway = IngestionGateway(db, settings)
    decision = await run_in_threadpool(gateway.validate_account, reference)
    return decision.as_response()


# Synchronous posting channels


@router.post("/paybill", response_model=PostingResponse, status_code=status.HTTP_201_CREATED)
def receive_paybill(
    response: Response,
    payload: dict[str, Any] = Body(...),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
):
    """Direct-entry paybill payment (account number = house number)."""
    return post_synchronously(PaymentChannel.PAYBILL, payload, response, db, settings)


@router.post("/receive", response_model=PostingResponse, status_code=status.HTTP_201_CREATED)
def receive_webhook_payment(
    response: Response,
    payload: dict[str, Any] = Body(...),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
):
    """Generic payment webhook keyed by house number."""
    return post_synchronously(PaymentChannel.WEBHOOK, payload, response, db, settings)


# Batch jobs


@router.post("/generate-monthly-rent")
def generate_monthly_rent(
    payload: GenerateRentRequest | None = None,
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """Create expected rent records for every active tenant."""
    payload = payload or GenerateRentRequest()
    today = date.today()
    period = BillingPeriod(payload.month or today.month, payload.year or today.year)
    grace, pct = settings.billing_parameters(
        payload.grace_period_days, payload.late_fee_percentage
    )
    report = MonthlyRentGenerator(db).generate(period, grace, pct, today=today)
    return report.as_dict()


@router.post("/check-overdue")
def check_overdue(
    payload: CheckOverdueRequest | None = None,
    db: Session = Depends(get_db),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """Promote late pending/partial records to overdue."""
    payload = payload or CheckOverdueRequest()
    grace, pct = settings.billing_parameters(
        payload.grace_period_days, payload.late_fee_percentage
    )
    report = OverdueSweeper(db).sweep(grace, pct)
    result = report.as_dict()
    result["message"] = f"Updated {report.marked_overdue} payments to overdue"
    return result


# Reads


@router.get("/search/house/{unit_number}", response_model=UnitSearchResponse)
def search_house(unit_number: str, db: Session = Depends(get_db)):  # noqa: B008
    """Look up a unit by number and report whether it can receive payments."""
    unit = BillingUnitResolver(db).find_unit(unit_number)
    occupant = unit.occupant
    return UnitSearchResponse(
        house=UnitSummary.model_validate(unit),
        tenant=TenantSummary.model_validate(occupant) if occupant else None,
        can_receive_payment=occupant is not None,
    )


@router.get("/tenant/{tenant_id}", response_model=list[PaymentResponse])
def list_tenant_payments(tenant_id: int, db: Session = Depends(get_db)):  # noqa: B008
    payments = PaymentService(db).list_for_tenant(tenant_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/house/{unit_id}", response_model=list[PaymentResponse])
def list_house_payments(unit_id: int, db: Session = Depends(get_db)):  # noqa: B008
    payments = PaymentService(db).list_for_unit(unit_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/receipt/{receipt_number}", response_model=PaymentResponse)
def get_payment_by_receipt(receipt_number: str, db: Session = Depends(get_db)):  # noqa: B008
    payment = PaymentService(db).get_by_receipt(receipt_number)
    if payment is None:
        raise PaymentNotFound(f"No payment with receipt {receipt_number}")
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: int, db: Session = Depends(get_db)):  # noqa: B008
    payment = PaymentService(db).get_by_id(payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return PaymentResponse.model_validate(payment)
