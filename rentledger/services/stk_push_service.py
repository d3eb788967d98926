"""STK push state machine.

initiated -> awaiting_callback -> settled | rejected

``initiate`` writes the local pending record and commits before talking to
the provider, so no database transaction is held open across the network
call. Database work of the async entry points runs in the threadpool.
``resolve_callback`` is idempotent: callbacks for a session that already
reached a terminal state are acknowledged and ignored.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentChannel, PaymentRecord, PaymentStatus
from rentledger.models.stk_push_session import StkPushSession, StkState
from rentledger.services.channels import clean_text, parse_provider_timestamp, require_amount
from rentledger.services.config import Settings, get_settings
from rentledger.services.errors import (
    AppError,
    MalformedNotification,
    PaymentNotFound,
    ProviderAuthError,
    ProviderUnavailable,
    StorageConstraintViolation,
)
from rentledger.services.ingestion_service import IngestionGateway
from rentledger.services.ledger_service import ZERO, LedgerCalculator, parse_amount
from rentledger.services.mpesa_client import (
    MpesaClient,
    StkPushResponse,
    get_mpesa_client,
    normalize_phone,
)
from rentledger.services.payment_service import PaymentService
from rentledger.services.receipt_service import next_receipt_number
from rentledger.services.resolver_service import BillingUnitResolver

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "STK-"


class CallbackOutcome(str, Enum):
    """What a provider callback did to the session."""

    SETTLED = "settled"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class StkCallback:
    """Provider callback in canonical form."""

    correlation_id: str
    result_code: int
    result_desc: Optional[str] = None
    amount: Optional[Decimal] = None
    provider_receipt_id: Optional[str] = None
    payer_phone: Optional[str] = None
    transaction_time: Optional[datetime] = None
    merchant_request_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass
class StkInitiation:
    """Result of a successful push initiation."""

    session: StkPushSession
    payment: PaymentRecord
    customer_message: Optional[str] = None


@dataclass
class CallbackResult:
    outcome: CallbackOutcome
    session: StkPushSession
    payment: PaymentRecord


@dataclass
class StkStatus:
    """Local session state plus the provider's live answer, when available."""

    session: StkPushSession
    payment: PaymentRecord
    provider: Optional[dict[str, Any]] = None
    provider_error: Optional[str] = None


def parse_stk_callback(payload: Mapping[str, Any]) -> StkCallback:
    """Parse a callback in the provider's nested shape or the flat canonical shape.

    Nested: ``{"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode",
    "ResultDesc", "CallbackMetadata": {"Item": [{"Name", "Value"}]}}}}``

    Flat: ``{"correlationId", "resultCode", "amount", "providerReceiptId",
    "payerPhone", "transactionTime"}``

    Raises:
        MalformedNotification: Correlation id or result code missing
        InvalidAmount: Reported amount is not a valid amount
    """
    body = payload.get("Body")
    if isinstance(body, Mapping):
        stk = body.get("stkCallback")
        if not isinstance(stk, Mapping):
            raise MalformedNotification("Callback has no stkCallback body")
        items = (stk.get("CallbackMetadata") or {}).get("Item") or []
        metadata = {
            item.get("Name"): item.get("Value") for item in items if isinstance(item, Mapping)
        }
        fields = {
            "correlation_id": stk.get("CheckoutRequestID"),
            "result_code": stk.get("ResultCode"),
            "result_desc": stk.get("ResultDesc"),
            "amount": metadata.get("Amount"),
            "provider_receipt_id": metadata.get("MpesaReceiptNumber"),
            "payer_phone": metadata.get("PhoneNumber"),
            "transaction_time": metadata.get("TransactionDate"),
            "merchant_request_id": stk.get("MerchantRequestID"),
        }
    else:
        fields = {
            "correlation_id": payload.get("correlationId"),
            "result_code": payload.get("resultCode"),
            "result_desc": payload.get("resultDesc"),
            "amount": payload.get("amount"),
            "provider_receipt_id": payload.get("providerReceiptId"),
            "payer_phone": payload.get("payerPhone"),
            "transaction_time": payload.get("transactionTime"),
            "merchant_request_id": payload.get("merchantRequestId"),
        }

    correlation_id = clean_text(fields["correlation_id"])
    if correlation_id is None:
        raise MalformedNotification("Callback has no checkout request id")
    try:
        result_code = int(fields["result_code"])
    except (TypeError, ValueError) as e:
        raise MalformedNotification("Callback has no valid result code") from e

    amount = fields["amount"]
    return StkCallback(
        correlation_id=correlation_id,
        result_code=result_code,
        result_desc=clean_text(fields["result_desc"]),
        amount=parse_amount(amount) if amount is not None else None,
        provider_receipt_id=clean_text(fields["provider_receipt_id"]),
        payer_phone=clean_text(fields["payer_phone"]),
        transaction_time=parse_provider_timestamp(fields["transaction_time"]),
        merchant_request_id=clean_text(fields["merchant_request_id"]),
    )


class StkPushService:
    """Drive STK push payments from initiation to settlement."""

    def __init__(
        self,
        db: Session,
        client: Optional[MpesaClient] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize with database session and provider client."""
        self.db = db
        self.settings = settings or get_settings()
        self._client = client
        self.resolver = BillingUnitResolver(db)
        self.calculator = LedgerCalculator(db)
        self.payments = PaymentService(db)

    @property
    def client(self) -> MpesaClient:
        if self._client is None:
            self._client = get_mpesa_client()
        return self._client

    def get_session(self, correlation_id: str) -> Optional[StkPushSession]:
        return (
            self.db.query(StkPushSession)
            .filter(StkPushSession.checkout_request_id == correlation_id)
            .first()
        )

    async def initiate(
        self,
        account_reference: str,
        amount: Any,
        phone_number: str,
        now: Optional[datetime] = None,
    ) -> StkInitiation:
        """Create the pending record and send the push prompt.

        Database work runs in the threadpool; only the provider call is awaited
        on the event loop.

        Raises:
            MalformedNotification, InvalidAmount: Bad request fields
            UnitNotFound, NoOccupant: Unit cannot receive payments
            AlreadySettled: Period paid and the channel allows no more
            ProviderAuthError: Provider credentials missing or rejected
            ProviderUnavailable: Provider unreachable; caller may retry
        """
        now = now or datetime.now(timezone.utc)
        requested = require_amount(amount)
        if not clean_text(phone_number):
            raise MalformedNotification("Phone number is required")
        phone = normalize_phone(phone_number)
        self.client.ensure_configured()

        session = await run_in_threadpool(
            self._open_push, account_reference, requested, phone, now
        )
        try:
            response = await self.client.stk_push(
                phone, requested, session.account_reference, now=now
            )
        except (ProviderAuthError, ProviderUnavailable) as e:
            await run_in_threadpool(self._record_push_failure, session, e)
            raise
        return await run_in_threadpool(self._record_push_response, session, response)

    def _open_push(
        self, account_reference: str, requested: Decimal, phone: str, now: datetime
    ) -> StkPushSession:
        resolved = self.resolver.resolve(require_text(account_reference, "accountReference"))
        gateway = IngestionGateway(self.db, self.settings)
        period = gateway.target_period(
            PaymentChannel.MPESA_STK, requested, resolved, BillingPeriod.from_date(now)
        )

        paid_so_far = self._standing_paid(resolved.occupant.id, resolved.unit.id, period)
        result = self.calculator.compute(resolved.unit, resolved.occupant, period, paid_so_far)
        payment = PaymentRecord(
            tenant_id=resolved.occupant.id,
            unit_id=resolved.unit.id,
            period_month=period.month_str,
            period_year=period.year,
            due_date=period.due_date(),
            amount=requested,
            expected_amount=result.expected_amount,
            carried_forward=result.carried_forward,
            paid_amount=result.paid_amount,
            deficit=result.deficit,
            status=result.status,
            external_txn_id=f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}",
            channel=PaymentChannel.MPESA_STK,
            received_from=phone,
            unit_number=resolved.unit.unit_number,
            is_auto_generated=False,
        )
        session = StkPushSession(
            payment=payment,
            state=StkState.INITIATED,
            phone_number=phone,
            amount=requested,
            account_reference=resolved.unit.unit_number,
        )
        self.db.add_all([payment, session])
        self.db.commit()
        self.db.refresh(session)
        return session

    def _record_push_failure(self, session: StkPushSession, error: AppError) -> None:
        payment = session.payment
        session.state = StkState.REJECTED
        session.result_desc = error.message
        payment.external_txn_id = None
        payment.notes = f"STK push failed: {error.message}"
        self.db.commit()
        logger.error("STK push for unit %s failed: %s", session.account_reference, error.message)

    def _record_push_response(
        self, session: StkPushSession, response: StkPushResponse
    ) -> StkInitiation:
        payment = session.payment
        session.checkout_request_id = response.checkout_request_id
        session.merchant_request_id = response.merchant_request_id
        session.state = StkState.AWAITING_CALLBACK
        payment.external_txn_id = response.checkout_request_id
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise StorageConstraintViolation(
                f"Checkout id {response.checkout_request_id} already recorded"
            ) from e

        self.db.refresh(session)
        self.db.refresh(payment)
        logger.info(
            "STK push awaiting callback: checkout=%s unit=%s amount=%s",
            session.checkout_request_id,
            session.account_reference,
            session.amount,
        )
        return StkInitiation(session, payment, response.customer_message)

    def resolve_callback(
        self, callback: StkCallback, now: Optional[datetime] = None
    ) -> CallbackResult:
        """Apply a provider callback to its session.

        Raises:
            PaymentNotFound: No session carries the correlation id
            StorageConstraintViolation: Settlement write conflicted and no replay explains it
        """
        now = now or datetime.now(timezone.utc)
        session = self.get_session(callback.correlation_id)
        if session is None:
            raise PaymentNotFound(f"No STK push session for {callback.correlation_id}")

        if session.state.is_terminal:
            logger.info(
                "Ignoring callback replay for %s (already %s)",
                callback.correlation_id,
                session.state.value,
            )
            return CallbackResult(CallbackOutcome.DUPLICATE, session, session.payment)

        try:
            if callback.succeeded:
                outcome = self._settle(session, callback, now)
            else:
                outcome = self._reject(session, callback)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            current = self.get_session(callback.correlation_id)
            if current is not None and current.state.is_terminal:
                return CallbackResult(CallbackOutcome.DUPLICATE, current, current.payment)
            raise StorageConstraintViolation(
                f"Could not settle STK push {callback.correlation_id}"
            ) from e

        self.db.refresh(session)
        self.db.refresh(session.payment)
        return CallbackResult(outcome, session, session.payment)

    async def query_status(self, correlation_id: str, cross_check: bool = True) -> StkStatus:
        """Return the local session and, best-effort, the provider's live status.

        Raises:
            PaymentNotFound: No session carries the correlation id
        """
        status = await run_in_threadpool(self._load_status, correlation_id)
        if not cross_check or status.session.state.is_terminal:
            return status
        try:
            status.provider = await self.client.stk_query(correlation_id)
        except (ProviderAuthError, ProviderUnavailable) as e:
            logger.warning("Live status query for %s failed: %s", correlation_id, e.message)
            status.provider_error = e.message
        return status

    def _load_status(self, correlation_id: str) -> StkStatus:
        session = self.get_session(correlation_id)
        if session is None:
            raise PaymentNotFound(f"No STK push session for {correlation_id}")
        return StkStatus(session=session, payment=session.payment)

    def _standing_paid(
        self,
        tenant_id: int,
        unit_id: int,
        period: BillingPeriod,
        exclude_id: Optional[int] = None,
    ) -> Decimal:
        """Period-to-date paid amount, optionally ignoring one record."""
        latest = self.calculator.standing_record(tenant_id, unit_id, period, exclude_id)
        return Decimal(latest.paid_amount) if latest is not None else ZERO

    def _settle(
        self, session: StkPushSession, callback: StkCallback, now: datetime
    ) -> CallbackOutcome:
        payment = session.payment
        confirmed = callback.amount if callback.amount is not None else Decimal(session.amount)
        txn_id = callback.provider_receipt_id or session.checkout_request_id

        recorded = self.payments.get_by_external_txn_id(txn_id)
        if recorded is not None and recorded.id != payment.id:
            session.state = StkState.SETTLED
            session.result_code = callback.result_code
            session.result_desc = callback.result_desc
            payment.notes = f"Funds already recorded under receipt {recorded.receipt_number}"
            logger.info(
                "STK %s funds already recorded as %s", session.checkout_request_id, txn_id
            )
            return CallbackOutcome.DUPLICATE

        period = payment.period
        settled = self.payments.settled_for_period(payment.tenant_id, payment.unit_id, period)
        if settled is not None and settled.id != payment.id:
            period = self.payments.first_open_period(
                payment.tenant_id, payment.unit_id, period.next()
            )
            logger.info(
                "Period %s already settled, booking STK %s as advance for %s",
                payment.period,
                session.checkout_request_id,
                period,
            )
            payment.period_month = period.month_str
            payment.period_year = period.year
            payment.due_date = period.due_date()

        self._retire_generated(payment, period)
        base = self._standing_paid(payment.tenant_id, payment.unit_id, period, payment.id)
        result = self.calculator.compute(payment.unit, payment.tenant, period, base + confirmed)

        paid_at = callback.transaction_time or now
        payment.amount = confirmed
        payment.expected_amount = result.expected_amount
        payment.carried_forward = result.carried_forward
        payment.paid_amount = result.paid_amount
        payment.deficit = result.deficit
        payment.status = result.status
        payment.external_txn_id = txn_id
        payment.reference_number = session.checkout_request_id
        payment.received_from = callback.payer_phone or payment.tenant.full_name
        payment.paid_at = paid_at
        payment.receipt_number = next_receipt_number(self.db, now.year)

        session.state = StkState.SETTLED
        session.result_code = callback.result_code
        session.result_desc = callback.result_desc
        self.db.flush()
        logger.info(
            "STK %s settled: unit=%s amount=%s status=%s receipt=%s",
            session.checkout_request_id,
            session.account_reference,
            confirmed,
            payment.status.value,
            payment.receipt_number,
        )
        return CallbackOutcome.SETTLED

    def _retire_generated(self, payment: PaymentRecord, period: BillingPeriod) -> None:
        """Drop the period's unfilled generated record; ``payment`` books the period now.

        The STK record keeps its id; the expected-only placeholder is deleted
        rather than filled.
        """
        generated = self.payments.generated_for_period(payment.tenant_id, payment.unit_id, period)
        if generated is None or generated.id == payment.id:
            return
        late_fee = generated.late_fee
        if not self.payments.discard_generated(generated.id):
            logger.info("Generated record %s for %s was filled meanwhile", generated.id, period)
            return
        if late_fee and not payment.late_fee:
            payment.late_fee = late_fee
        logger.info(
            "STK %s replaces generated record %s for %s",
            payment.reference_number or payment.external_txn_id,
            generated.id,
            period,
        )

    def _reject(self, session: StkPushSession, callback: StkCallback) -> CallbackOutcome:
        payment = session.payment
        base = self._standing_paid(payment.tenant_id, payment.unit_id, payment.period, payment.id)
        result = self.calculator.compute(payment.unit, payment.tenant, payment.period, base)

        payment.paid_amount = result.paid_amount
        payment.deficit = result.deficit
        if result.status == PaymentStatus.PAID:
            payment.status = PaymentStatus.PENDING
        else:
            payment.status = result.status
        reason = callback.result_desc or f"result code {callback.result_code}"
        payment.notes = f"STK push failed: {reason}"

        session.state = StkState.REJECTED
        session.result_code = callback.result_code
        session.result_desc = callback.result_desc
        logger.info(
            "STK %s rejected (%s): %s",
            session.checkout_request_id,
            callback.result_code,
            reason,
        )
        return CallbackOutcome.REJECTED


def require_text(value: Any, field: str) -> str:
    text = clean_text(value)
    if text is None:
        raise MalformedNotification(f"{field} is required")
    return text


__all__ = [
    "StkPushService",
    "StkCallback",
    "StkInitiation",
    "StkStatus",
    "CallbackOutcome",
    "CallbackResult",
    "parse_stk_callback",
    "PLACEHOLDER_PREFIX",
]
