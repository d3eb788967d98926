"""Idempotent ingestion gateway: post payment notifications to the ledger once.

Posting pipeline for one notification:
1. Normalize the channel payload into a PaymentIntent (channel adapters)
2. Replay check: an external transaction id already on file returns the
   existing record instead of posting again
3. Resolve the account reference to a unit and its occupant
4. Period guard: a settled period rejects further funds with AlreadySettled,
   unless the channel may post additional payments (those advance to the
   next open period)
5. Compute the ledger on the period-to-date total, fill the generated
   expected-only record or allocate a new one, assign a receipt, commit

Concurrency is guarded in the database. A write that loses a uniqueness race
is rolled back and re-read as a replay or a settled period. The generated
record is filled with a conditional UPDATE that only matches while it is
still unfilled; a posting that loses that claim is retried once as a new
record.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentChannel, PaymentRecord
from rentledger.services.channels import (
    RESOLVE_BY_BANK_ACCOUNT,
    ChannelAdapter,
    PaymentIntent,
    build_adapters,
    clean_text,
)
from rentledger.services.config import Settings, get_settings
from rentledger.services.errors import (
    AlreadySettled,
    AppError,
    StorageConstraintViolation,
    UnitNotFound,
)
from rentledger.services.ledger_service import ZERO, LedgerCalculator
from rentledger.services.payment_service import PaymentService
from rentledger.services.receipt_service import next_receipt_number
from rentledger.services.resolver_service import BillingUnitResolver, ResolvedUnit

logger = logging.getLogger(__name__)


class PostingOutcome(str, Enum):
    """How a notification ended up in the ledger."""

    POSTED = "posted"
    DUPLICATE = "duplicate"


@dataclass
class PostingResult:
    """Result of posting one notification."""

    outcome: PostingOutcome
    payment: PaymentRecord

    @property
    def receipt_number(self) -> Optional[str]:
        return self.payment.receipt_number

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == PostingOutcome.DUPLICATE


@dataclass(frozen=True)
class ValidationDecision:
    """Pre-validation answer in the provider's ResultCode/ResultDesc shape."""

    accepted: bool
    description: str

    def as_response(self) -> dict[str, Any]:
        return {"ResultCode": 0 if self.accepted else 1, "ResultDesc": self.description}


ACCEPTED = ValidationDecision(True, "Accepted")


class GeneratedRecordTaken(StorageConstraintViolation):
    """Another posting filled the generated record between our read and our write."""


class IngestionGateway:
    """Normalize, de-duplicate and post payment notifications."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        """Initialize with database session and settings."""
        self.db = db
        self.settings = settings or get_settings()
        self.adapters: dict[PaymentChannel, ChannelAdapter] = build_adapters(
            self.settings.paybill_number
        )
        self.additional_payment_channels = {
            PaymentChannel(name) for name in self.settings.additional_payment_channels
        }
        self.resolver = BillingUnitResolver(db)
        self.calculator = LedgerCalculator(db)
        self.payments = PaymentService(db)

    def normalize(self, channel: PaymentChannel | str, payload: Mapping[str, Any]) -> PaymentIntent:
        """Map a raw payload to a PaymentIntent using the channel's adapter."""
        adapter = self.adapters[PaymentChannel(channel)]
        return adapter.normalize(payload)

    def ingest(self, channel: PaymentChannel | str, payload: Mapping[str, Any]) -> PostingResult:
        """Normalize and post a raw channel payload.

        Raises:
            MalformedNotification, InvalidAmount: Payload rejected
            UnitNotFound, NoOccupant: No payable unit for the reference
            AlreadySettled: Period already paid and the channel allows no more
            StorageConstraintViolation: Write conflict not explained by a replay
        """
        intent = self.normalize(channel, payload)
        return self.post(intent)

    def resolve(self, intent: PaymentIntent) -> ResolvedUnit:
        if intent.resolve_by == RESOLVE_BY_BANK_ACCOUNT:
            return self.resolver.resolve_bank_account(intent.account_reference)
        return self.resolver.resolve(intent.account_reference)

    def post(self, intent: PaymentIntent, now: Optional[datetime] = None) -> PostingResult:
        """Post a normalized intent to the ledger exactly once."""
        now = now or datetime.now(timezone.utc)
        try:
            return self._post_once(intent, now)
        except GeneratedRecordTaken:
            self.db.rollback()
            logger.info(
                "Generated record taken while posting %s txn=%s, posting as a new record",
                intent.channel.value,
                intent.external_txn_id or "-",
            )
            return self._post_once(intent, now)

    def _post_once(self, intent: PaymentIntent, now: datetime) -> PostingResult:
        replay = self._find_replay(intent)
        if replay is not None:
            return replay

        resolved = self.resolve(intent)
        occurred_at = intent.occurred_at or now
        period = self.target_period(
            intent.channel, intent.amount, resolved, BillingPeriod.from_date(occurred_at)
        )

        try:
            payment = self._apply_funds(resolved, period, intent, occurred_at, now)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(
                "Constraint conflict posting %s txn=%s unit=%s: %s",
                intent.channel.value,
                intent.external_txn_id,
                intent.account_reference,
                e.orig,
            )
            return self._resolve_conflict(intent, resolved, period)

        self.db.refresh(payment)
        logger.info(
            "Posted %s payment %s: unit=%s period=%s amount=%s status=%s receipt=%s",
            intent.channel.value,
            intent.external_txn_id or "-",
            resolved.unit.unit_number,
            period,
            intent.amount,
            payment.status.value,
            payment.receipt_number,
        )
        return PostingResult(PostingOutcome.POSTED, payment)

    def validate_account(self, reference: Any) -> ValidationDecision:
        """Pre-validate an account reference before funds move.

        A missing reference is accepted (the provider validates it) and any
        internal failure defaults to accept so payment capture is never blocked.
        """
        account = clean_text(reference)
        if account is None:
            return ACCEPTED
        try:
            self.resolver.resolve(account)
        except UnitNotFound:
            logger.info("Validation rejected unknown account %s", account)
            return ValidationDecision(
                False, "Invalid account number. Please check your house number."
            )
        except AppError as e:
            logger.info("Validation rejected account %s: %s", account, e.message)
            return ValidationDecision(False, e.message)
        except Exception:
            logger.exception("Validation lookup failed for %s, accepting", account)
            return ACCEPTED
        return ACCEPTED

    def _find_replay(self, intent: PaymentIntent) -> Optional[PostingResult]:
        if not intent.external_txn_id:
            return None
        existing = self.payments.get_by_external_txn_id(intent.external_txn_id)
        if existing is None:
            return None
        logger.info(
            "Replay of %s txn=%s, returning receipt %s",
            intent.channel.value,
            intent.external_txn_id,
            existing.receipt_number,
        )
        return PostingResult(PostingOutcome.DUPLICATE, existing)

    def target_period(
        self,
        channel: PaymentChannel,
        amount: Decimal,
        resolved: ResolvedUnit,
        period: BillingPeriod,
    ) -> BillingPeriod:
        """Billing period the funds are booked into.

        Raises:
            AlreadySettled: Period is paid and the channel cannot add to it
        """
        tenant_id, unit_id = resolved.occupant.id, resolved.unit.id
        settled = self.payments.settled_for_period(tenant_id, unit_id, period)
        if settled is None:
            return period

        allows_more = channel in self.additional_payment_channels
        if allows_more and Decimal(settled.amount) != amount:
            target = self.payments.first_open_period(tenant_id, unit_id, period.next())
            logger.info(
                "Period %s settled for unit %s, booking additional %s payment as advance for %s",
                period,
                resolved.unit.unit_number,
                channel.value,
                target,
            )
            return target

        logger.info(
            "Period %s already settled for unit %s (receipt %s)",
            period,
            resolved.unit.unit_number,
            settled.receipt_number,
        )
        raise AlreadySettled(settled.receipt_number, settled.id)

    def _apply_funds(
        self,
        resolved: ResolvedUnit,
        period: BillingPeriod,
        intent: PaymentIntent,
        occurred_at: datetime,
        now: datetime,
    ) -> PaymentRecord:
        unit, occupant = resolved.unit, resolved.occupant
        latest = self.calculator.standing_record(occupant.id, unit.id, period)
        paid_so_far = Decimal(latest.paid_amount) if latest is not None else ZERO
        result = self.calculator.compute(unit, occupant, period, paid_so_far + intent.amount)

        if latest is not None and _is_unfilled_generated(latest):
            claimed = self.payments.claim_generated(
                latest.id,
                paid_amount=result.paid_amount,
                external_txn_id=intent.external_txn_id,
            )
            if not claimed:
                raise GeneratedRecordTaken(f"Generated record {latest.id} was already filled")
            payment = latest
        else:
            payment = PaymentRecord(
                tenant_id=occupant.id,
                unit_id=unit.id,
                period_month=period.month_str,
                period_year=period.year,
                due_date=period.due_date(),
                late_fee=latest.late_fee if latest is not None else ZERO,
                is_auto_generated=False,
            )
            self.db.add(payment)

        payment.amount = intent.amount
        payment.expected_amount = result.expected_amount
        payment.carried_forward = result.carried_forward
        payment.paid_amount = result.paid_amount
        payment.deficit = result.deficit
        payment.status = result.status
        payment.external_txn_id = intent.external_txn_id
        payment.reference_number = intent.reference_number
        payment.channel = intent.channel
        payment.received_from = intent.payer_identity or occupant.full_name
        payment.unit_number = unit.unit_number
        payment.paid_at = occurred_at
        if intent.notes:
            payment.notes = intent.notes
        payment.receipt_number = next_receipt_number(self.db, now.year)
        self.db.flush()
        return payment

    def _resolve_conflict(
        self, intent: PaymentIntent, resolved: ResolvedUnit, period: BillingPeriod
    ) -> PostingResult:
        """Map a lost uniqueness race onto replay or settled-period semantics."""
        replay = self._find_replay(intent)
        if replay is not None:
            return replay
        settled = self.payments.settled_for_period(resolved.occupant.id, resolved.unit.id, period)
        if settled is not None:
            raise AlreadySettled(settled.receipt_number, settled.id)
        raise StorageConstraintViolation(
            f"Could not post {intent.channel.value} payment for {intent.account_reference}"
        )


def _is_unfilled_generated(payment: PaymentRecord) -> bool:
    return (
        payment.is_auto_generated
        and payment.external_txn_id is None
        and Decimal(payment.paid_amount) == ZERO
    )


__all__ = [
    "IngestionGateway",
    "PostingOutcome",
    "PostingResult",
    "ValidationDecision",
    "ACCEPTED",
]
