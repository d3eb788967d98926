"""Ledger calculator: expected amount, status and deficit for a billing period.

Expected = contracted rent + deficit carried forward from the preceding period.
Status is derived from the proposed period-to-date paid amount:
- paid     when paid >= expected
- partial  when 0 < paid < expected
- pending  when paid == 0
Overdue is never assigned here; only the overdue sweeper sets it.

The computation reads but never writes, so retries see identical results.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple

from sqlalchemy.orm import Session

from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentRecord, PaymentStatus
from rentledger.models.tenant import Tenant
from rentledger.models.unit import BillingUnit
from rentledger.services.errors import InvalidAmount
from rentledger.services.payment_service import standing_order

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


class LedgerResult(NamedTuple):
    """Outcome of a ledger computation for one period."""

    expected_amount: Decimal
    carried_forward: Decimal
    paid_amount: Decimal
    deficit: Decimal
    status: PaymentStatus


def parse_amount(value: Any) -> Decimal:
    """Convert a loosely typed amount to a 2-decimal Decimal.

    Raises:
        InvalidAmount: Value is missing, boolean, non-numeric, not finite or negative
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if amount < 0:
        raise InvalidAmount(f"Amount cannot be negative: {value!r}")
    return amount.quantize(CENT)


def calculate_ledger(
    rent_amount: Decimal,
    carried_forward: Decimal,
    proposed_paid_amount: Any,
) -> LedgerResult:
    """Pure ledger computation.

    Args:
        rent_amount: Contracted rent of the unit
        carried_forward: Deficit pulled from the preceding period (>= 0)
        proposed_paid_amount: Period-to-date paid amount to classify

    Returns:
        LedgerResult with expected amount, deficit and status

    Raises:
        InvalidAmount: If the proposed amount is negative or non-numeric
    """
    paid = parse_amount(proposed_paid_amount)
    carried = max(ZERO, Decimal(carried_forward)).quantize(CENT)
    expected = (Decimal(rent_amount) + carried).quantize(CENT)
    deficit = max(ZERO, expected - paid)

    if paid >= expected:
        status = PaymentStatus.PAID
    elif paid > ZERO:
        status = PaymentStatus.PARTIAL
    else:
        status = PaymentStatus.PENDING

    return LedgerResult(
        expected_amount=expected,
        carried_forward=carried,
        paid_amount=paid,
        deficit=deficit,
        status=status,
    )


class LedgerCalculator:
    """Compute ledger figures against stored payment history."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def standing_record(
        self,
        tenant_id: int,
        unit_id: int,
        period: BillingPeriod,
        exclude_id: int | None = None,
    ) -> PaymentRecord | None:
        """The period's standing record: its paid record, else its newest one."""
        query = self.db.query(PaymentRecord).filter(
            PaymentRecord.tenant_id == tenant_id,
            PaymentRecord.unit_id == unit_id,
            PaymentRecord.period_month == period.month_str,
            PaymentRecord.period_year == period.year,
        )
        if exclude_id is not None:
            query = query.filter(PaymentRecord.id != exclude_id)
        return query.order_by(*standing_order()).first()

    def carried_forward(self, tenant_id: int, unit_id: int, period: BillingPeriod) -> Decimal:
        """Deficit of the preceding period's standing record, or 0."""
        previous = self.standing_record(tenant_id, unit_id, period.previous())
        if previous is not None and previous.deficit and previous.deficit > ZERO:
            return Decimal(previous.deficit)
        return ZERO

    def compute(
        self,
        unit: BillingUnit,
        occupant: Tenant,
        period: BillingPeriod,
        proposed_paid_amount: Any,
    ) -> LedgerResult:
        """Compute the ledger result for a proposed period-to-date paid amount."""
        carried = self.carried_forward(occupant.id, unit.id, period)
        result = calculate_ledger(unit.rent_amount, carried, proposed_paid_amount)
        logger.debug(
            "Ledger %s unit=%s tenant=%s expected=%s paid=%s status=%s",
            period,
            unit.unit_number,
            occupant.id,
            result.expected_amount,
            result.paid_amount,
            result.status.value,
        )
        return result


__all__ = ["LedgerCalculator", "LedgerResult", "calculate_ledger", "parse_amount", "ZERO"]
