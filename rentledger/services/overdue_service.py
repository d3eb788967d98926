"""Overdue sweeper: promote late pending/partial records and charge late fees."""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rentledger.models.payment import PaymentRecord, PaymentStatus
from rentledger.services.ledger_service import CENT, ZERO

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep run."""

    examined: int = 0
    marked_overdue: int = 0
    fees_applied: int = 0
    superseded: int = 0
    payment_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "updated": self.marked_overdue,
            "feesApplied": self.fees_applied,
            "superseded": self.superseded,
            "paymentIds": self.payment_ids,
        }


def compute_late_fee(expected_amount: Decimal, late_fee_percentage: Decimal) -> Decimal:
    """expected * percentage / 100, rounded to cents."""
    return (Decimal(expected_amount) * Decimal(late_fee_percentage) / 100).quantize(CENT)


def is_past_grace(due_date: date, grace_period_days: int, today: date) -> bool:
    """True once today is after the last day of the grace period."""
    return today > due_date + timedelta(days=grace_period_days)


class OverdueSweeper:
    """Batch transition of late records to overdue.

    Only the standing record of each (tenant, unit, period) is considered: the
    period's paid record, else its newest one. A period with a paid record is
    never swept, and older records of an open period are superseded. A record
    that already carries a late fee keeps it, so repeated sweeps never
    double-charge.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def sweep(
        self,
        grace_period_days: int,
        late_fee_percentage: Decimal,
        today: Optional[date] = None,
    ) -> SweepReport:
        """Run one sweep.

        Args:
            grace_period_days: Days after the due date before a record is late
            late_fee_percentage: Late fee as a percentage of the expected amount
            today: Reference date (defaults to the current date)

        Returns:
            SweepReport with counts and updated payment ids
        """
        today = today or date.today()
        late_fee_percentage = Decimal(str(late_fee_percentage))
        report = SweepReport()

        period_key = (
            PaymentRecord.tenant_id,
            PaymentRecord.unit_id,
            PaymentRecord.period_year,
            PaymentRecord.period_month,
        )
        latest_ids = set(
            self.db.scalars(select(func.max(PaymentRecord.id)).group_by(*period_key)).all()
        )
        settled_periods = {
            tuple(row)
            for row in self.db.execute(
                select(*period_key).where(PaymentRecord.status == PaymentStatus.PAID)
            )
        }
        candidates = (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.status.in_([PaymentStatus.PENDING, PaymentStatus.PARTIAL]))
            .order_by(PaymentRecord.id)
            .all()
        )

        for payment in candidates:
            report.examined += 1
            key = (payment.tenant_id, payment.unit_id, payment.period_year, payment.period_month)
            if key in settled_periods or payment.id not in latest_ids:
                report.superseded += 1
                continue
            if not is_past_grace(payment.due_date, grace_period_days, today):
                continue

            if not payment.late_fee or Decimal(payment.late_fee) == ZERO:
                payment.late_fee = compute_late_fee(payment.expected_amount, late_fee_percentage)
                report.fees_applied += 1
            payment.status = PaymentStatus.OVERDUE
            report.marked_overdue += 1
            report.payment_ids.append(payment.id)

        self.db.commit()
        logger.info(
            "Overdue sweep: examined=%s overdue=%s fees=%s superseded=%s",
            report.examined,
            report.marked_overdue,
            report.fees_applied,
            report.superseded,
        )
        return report


__all__ = ["OverdueSweeper", "SweepReport", "compute_late_fee", "is_past_grace"]
