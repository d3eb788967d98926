"""Monthly rent generator: one expected-payment record per active tenant per period."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentRecord, PaymentStatus
from rentledger.models.tenant import Tenant, TenantStatus
from rentledger.services.ledger_service import ZERO, LedgerCalculator
from rentledger.services.overdue_service import compute_late_fee, is_past_grace
from rentledger.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    """Counts from one generator run. Skips carry a human-readable reason."""

    period: BillingPeriod
    generated: int = 0
    skipped: list[str] = field(default_factory=list)
    payment_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": f"Generated {self.generated} payments",
            "period": self.period.label,
            "generated": self.generated,
            "errors": len(self.skipped),
            "details": self.skipped,
            "paymentIds": self.payment_ids,
        }


class MonthlyRentGenerator:
    """Materialize expected rent records for a billing period.

    Individual skips (record already present, lost race with a concurrent run)
    are reported, never raised. Database failures other than uniqueness
    conflicts propagate to the caller.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.calculator = LedgerCalculator(db)
        self.payments = PaymentService(db)

    def active_tenants(self) -> list[Tenant]:
        return (
            self.db.query(Tenant)
            .filter(Tenant.status == TenantStatus.ACTIVE, Tenant.unit_id.is_not(None))
            .order_by(Tenant.id)
            .all()
        )

    def generate(
        self,
        period: BillingPeriod,
        grace_period_days: int,
        late_fee_percentage: Decimal,
        today: Optional[date] = None,
    ) -> GenerationReport:
        """Create pending (or already overdue) records for every active tenant.

        Args:
            period: Target billing period
            grace_period_days: Days after the due date before a record is late
            late_fee_percentage: Late fee percentage for records created late
            today: Reference date (defaults to the current date)
        """
        today = today or date.today()
        report = GenerationReport(period=period)
        overdue_at_birth = is_past_grace(period.due_date(), grace_period_days, today)

        for tenant in self.active_tenants():
            unit = tenant.unit
            name = tenant.full_name
            if self.payments.exists_for_period(tenant.id, unit.id, period):
                report.skipped.append(
                    f"Payment already exists for {name} - {period.month_str}/{period.year}"
                )
                continue

            result = self.calculator.compute(unit, tenant, period, ZERO)
            payment = PaymentRecord(
                tenant_id=tenant.id,
                unit_id=unit.id,
                period_month=period.month_str,
                period_year=period.year,
                due_date=period.due_date(),
                amount=ZERO,
                expected_amount=result.expected_amount,
                carried_forward=result.carried_forward,
                paid_amount=ZERO,
                deficit=result.deficit,
                status=result.status,
                unit_number=unit.unit_number,
                is_auto_generated=True,
                late_fee=ZERO,
            )
            if overdue_at_birth:
                payment.status = PaymentStatus.OVERDUE
                payment.late_fee = compute_late_fee(result.expected_amount, late_fee_percentage)

            self.db.add(payment)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                report.skipped.append(
                    f"Payment created concurrently for {name} - {period.month_str}/{period.year}"
                )
                continue

            report.generated += 1
            report.payment_ids.append(payment.id)

        logger.info(
            "Generated %s rent records for %s (%s skipped)",
            report.generated,
            period,
            len(report.skipped),
        )
        return report


__all__ = ["MonthlyRentGenerator", "GenerationReport"]
