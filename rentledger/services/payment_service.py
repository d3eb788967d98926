"""Payment record queries shared by the API and the posting services."""

import logging
from typing import Any

from sqlalchemy import case, delete, update
from sqlalchemy.orm import Session

from rentledger.models.billing_period import BillingPeriod
from rentledger.models.payment import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)

# Expected-only record from the rent generator that no payment has touched yet
UNFILLED_GENERATED = (
    PaymentRecord.is_auto_generated.is_(True),
    PaymentRecord.external_txn_id.is_(None),
    PaymentRecord.paid_amount == 0,
)


def standing_order() -> tuple:
    """Order records of one period so the standing comes first.

    The paid record of a period is its standing; without one, the newest
    record (highest id) is.
    """
    return (
        case((PaymentRecord.status == PaymentStatus.PAID, 0), else_=1),
        PaymentRecord.id.desc(),
    )


class PaymentService:
    """Access to payment records.

    Lists are returned newest first.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def get_by_id(self, payment_id: int) -> PaymentRecord | None:
        return self.db.query(PaymentRecord).filter(PaymentRecord.id == payment_id).first()

    def get_by_receipt(self, receipt_number: str) -> PaymentRecord | None:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.receipt_number == receipt_number.strip().upper())
            .first()
        )

    def get_by_external_txn_id(self, external_txn_id: str) -> PaymentRecord | None:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.external_txn_id == external_txn_id)
            .first()
        )

    def list_for_tenant(self, tenant_id: int) -> list[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.tenant_id == tenant_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .all()
        )

    def list_for_unit(self, unit_id: int) -> list[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.unit_id == unit_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .all()
        )

    def settled_for_period(
        self, tenant_id: int, unit_id: int, period: BillingPeriod
    ) -> PaymentRecord | None:
        """The paid record of a period, if the period is settled."""
        return (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.tenant_id == tenant_id,
                PaymentRecord.unit_id == unit_id,
                PaymentRecord.period_month == period.month_str,
                PaymentRecord.period_year == period.year,
                PaymentRecord.status == PaymentStatus.PAID,
            )
            .first()
        )

    def generated_for_period(
        self, tenant_id: int, unit_id: int, period: BillingPeriod
    ) -> PaymentRecord | None:
        """Unfilled expected-only record created by the rent generator."""
        return (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.tenant_id == tenant_id,
                PaymentRecord.unit_id == unit_id,
                PaymentRecord.period_month == period.month_str,
                PaymentRecord.period_year == period.year,
                *UNFILLED_GENERATED,
            )
            .first()
        )

    def claim_generated(self, payment_id: int, **values: Any) -> bool:
        """Write ``values`` to a generated record only while it is still unfilled.

        The check and the write are one UPDATE, so of two writers that both
        read the record as unfilled exactly one gets it.

        Returns:
            False when another writer filled the record first
        """
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == payment_id, *UNFILLED_GENERATED)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        claimed = self.db.execute(stmt).rowcount == 1
        if not claimed:
            logger.info("Generated record %s was filled by another posting", payment_id)
        return claimed

    def discard_generated(self, payment_id: int) -> bool:
        """Delete a generated record that another record now books the period with.

        Only an unfilled record is deleted; returns False when it was filled first.
        """
        stmt = (
            delete(PaymentRecord)
            .where(PaymentRecord.id == payment_id, *UNFILLED_GENERATED)
            .execution_options(synchronize_session="fetch")
        )
        return self.db.execute(stmt).rowcount == 1

    def exists_for_period(self, tenant_id: int, unit_id: int, period: BillingPeriod) -> bool:
        return (
            self.db.query(PaymentRecord.id)
            .filter(
                PaymentRecord.tenant_id == tenant_id,
                PaymentRecord.unit_id == unit_id,
                PaymentRecord.period_month == period.month_str,
                PaymentRecord.period_year == period.year,
            )
            .first()
            is not None
        )

    def first_open_period(
        self, tenant_id: int, unit_id: int, start: BillingPeriod, limit: int = 24
    ) -> BillingPeriod:
        """First period from ``start`` onwards without a paid record."""
        period = start
        for _ in range(limit):
            if self.settled_for_period(tenant_id, unit_id, period) is None:
                return period
            period = period.next()
        return period


__all__ = ["PaymentService", "standing_order"]
