"""Payment record ORM model: the rent ledger entry."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentledger.models import Base, BaseModel, value_enum
from rentledger.models.billing_period import BillingPeriod


class PaymentStatus(str, Enum):
    """Ledger status of a payment record."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentChannel(str, Enum):
    """Ingestion channel a payment arrived through."""

    MPESA_C2B = "mpesa_c2b"
    MPESA_STK = "mpesa_stk"
    PAYBILL = "paybill"
    WEBHOOK = "webhook"
    BANK_WEBHOOK = "bank_webhook"
    BANK_MANUAL = "bank_manual"


class PaymentRecord(Base, BaseModel):
    """Model representing one ledger entry for a (tenant, unit, period).

    ``amount`` holds the funds carried by the notification that created or last
    filled the record; ``paid_amount`` is the period-to-date total the status and
    deficit were computed from. Records are mutated in place by later state
    updates and never deleted by the reconciliation code.

    Storage-level guarantees:
        - at most one record with status ``paid`` per (tenant, unit, period)
        - ``external_txn_id`` unique when present
        - ``receipt_number`` unique when present
        - at most one auto-generated record per (tenant, unit, period)
    """

    __tablename__ = "payments"

    # Foreign keys
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id"),
        nullable=False,
        index=True,
        comment="Occupant the payment is booked against",
    )
    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        index=True,
        comment="Billing unit the payment is booked against",
    )

    # Billing period
    period_month: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="2-digit month (01-12)",
    )
    period_year: Mapped[int] = mapped_column(
        nullable=False,
        comment="4-digit year",
    )
    due_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
    )

    # Amounts
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False,
        comment="Funds carried by this transaction",
    )
    expected_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Rent plus carried-forward deficit",
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False,
        comment="Period-to-date paid total",
    )
    deficit: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False,
    )
    carried_forward: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False,
        comment="Deficit pulled from the preceding period",
    )
    late_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False,
    )

    status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Provenance
    external_txn_id: Mapped[str | None] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Provider transaction id (M-Pesa receipt, bank reference)",
    )
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    channel: Mapped[PaymentChannel | None] = mapped_column(
        value_enum(PaymentChannel),
        nullable=True,
    )
    receipt_number: Mapped[str | None] = mapped_column(
        String(30),
        unique=True,
        nullable=True,
        comment="Human-readable receipt RCP-<year>-<sequence>",
    )
    received_from: Mapped[str | None] = mapped_column(String(200), nullable=True)
    unit_number: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Account reference as quoted by the payer",
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_auto_generated: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Created by the monthly rent generator",
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship(  # noqa: F821
        "Tenant",
        back_populates="payments",
    )
    unit: Mapped["BillingUnit"] = relationship(  # noqa: F821
        "BillingUnit",
        back_populates="payments",
    )

    __table_args__ = (
        Index(
            "idx_payment_period",
            "tenant_id",
            "unit_id",
            "period_year",
            "period_month",
        ),
        Index("idx_payment_status_due", "status", "due_date"),
        Index(
            "uq_payment_paid_per_period",
            "tenant_id",
            "unit_id",
            "period_year",
            "period_month",
            unique=True,
            sqlite_where=text("status = 'paid'"),
            postgresql_where=text("status = 'paid'"),
        ),
        Index(
            "uq_payment_generated_per_period",
            "tenant_id",
            "unit_id",
            "period_year",
            "period_month",
            unique=True,
            sqlite_where=text("is_auto_generated = 1"),
            postgresql_where=text("is_auto_generated"),
        ),
    )

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(int(self.period_month), self.period_year)

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(id={self.id}, tenant_id={self.tenant_id}, unit_id={self.unit_id}, "
            f"period={self.period_year}-{self.period_month}, status={self.status}, "
            f"paid_amount={self.paid_amount}, receipt={self.receipt_number})>"
        )


__all__ = ["PaymentRecord", "PaymentStatus", "PaymentChannel"]
