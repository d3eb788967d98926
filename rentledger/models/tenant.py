"""Tenant (occupant) ORM model."""

from datetime import date
from enum import Enum
from typing import Optional

from sqlalchemy import Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentledger.models import Base, BaseModel, value_enum


class TenantStatus(str, Enum):
    """Tenant lifecycle status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PAST = "past"


class Tenant(Base, BaseModel):
    """Model representing a unit occupant.

    A unit has at most one assigned occupant; the unique ``unit_id`` column
    enforces that at the storage layer.
    """

    __tablename__ = "tenants"

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    phone: Mapped[str] = mapped_column(String(30), nullable=False)

    # External payment account (bank account the tenant pays from)
    bank_account_number: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Bank account number quoted on bank transfers",
    )
    bank_name: Mapped[str | None] = mapped_column(
        String(100),
        default="Equity",
        nullable=True,
    )

    unit_id: Mapped[int | None] = mapped_column(
        ForeignKey("units.id"),
        unique=True,
        nullable=True,
        comment="Currently assigned unit (exclusive)",
    )
    lease_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    lease_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[TenantStatus] = mapped_column(
        value_enum(TenantStatus),
        default=TenantStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # Relationships
    unit: Mapped[Optional["BillingUnit"]] = relationship(  # noqa: F821
        "BillingUnit",
        back_populates="occupant",
    )
    payments: Mapped[list["PaymentRecord"]] = relationship(  # noqa: F821
        "PaymentRecord",
        back_populates="tenant",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.full_name}, unit_id={self.unit_id})>"


__all__ = ["Tenant", "TenantStatus"]
