"""Billing unit ORM model (a rentable house/unit with contracted rent)."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentledger.models import Base, BaseModel, value_enum


class UnitStatus(str, Enum):
    """Lifecycle status of a billing unit."""

    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class BillingUnit(Base, BaseModel):
    """Model representing a rentable unit.

    The unit number is the account reference payers quote on mobile-money and
    bank transfers. It is unique within a property, not globally.
    """

    __tablename__ = "units"

    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"),
        nullable=False,
        index=True,
    )
    unit_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="House/unit number used as payment account reference",
    )
    rent_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Contracted monthly rent",
    )
    status: Mapped[UnitStatus] = mapped_column(
        value_enum(UnitStatus),
        default=UnitStatus.AVAILABLE,
        nullable=False,
        index=True,
    )

    # Relationships
    property: Mapped["Property"] = relationship(  # noqa: F821
        "Property",
        back_populates="units",
    )
    occupant: Mapped[Optional["Tenant"]] = relationship(  # noqa: F821
        "Tenant",
        back_populates="unit",
        uselist=False,
    )
    payments: Mapped[list["PaymentRecord"]] = relationship(  # noqa: F821
        "PaymentRecord",
        back_populates="unit",
    )

    __table_args__ = (
        UniqueConstraint("property_id", "unit_number", name="uq_unit_property_number"),
        Index("idx_unit_number", "unit_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingUnit(id={self.id}, unit_number={self.unit_number}, "
            f"rent_amount={self.rent_amount}, status={self.status})>"
        )


__all__ = ["BillingUnit", "UnitStatus"]
