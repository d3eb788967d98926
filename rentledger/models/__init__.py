"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


def value_enum(enum_cls: type[Enum]) -> SQLEnum:
    """Column type storing an enum by its lowercase value (not its member name).

    Partial indexes filter on these values (e.g. ``status = 'paid'``), so the
    stored text must match the enum value exactly.
    """
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=30,
        values_callable=lambda members: [m.value for m in members],
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from rentledger.models.billing_period import BillingPeriod  # noqa: E402
from rentledger.models.property import Property  # noqa: E402
from rentledger.models.unit import BillingUnit, UnitStatus  # noqa: E402
from rentledger.models.tenant import Tenant, TenantStatus  # noqa: E402
from rentledger.models.payment import (  # noqa: E402
    PaymentChannel,
    PaymentRecord,
    PaymentStatus,
)
from rentledger.models.receipt_sequence import ReceiptSequence  # noqa: E402
from rentledger.models.stk_push_session import StkPushSession, StkState  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "BillingPeriod",
    "Property",
    "BillingUnit",
    "UnitStatus",
    "Tenant",
    "TenantStatus",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentChannel",
    "ReceiptSequence",
    "StkPushSession",
    "StkState",
    "value_enum",
]
