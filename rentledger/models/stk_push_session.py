"""STK push session ORM model tracking the push payment state machine."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentledger.models import Base, BaseModel, value_enum


class StkState(str, Enum):
    """STK push lifecycle: initiated -> awaiting_callback -> settled | rejected."""

    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    SETTLED = "settled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (StkState.SETTLED, StkState.REJECTED)


class StkPushSession(Base, BaseModel):
    """Model linking a provider checkout session to its local payment record."""

    __tablename__ = "stk_push_sessions"

    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
    )
    state: Mapped[StkState] = mapped_column(
        value_enum(StkState),
        default=StkState.INITIATED,
        nullable=False,
        index=True,
    )
    checkout_request_id: Mapped[str | None] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Provider checkout-session id (callback correlation key)",
    )
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(50), nullable=False)
    result_code: Mapped[int | None] = mapped_column(nullable=True)
    result_desc: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # Relationships
    payment: Mapped[Optional["PaymentRecord"]] = relationship("PaymentRecord")  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<StkPushSession(id={self.id}, checkout={self.checkout_request_id}, "
            f"state={self.state}, payment_id={self.payment_id})>"
        )


__all__ = ["StkPushSession", "StkState"]
