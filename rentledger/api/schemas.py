"""Pydantic schemas for the payment API."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rentledger.models.payment import PaymentChannel, PaymentStatus
from rentledger.models.unit import UnitStatus


class CamelModel(BaseModel):
    """Schema serialized with camelCase keys, accepting either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentResponse(CamelModel):
    """Canonical payment record."""

    id: int
    tenant_id: int
    unit_id: int
    period_month: str = Field(..., alias="month")
    period_year: int = Field(..., alias="year")
    due_date: date
    amount: float
    expected_amount: float
    paid_amount: float
    deficit: float
    carried_forward: float
    late_fee: float
    status: PaymentStatus
    external_txn_id: str | None = Field(None, alias="transactionId")
    reference_number: str | None = None
    channel: PaymentChannel | None = Field(None, alias="paymentSource")
    receipt_number: str | None = None
    received_from: str | None = None
    unit_number: str | None = Field(None, alias="houseNumber")
    paid_at: datetime | None = None
    notes: str | None = None
    is_auto_generated: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
    )


class PostingResponse(CamelModel):
    """Answer of a synchronous posting route."""

    message: str
    duplicate: bool = False
    receipt_number: str | None = None
    payment: PaymentResponse


class StkPushRequest(CamelModel):
    """POST /mpesa/stk-push body. Values are validated by the push service."""

    phone_number: str | None = None
    amount: Any = None
    account_reference: str | None = None
    house_number: str | None = None

    @property
    def reference(self) -> str | None:
        return self.account_reference or self.house_number


class StkPushResponseBody(CamelModel):
    success: bool = True
    message: str | None = None
    checkout_request_id: str = Field(..., alias="checkoutRequestID")
    merchant_request_id: str | None = Field(None, alias="merchantRequestID")
    payment_id: int
    state: str


class StkStatusResponse(CamelModel):
    status: str
    state: str
    payment: PaymentResponse
    mpesa_status: dict[str, Any] | None = None
    error: str | None = None


class GenerateRentRequest(CamelModel):
    """POST /payments/generate-monthly-rent body; omitted values use defaults."""

    month: int | None = Field(None, ge=1, le=12)
    year: int | None = Field(None, ge=1000, le=9999)
    late_fee_percentage: float | None = Field(None, ge=0)
    grace_period_days: int | None = Field(None, ge=0)


class CheckOverdueRequest(CamelModel):
    """POST /payments/check-overdue body; omitted values use defaults."""

    late_fee_percentage: float | None = Field(None, ge=0)
    grace_period_days: int | None = Field(None, ge=0)


class UnitSummary(CamelModel):
    id: int
    unit_number: str = Field(..., alias="houseNumber")
    rent_amount: float
    status: UnitStatus
    property_id: int

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
    )


class TenantSummary(CamelModel):
    id: int
    first_name: str
    last_name: str
    email: str
    phone: str
    bank_account_number: str | None = None
    bank_name: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class UnitSearchResponse(CamelModel):
    """GET /payments/search/house/{unitNumber} answer."""

    house: UnitSummary
    tenant: TenantSummary | None = None
    can_receive_payment: bool


class AccountVerificationResponse(CamelModel):
    """GET /equity-bank/verify-account/{accountNumber} answer."""

    found: bool
    account_number: str
    tenant: TenantSummary | None = None
    house: UnitSummary | None = None
