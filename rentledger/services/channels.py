"""Per-channel payload adapters.

Each adapter maps one channel's payload shape into a canonical
``PaymentIntent`` before any shared posting logic runs. Field-name variants
(``accountNumber`` / ``account_number`` / ...) are handled here and nowhere
else.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from rentledger.models.payment import PaymentChannel
from rentledger.services.errors import MalformedNotification
from rentledger.services.ledger_service import parse_amount

logger = logging.getLogger(__name__)

# Daraja reports compact timestamps in East Africa Time
PROVIDER_TZ = timezone(timedelta(hours=3), name="EAT")

RESOLVE_BY_UNIT = "unit"
RESOLVE_BY_BANK_ACCOUNT = "bank_account"


@dataclass(frozen=True)
class PaymentIntent:
    """Canonical payment notification, independent of the channel it came from."""

    channel: PaymentChannel
    account_reference: str
    amount: Decimal
    external_txn_id: Optional[str] = None
    reference_number: Optional[str] = None
    payer_identity: Optional[str] = None
    phone_number: Optional[str] = None
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None
    resolve_by: str = RESOLVE_BY_UNIT


def first_present(payload: Mapping[str, Any], *names: str) -> Any:
    """Value of the first field that is present and not blank."""
    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def require_amount(value: Any) -> Decimal:
    """Amount must be present and positive.

    Raises:
        MalformedNotification: Amount missing or zero
        InvalidAmount: Amount negative or not a number
    """
    if value is None:
        raise MalformedNotification("Amount is required")
    amount = parse_amount(value)
    if amount == 0:
        raise MalformedNotification("Amount must be positive")
    return amount


def require_reference(value: Any, field: str) -> str:
    reference = clean_text(value)
    if reference is None:
        raise MalformedNotification(f"{field} is required")
    return reference


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """Parse a compact (YYYYMMDDHHMMSS) or ISO 8601 timestamp.

    Unparseable values are logged and ignored; the posting then falls back to
    the time of receipt.
    """
    text = clean_text(value)
    if text is None:
        return None
    try:
        if text.isdigit() and len(text) == 14:
            return datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=PROVIDER_TZ)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable transaction time %r", text)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChannelAdapter(ABC):
    """Normalize one channel's payload into a PaymentIntent."""

    channel: PaymentChannel

    @abstractmethod
    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        """Map a raw payload to a PaymentIntent.

        Raises:
            MalformedNotification: Account reference or amount missing
            InvalidAmount: Amount negative or not a number
        """


class MpesaC2BAdapter(ChannelAdapter):
    """M-Pesa paybill confirmation (C2B) payloads."""

    channel = PaymentChannel.MPESA_C2B

    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        reference = require_reference(payload.get("BillRefNumber"), "BillRefNumber")
        amount = require_amount(payload.get("TransAmount"))
        names = [
            clean_text(payload.get(field))
            for field in ("FirstName", "MiddleName", "LastName")
        ]
        payer = " ".join(name for name in names if name) or clean_text(payload.get("MSISDN"))
        return PaymentIntent(
            channel=self.channel,
            account_reference=reference,
            amount=amount,
            external_txn_id=clean_text(payload.get("TransID")),
            reference_number=clean_text(payload.get("TransID")),
            payer_identity=payer,
            phone_number=clean_text(payload.get("MSISDN")),
            occurred_at=parse_provider_timestamp(payload.get("TransTime")),
        )


class PaybillAdapter(ChannelAdapter):
    """Direct-entry paybill API payloads."""

    channel = PaymentChannel.PAYBILL

    def __init__(self, paybill_number: Optional[str] = None):
        self.paybill_number = clean_text(paybill_number)

    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        quoted_paybill = clean_text(payload.get("paybillNumber"))
        if self.paybill_number and quoted_paybill and quoted_paybill != self.paybill_number:
            raise MalformedNotification(f"Invalid paybill number {quoted_paybill}")

        reference = require_reference(payload.get("accountNumber"), "accountNumber")
        amount = require_amount(payload.get("amount"))
        txn_id = clean_text(first_present(payload, "transactionId", "referenceNumber"))
        phone = clean_text(payload.get("phoneNumber"))
        return PaymentIntent(
            channel=self.channel,
            account_reference=reference,
            amount=amount,
            external_txn_id=txn_id,
            reference_number=clean_text(payload.get("referenceNumber")) or txn_id,
            payer_identity=phone,
            phone_number=phone,
        )


class GenericWebhookAdapter(ChannelAdapter):
    """Generic payment webhook payloads."""

    channel = PaymentChannel.WEBHOOK

    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        reference = require_reference(payload.get("houseNumber"), "houseNumber")
        amount = require_amount(payload.get("amount"))
        return PaymentIntent(
            channel=self.channel,
            account_reference=reference,
            amount=amount,
            external_txn_id=clean_text(payload.get("transactionId")),
            reference_number=clean_text(payload.get("referenceNumber")),
            payer_identity=clean_text(payload.get("receivedFrom")),
        )


class BankWebhookAdapter(ChannelAdapter):
    """Bank transfer notifications; several field-name spellings are in use."""

    channel = PaymentChannel.BANK_WEBHOOK

    ACCOUNT_FIELDS = (
        "accountNumber",
        "account_number",
        "destinationAccount",
        "destination_account",
    )
    AMOUNT_FIELDS = ("amount", "transactionAmount")
    TXN_ID_FIELDS = ("transactionId", "transaction_id", "reference", "transactionReference")
    REFERENCE_FIELDS = ("referenceNumber", "reference_number", "reference")
    DATE_FIELDS = ("transactionDate", "transaction_date", "date")
    PAYER_FIELDS = ("payerName", "payer_name", "remitterName", "remitter_name", "fromAccountName")

    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        reference = require_reference(
            first_present(payload, *self.ACCOUNT_FIELDS), "accountNumber"
        )
        amount = require_amount(first_present(payload, *self.AMOUNT_FIELDS))
        return PaymentIntent(
            channel=self.channel,
            account_reference=reference,
            amount=amount,
            external_txn_id=clean_text(first_present(payload, *self.TXN_ID_FIELDS)),
            reference_number=clean_text(first_present(payload, *self.REFERENCE_FIELDS)),
            payer_identity=clean_text(first_present(payload, *self.PAYER_FIELDS)),
            occurred_at=parse_provider_timestamp(first_present(payload, *self.DATE_FIELDS)),
            resolve_by=RESOLVE_BY_BANK_ACCOUNT,
        )


class BankManualAdapter(BankWebhookAdapter):
    """Bank payments keyed in by staff; same fields as the webhook plus notes."""

    channel = PaymentChannel.BANK_MANUAL

    def normalize(self, payload: Mapping[str, Any]) -> PaymentIntent:
        intent = super().normalize(payload)
        return replace(
            intent,
            channel=self.channel,
            notes=clean_text(payload.get("notes")) or "Manual payment entry",
        )


def build_adapters(paybill_number: Optional[str] = None) -> dict[PaymentChannel, ChannelAdapter]:
    """Adapters for every notification-driven channel."""
    adapters: list[ChannelAdapter] = [
        MpesaC2BAdapter(),
        PaybillAdapter(paybill_number),
        GenericWebhookAdapter(),
        BankWebhookAdapter(),
        BankManualAdapter(),
    ]
    return {adapter.channel: adapter for adapter in adapters}


__all__ = [
    "PaymentIntent",
    "ChannelAdapter",
    "MpesaC2BAdapter",
    "PaybillAdapter",
    "GenericWebhookAdapter",
    "BankWebhookAdapter",
    "BankManualAdapter",
    "build_adapters",
    "parse_provider_timestamp",
    "PROVIDER_TZ",
    "RESOLVE_BY_UNIT",
    "RESOLVE_BY_BANK_ACCOUNT",
]
