"""Reconciliation error taxonomy and response helpers."""

from typing import Any, Dict, Optional

from fastapi import status


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, code: str, http_status: int = 400):
        """Initialize error."""
        self.message = message
        self.code = code
        self.http_status = http_status
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        """Extra fields rendered next to code and message."""
        return {}


class MalformedNotification(AppError):
    """Payment notification is missing the account reference or amount."""

    def __init__(self, message: str = "Malformed payment notification"):
        super().__init__(message, "malformed_notification", status.HTTP_400_BAD_REQUEST)


class InvalidAmount(AppError):
    """Amount is negative or not a number."""

    def __init__(self, message: str = "Invalid amount"):
        super().__init__(message, "invalid_amount", status.HTTP_400_BAD_REQUEST)


class UnitNotFound(AppError):
    """No billing unit matches the account reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"No unit found for account reference {reference!r}",
            "unit_not_found",
            status.HTTP_404_NOT_FOUND,
        )


class AmbiguousUnitReference(UnitNotFound):
    """Account reference matches units in more than one property."""

    def __init__(self, reference: str, matches: int):
        super().__init__(reference)
        self.matches = matches
        self.code = "ambiguous_unit_reference"
        self.message = f"Account reference {reference!r} matches {matches} units"
        self.args = (self.message,)


class NoOccupant(AppError):
    """Unit has no assigned occupant; payments cannot be posted to it."""

    def __init__(self, unit_number: str):
        self.unit_number = unit_number
        super().__init__(
            f"Unit {unit_number} has no assigned tenant",
            "no_occupant",
            status.HTTP_404_NOT_FOUND,
        )


class AlreadySettled(AppError):
    """A paid record already exists for the period."""

    def __init__(
        self,
        receipt_number: Optional[str],
        payment_id: Optional[int],
        message: str = "Rent for this period is already paid",
    ):
        self.receipt_number = receipt_number
        self.payment_id = payment_id
        super().__init__(message, "already_settled", status.HTTP_409_CONFLICT)

    def details(self) -> Dict[str, Any]:
        return {"receiptNumber": self.receipt_number, "paymentId": self.payment_id}


class PaymentNotFound(AppError):
    """No payment or push session matches the identifier."""

    def __init__(self, message: str = "Payment not found"):
        super().__init__(message, "payment_not_found", status.HTTP_404_NOT_FOUND)


class ProviderAuthError(AppError):
    """Provider credentials are missing or rejected."""

    def __init__(self, message: str = "Payment provider credentials are invalid"):
        super().__init__(message, "provider_auth_error", status.HTTP_502_BAD_GATEWAY)


class ProviderUnavailable(AppError):
    """Provider could not be reached or returned an error; caller may retry."""

    def __init__(self, message: str = "Payment provider unavailable"):
        super().__init__(message, "provider_unavailable", status.HTTP_503_SERVICE_UNAVAILABLE)


class StorageConstraintViolation(AppError):
    """Write lost a uniqueness race that could not be mapped to a duplicate."""

    def __init__(self, message: str = "Storage constraint violated"):
        super().__init__(message, "storage_constraint_violation", status.HTTP_409_CONFLICT)


def error_response(error: AppError) -> Dict[str, Any]:
    """Create a standardized error response."""
    body: Dict[str, Any] = {
        "code": error.code,
        "message": error.message,
    }
    body.update(error.details())
    return {"error": body}


__all__ = [
    "AppError",
    "MalformedNotification",
    "InvalidAmount",
    "UnitNotFound",
    "AmbiguousUnitReference",
    "NoOccupant",
    "AlreadySettled",
    "PaymentNotFound",
    "ProviderAuthError",
    "ProviderUnavailable",
    "StorageConstraintViolation",
    "error_response",
]
