"""Billing period value type (month + year)."""

from datetime import date, datetime
from typing import NamedTuple


class BillingPeriod(NamedTuple):
    """A (month, year) billing cycle.

    Stored on payment records as a 2-digit month string and a 4-digit year.
    """

    month: int
    year: int

    @property
    def month_str(self) -> str:
        return f"{self.month:02d}"

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month_str}"

    def previous(self) -> "BillingPeriod":
        """Preceding period; month 0 rolls back to December of the prior year."""
        month = self.month - 1
        if month == 0:
            return BillingPeriod(12, self.year - 1)
        return BillingPeriod(month, self.year)

    def next(self) -> "BillingPeriod":
        if self.month == 12:
            return BillingPeriod(1, self.year + 1)
        return BillingPeriod(self.month + 1, self.year)

    def due_date(self) -> date:
        """Rent falls due on the first day of the period's month."""
        return date(self.year, self.month, 1)

    @classmethod
    def from_date(cls, value: date | datetime) -> "BillingPeriod":
        return cls(value.month, value.year)

    @classmethod
    def parse(cls, month: int | str, year: int | str) -> "BillingPeriod":
        """Build a period from loosely typed month/year values.

        Raises:
            ValueError: If month is outside 1..12 or year is not a 4-digit year
        """
        month_int = int(month)
        year_int = int(year)
        if not 1 <= month_int <= 12:
            raise ValueError(f"Invalid month: {month}")
        if not 1000 <= year_int <= 9999:
            raise ValueError(f"Invalid year: {year}")
        return cls(month_int, year_int)

    def __str__(self) -> str:
        return self.label


__all__ = ["BillingPeriod"]
