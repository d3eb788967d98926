"""Billing unit resolver: account reference -> unit + current occupant."""

import logging
from typing import NamedTuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from rentledger.models.tenant import Tenant
from rentledger.models.unit import BillingUnit
from rentledger.services.errors import AmbiguousUnitReference, NoOccupant, UnitNotFound

logger = logging.getLogger(__name__)


class ResolvedUnit(NamedTuple):
    """A billing unit together with its assigned occupant."""

    unit: BillingUnit
    occupant: Tenant


def normalize_reference(reference: str) -> str:
    """Canonical form of a payer-quoted account reference."""
    return str(reference).strip().upper()


class BillingUnitResolver:
    """Resolve payer-supplied account references. Read-only."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def find_unit(self, reference: str) -> BillingUnit:
        """Find the unit whose number matches the reference (case-insensitive).

        Raises:
            UnitNotFound: No unit matches
            AmbiguousUnitReference: Units in several properties share the number
        """
        normalized = normalize_reference(reference)
        if not normalized:
            raise UnitNotFound(reference)

        units = (
            self.db.query(BillingUnit)
            .filter(func.upper(func.trim(BillingUnit.unit_number)) == normalized)
            .all()
        )
        if not units:
            raise UnitNotFound(reference)
        if len(units) > 1:
            raise AmbiguousUnitReference(reference, len(units))
        return units[0]

    def resolve(self, reference: str) -> ResolvedUnit:
        """Resolve a unit number to the unit and its occupant.

        Raises:
            UnitNotFound: No (or more than one) unit matches
            NoOccupant: The unit is vacant
        """
        unit = self.find_unit(reference)
        if unit.occupant is None:
            raise NoOccupant(unit.unit_number)
        return ResolvedUnit(unit=unit, occupant=unit.occupant)

    def resolve_bank_account(self, account_number: str) -> ResolvedUnit:
        """Resolve a bank account number, falling back to the unit number.

        The tenant's registered bank account is tried first; tenants who quote
        their house number as the transfer reference are matched second.

        Raises:
            UnitNotFound: Neither lookup matched
            NoOccupant: The matched tenant has no unit, or the unit is vacant
        """
        normalized = str(account_number).strip()
        tenant = (
            self.db.query(Tenant)
            .filter(Tenant.bank_account_number == normalized)
            .order_by(Tenant.id)
            .first()
        )
        if tenant is not None:
            if tenant.unit is None:
                raise NoOccupant(normalized)
            return ResolvedUnit(unit=tenant.unit, occupant=tenant)

        logger.debug("No tenant with bank account %s, trying unit number", normalized)
        return self.resolve(normalized)


__all__ = ["BillingUnitResolver", "ResolvedUnit", "normalize_reference"]
