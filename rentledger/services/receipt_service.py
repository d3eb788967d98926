"""Receipt number allocation from an atomic per-year counter."""

import logging

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from rentledger.models.receipt_sequence import ReceiptSequence

logger = logging.getLogger(__name__)

RECEIPT_PREFIX = "RCP"


def format_receipt_number(year: int, sequence: int) -> str:
    """Format a receipt identifier, e.g. RCP-2024-000001."""
    return f"{RECEIPT_PREFIX}-{year}-{sequence:06d}"


def _ensure_sequence_row(db: Session, year: int) -> None:
    """Create the counter row for a year if missing, without racing other writers."""
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite_insert(ReceiptSequence).values(year=year, last_value=0)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["year"]))
    elif dialect == "postgresql":
        stmt = pg_insert(ReceiptSequence).values(year=year, last_value=0)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["year"]))
    elif db.get(ReceiptSequence, year) is None:
        db.add(ReceiptSequence(year=year, last_value=0))
        db.flush()


def next_receipt_number(db: Session, year: int) -> str:
    """Allocate the next receipt number for a year.

    The counter is incremented with a single UPDATE ... RETURNING inside the
    caller's transaction, so concurrent postings never share a sequence value
    and a rolled-back posting does not consume one.

    Args:
        db: Session whose transaction will also insert the payment record
        year: Receipt year

    Returns:
        Receipt identifier RCP-<year>-<6-digit sequence>
    """
    _ensure_sequence_row(db, year)
    stmt = (
        update(ReceiptSequence)
        .where(ReceiptSequence.year == year)
        .values(last_value=ReceiptSequence.last_value + 1)
        .returning(ReceiptSequence.last_value)
        .execution_options(synchronize_session=False)
    )
    sequence = db.execute(stmt).scalar_one()
    receipt = format_receipt_number(year, sequence)
    logger.debug("Allocated receipt %s", receipt)
    return receipt


__all__ = ["next_receipt_number", "format_receipt_number", "RECEIPT_PREFIX"]
