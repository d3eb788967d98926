"""Per-year receipt counter used to mint RCP-<year>-<sequence> identifiers."""

from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from rentledger.models import Base


class ReceiptSequence(Base):
    """One row per calendar year holding the last issued receipt sequence."""

    __tablename__ = "receipt_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<ReceiptSequence(year={self.year}, last_value={self.last_value})>"


__all__ = ["ReceiptSequence"]
