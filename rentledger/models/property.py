"""Property ORM model grouping billing units under one building or estate."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentledger.models import Base, BaseModel


class Property(Base, BaseModel):
    """Model representing a rental property (apartment block, estate)."""

    __tablename__ = "properties"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Property display name",
    )
    address: Mapped[str | None] = mapped_column(
        String(300),
        nullable=True,
    )

    # Relationships
    units: Mapped[list["BillingUnit"]] = relationship(  # noqa: F821
        "BillingUnit",
        back_populates="property",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, name={self.name})>"


__all__ = ["Property"]
