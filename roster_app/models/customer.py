"""
Customer records: the target store that roster imports write into.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Customer(BaseModel):
    """A customer site serviced by an organization."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    address: Mapped[str] = mapped_column(db.String(255), nullable=False)
    postal_code: Mapped[str | None] = mapped_column(db.String(10))
    city: Mapped[str | None] = mapped_column(db.String(120))
    phone: Mapped[str | None] = mapped_column(db.String(40))
    email: Mapped[str | None] = mapped_column(db.String(255))
    contact_person: Mapped[str | None] = mapped_column(db.String(255))
    category: Mapped[str | None] = mapped_column(db.String(120))
    notes: Mapped[str | None] = mapped_column(db.Text)
    external_id: Mapped[str | None] = mapped_column(db.String(120))
    org_number: Mapped[str | None] = mapped_column(db.String(20))
    last_inspection: Mapped[date | None] = mapped_column(db.Date)
    next_inspection: Mapped[date | None] = mapped_column(db.Date)
    inspection_interval_months: Mapped[int | None] = mapped_column(db.Integer)
    extra_json: Mapped[dict | None] = mapped_column(db.JSON)
    import_batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_batches.id", ondelete="SET NULL"),
        nullable=True,
        comment="Batch whose commit created this record; unset for records only updated by an import.",
    )
    import_commit_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_commits.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    organization = relationship("Organization", back_populates="customers")

    __table_args__ = (Index("idx_customers_org_name", "organization_id", "name"),)

    def __repr__(self):
        return f"<Customer {self.id} {self.name}>"
