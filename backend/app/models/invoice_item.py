"""
Invoice Item database model.

Derived money fields (amount, tax_amount, rate_inclusive, line_total) are
rounded independently at insert time so each line can be audited alone.
"""

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.billing_enums import ItemOrigin


class InvoiceItem(Base):
    """
    Invoice line item.

    Mutable only while the owning invoice is a draft. Replacement is done by
    soft delete (deleted_at) plus a fresh insert.
    """
    __tablename__ = "invoice_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_invoice_items_unit_price"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id'), nullable=False, index=True)

    # Optional link into the school's chargeables catalogue
    chargeable_id = Column(Integer, nullable=True)

    description = Column(String(255), nullable=False)
    origin = Column(Enum(ItemOrigin, name="item_origin", values_callable=db_values), nullable=False, default=ItemOrigin.MANUAL)

    quantity = Column(Numeric(12, 4), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    tax_rate = Column(Numeric(6, 4), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    rate_inclusive = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    def __repr__(self):
        return f"<InvoiceItem(id={self.id}, invoice_id={self.invoice_id}, origin='{self.origin.value}', line_total={self.line_total})>"
