"""
Invoice database model.

Monetary totals are derived by the ledger store from the invoice's
non-deleted items and payments; callers never write them directly.
"""

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, DateTime, Enum, Index, CheckConstraint, text
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.billing_enums import InvoiceStatus, PaymentMethod


class Invoice(Base):
    """
    Invoice model.

    Invariants kept by the ledger store:
    total_amount = subtotal + tax_total
    balance_due = max(0, total_amount - total_paid)
    """
    __tablename__ = "invoices"
    __table_args__ = (
        # At most one live invoice per booking
        Index(
            "uq_invoices_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        CheckConstraint("tax_rate >= 0 AND tax_rate <= 1", name="ck_invoices_tax_rate"),
        CheckConstraint("total_paid >= 0", name="ck_invoices_total_paid"),
        CheckConstraint("balance_due >= 0", name="ck_invoices_balance_due"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    # Billed member and optional originating booking
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey('bookings.id'), nullable=True)

    status = Column(Enum(InvoiceStatus, name="invoice_status", values_callable=db_values), nullable=False, default=InvoiceStatus.DRAFT)

    # Financials
    tax_rate = Column(Numeric(6, 4), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_total = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_paid = Column(Numeric(12, 2), nullable=False, default=0)
    balance_due = Column(Numeric(12, 2), nullable=False, default=0)

    issue_date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    paid_date = Column(DateTime(timezone=True), nullable=True)

    reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Most recent payment
    payment_method = Column(Enum(PaymentMethod, name="invoice_payment_method", values_callable=db_values), nullable=True)
    payment_reference = Column(String(255), nullable=True)

    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Invoice(id={self.id}, number='{self.invoice_number}', status='{self.status.value}', total={self.total_amount})>"
