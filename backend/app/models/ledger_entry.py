"""
Ledger Entry database model.

Immutable record of each significant invoice event.
"""

from sqlalchemy import Column, Integer, Numeric, ForeignKey, DateTime, Enum, String, JSON, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.billing_enums import LedgerEntryType


class LedgerEntry(Base):
    """
    Ledger Entry model.

    One row per invoice created (adjustment), invoice approved (debit) and
    payment received (credit). NO updates or deletions allowed.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Billed member
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id'), nullable=True, index=True)

    entry_type = Column(Enum(LedgerEntryType, name="ledger_entry_type", values_callable=db_values), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(String(255), nullable=True)

    # kind, invoice_number, booking_id, payment_method, created_by ...
    meta_data = Column(JSON, nullable=True)

    # Timestamps (Immutable - no updated_at)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, type='{self.entry_type.value}', amount={self.amount})>"
