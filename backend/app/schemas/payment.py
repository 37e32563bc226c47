"""
Payment API Schema Definitions.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.models.billing_enums import InvoiceStatus, PaymentMethod


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., description="Must be greater than zero and not exceed the balance due")
    payment_method: PaymentMethod
    payment_reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    id: int
    invoice_id: int
    ledger_entry_id: int
    amount: Decimal
    payment_method: PaymentMethod
    payment_reference: Optional[str]
    notes: Optional[str]
    paid_at: datetime

    class Config:
        from_attributes = True


class PaymentReceipt(BaseModel):
    """Outcome of one recorded payment."""
    invoice_id: int
    payment_id: int
    transaction_id: int
    new_total_paid: Decimal
    new_balance_due: Decimal
    new_status: InvoiceStatus
