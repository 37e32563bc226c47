"""
Invoice API Schema Definitions.

Pydantic schemas for invoice creation, totals and status transitions.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from backend.app.models.billing_enums import InvoiceStatus, ItemOrigin, LedgerEntryType, PaymentMethod
from backend.app.schemas.payment import PaymentResponse


class InvoiceItemCreate(BaseModel):
    """Schema for one billable line."""
    chargeable_id: Optional[int] = None
    description: str = Field(..., min_length=1, max_length=255)
    quantity: Decimal = Field(..., description="Must be greater than zero")
    unit_price: Decimal = Field(..., description="Tax-exclusive price per unit")
    tax_rate: Optional[Decimal] = Field(None, description="Defaults to the invoice tax rate")
    notes: Optional[str] = None
    origin: Optional[ItemOrigin] = Field(None, description="Defaults depend on the calling operation")


class InvoiceCreate(BaseModel):
    """Schema for creating an invoice with its items in one step."""
    user_id: int = Field(..., description="Billed member")
    booking_id: Optional[int] = None
    status: InvoiceStatus = Field(InvoiceStatus.DRAFT, description="draft or pending")
    tax_rate: Optional[Decimal] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    invoice_number: Optional[str] = Field(None, max_length=32)
    items: List[InvoiceItemCreate] = Field(default_factory=list)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class InvoiceItemResponse(BaseModel):
    id: int
    invoice_id: int
    chargeable_id: Optional[int]
    description: str
    origin: ItemOrigin
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    amount: Decimal
    tax_amount: Decimal
    rate_inclusive: Decimal
    line_total: Decimal
    notes: Optional[str]

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str
    user_id: int
    booking_id: Optional[int]
    status: InvoiceStatus
    tax_rate: Decimal
    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal
    total_paid: Decimal
    balance_due: Decimal
    issue_date: datetime
    due_date: datetime
    paid_date: Optional[datetime]
    reference: Optional[str]
    notes: Optional[str]
    payment_method: Optional[PaymentMethod]
    payment_reference: Optional[str]

    class Config:
        from_attributes = True


class InvoiceDetailResponse(BaseModel):
    """Invoice with its live items, payments and the read-time status (reports overdue)."""
    invoice: InvoiceResponse
    effective_status: InvoiceStatus
    items: List[InvoiceItemResponse]
    payments: List[PaymentResponse] = Field(default_factory=list)


class InvoiceCreateResult(BaseModel):
    invoice_id: int
    invoice_number: str
    status: InvoiceStatus
    total_amount: Decimal
    ledger_entry_id: Optional[int]


class InvoiceTotalsResult(BaseModel):
    invoice_id: int
    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal
    total_paid: Decimal
    balance_due: Decimal


class InvoiceStatusResult(BaseModel):
    invoice_id: int
    status: InvoiceStatus
    changed: bool
    transaction_id: Optional[int] = Field(None, description="Ledger entry id when the change was financial")


class LedgerEntryResponse(BaseModel):
    id: int
    user_id: int
    invoice_id: Optional[int]
    entry_type: LedgerEntryType
    amount: Decimal
    description: Optional[str]
    meta_data: Optional[dict]
    completed_at: datetime

    class Config:
        from_attributes = True
