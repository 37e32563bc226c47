"""
Billing enumerations.
"""

import enum


class InvoiceStatus(str, enum.Enum):
    """Invoice status enumeration."""
    DRAFT = "draft"  # Items still mutable
    PENDING = "pending"  # Approved and debited, awaiting payment
    PAID = "paid"  # Balance reached zero
    OVERDUE = "overdue"  # Read-time only, derived from due_date
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class LedgerEntryType(str, enum.Enum):
    """Ledger entry type enumeration."""
    ADJUSTMENT = "adjustment"  # Informational, no money moved
    DEBIT = "debit"  # Charge raised against the member
    CREDIT = "credit"  # Payment received from the member


class LedgerEntryKind(str, enum.Enum):
    """Lifecycle event a ledger entry records (stored in its metadata)."""
    INVOICE_CREATED = "invoice_created"
    INVOICE_DEBIT = "invoice_debit"
    INVOICE_PAYMENT = "invoice_payment"


class PaymentMethod(str, enum.Enum):
    """Payment method enumeration."""
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    ONLINE_PAYMENT = "online_payment"
    OTHER = "other"


class ItemOrigin(str, enum.Enum):
    """How an invoice line came to exist."""
    MANUAL = "manual"
    AUTO_TIME_CHARGE = "auto_time_charge"  # Generated from check-in flight time
