"""
Invoice Ledger Store (Domain Logic).

Transactional persistence for invoices, invoice items and ledger entries.
Functions here only flush; the *_atomic wrappers own the commit so that a
whole operation lands or none of it does.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    BusinessValidationError,
    IntegrityFailureError,
    ResourceNotFoundError,
    StateConflictError,
)
from backend.app.db.transaction import atomic
from backend.app.domain.billing.money import (
    ZERO,
    InvoiceTotals,
    balance_due,
    compute_line,
    compute_totals,
    resolve_tax_rate,
    round2,
    to_decimal,
)
from backend.app.models.billing_enums import InvoiceStatus, ItemOrigin, LedgerEntryKind, LedgerEntryType
from backend.app.models.booking import Booking
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_item import InvoiceItem
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.user import User
from backend.app.schemas.invoice import InvoiceCreate, InvoiceItemCreate
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.ledger")

ItemMatcher = Callable[[InvoiceItem], bool]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def auto_generated_matcher(item: InvoiceItem) -> bool:
    """Default replacement matcher: lines generated from check-in flight time."""
    return item.origin == ItemOrigin.AUTO_TIME_CHARGE


def description_matcher(*prefixes: str) -> ItemMatcher:
    """
    Match lines by description prefix, for invoices whose items predate the
    origin tag (e.g. "Aircraft Hire (", "Instructor Rate -").
    """
    lowered = tuple(prefix.lower() for prefix in prefixes)

    def matcher(item: InvoiceItem) -> bool:
        return (item.description or "").lower().startswith(lowered)
    return matcher


# Descriptions the check-in screen gives its flight-time lines
TIME_CHARGE_PREFIXES = ("Aircraft Hire (", "Instructor Rate -")

_time_charge_description = description_matcher(*TIME_CHARGE_PREFIXES)


def checkin_time_charge_matcher(item: InvoiceItem) -> bool:
    """
    Matcher used when a check-in completes a saved draft: tagged time charges,
    plus untagged lines that carry a time-charge description.
    """
    return auto_generated_matcher(item) or _time_charge_description(item)


@dataclass
class InvoiceCreation:
    invoice: Invoice
    ledger_entry: Optional[LedgerEntry]


@dataclass
class ItemReplacement:
    removed_item_ids: List[int] = field(default_factory=list)
    added_items: List[InvoiceItem] = field(default_factory=list)
    totals: Optional[InvoiceTotals] = None


def _validate_tax_rate(rate, label: str = "Tax rate"):
    rate = to_decimal(rate)
    if rate < 0 or rate > 1:
        raise BusinessValidationError(f"{label} must be between 0 and 1", details={"tax_rate": rate})
    return rate


def _validate_item(index: int, item: InvoiceItemCreate) -> None:
    position = index + 1
    if not (item.description or "").strip():
        raise BusinessValidationError(f"Item {position}: description is required", details={"item": position})
    if item.quantity is None or to_decimal(item.quantity) <= 0:
        raise BusinessValidationError(f"Item {position}: quantity must be greater than zero", details={"item": position})
    if item.unit_price is None or to_decimal(item.unit_price) < 0:
        raise BusinessValidationError(f"Item {position}: unit price cannot be negative", details={"item": position})
    if item.tax_rate is not None:
        _validate_tax_rate(item.tax_rate, f"Item {position}: tax rate")


class LedgerStore:

    @staticmethod
    async def get_invoice(db: AsyncSession, invoice_id: int, for_update: bool = False) -> Invoice:
        """
        Load a live (non-deleted) invoice.

        With ``for_update`` the row is locked until the transaction ends and
        the identity-map copy is refreshed from the locked row.
        """
        stmt = select(Invoice).where(Invoice.id == invoice_id, Invoice.deleted_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise ResourceNotFoundError("Invoice", invoice_id)
        return invoice

    @staticmethod
    async def active_items(db: AsyncSession, invoice_id: int) -> List[InvoiceItem]:
        result = await db.execute(
            select(InvoiceItem)
            .where(InvoiceItem.invoice_id == invoice_id, InvoiceItem.deleted_at.is_(None))
            .order_by(InvoiceItem.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def ledger_entries(db: AsyncSession, invoice_id: int) -> List[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry).where(LedgerEntry.invoice_id == invoice_id).order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def active_invoice_for_booking(db: AsyncSession, booking_id: int) -> Optional[Invoice]:
        result = await db.execute(
            select(Invoice).where(Invoice.booking_id == booking_id, Invoice.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def next_invoice_number(db: AsyncSession, issue_date: datetime) -> str:
        """INV-YYYY-NNNNNN, sequential within the issue year."""
        prefix = f"{settings.invoice_number_prefix}-{issue_date.year}-"
        result = await db.execute(
            select(func.max(Invoice.invoice_number)).where(Invoice.invoice_number.like(f"{prefix}%"))
        )
        last = result.scalar()
        sequence = 1
        if last:
            try:
                sequence = int(last[len(prefix):]) + 1
            except ValueError:
                sequence = 1
        return f"{prefix}{sequence:06d}"

    @staticmethod
    async def add_items(
        db: AsyncSession,
        invoice: Invoice,
        items: Sequence[InvoiceItemCreate],
        default_origin: ItemOrigin = ItemOrigin.MANUAL,
    ) -> List[InvoiceItem]:
        """Insert lines with independently rounded money fields. Invoice must be a draft."""
        if invoice.status != InvoiceStatus.DRAFT:
            raise StateConflictError(
                "Invoice items can only be changed while the invoice is a draft",
                details={"invoice_id": invoice.id, "status": invoice.status.value},
            )

        created = []
        for index, item in enumerate(items):
            _validate_item(index, item)
            rate = resolve_tax_rate(item.tax_rate, invoice.tax_rate)
            unit_price = round2(item.unit_price)
            line = compute_line(item.quantity, unit_price, rate)
            row = InvoiceItem(
                invoice_id=invoice.id,
                chargeable_id=item.chargeable_id,
                description=item.description.strip(),
                origin=item.origin or default_origin,
                quantity=to_decimal(item.quantity),
                unit_price=unit_price,
                tax_rate=rate,
                amount=line.amount,
                tax_amount=line.tax_amount,
                rate_inclusive=line.rate_inclusive,
                line_total=line.line_total,
                notes=item.notes,
            )
            db.add(row)
            created.append(row)

        await db.flush()
        return created

    @staticmethod
    async def recalculate_totals(db: AsyncSession, invoice: Invoice) -> InvoiceTotals:
        """
        Recompute subtotal, tax_total, total_amount and balance_due from the
        live items. An empty item set yields zeros.
        """
        items = await LedgerStore.active_items(db, invoice.id)
        totals = compute_totals(items)

        invoice.subtotal = totals.subtotal
        invoice.tax_total = totals.tax_total
        invoice.total_amount = totals.total_amount
        invoice.balance_due = balance_due(totals.total_amount, invoice.total_paid)

        await db.flush()
        return totals

    @staticmethod
    async def record_ledger_entry(
        db: AsyncSession,
        invoice: Invoice,
        entry_type: LedgerEntryType,
        kind: LedgerEntryKind,
        amount,
        description: str,
        actor_id: Optional[int],
        extra: Optional[dict] = None,
        completed_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Append one immutable ledger entry for an invoice event."""
        amount = round2(amount)
        if amount <= 0:
            raise IntegrityFailureError(
                "Ledger entry amount must be greater than zero",
                details={"invoice_id": invoice.id, "amount": amount},
            )

        metadata = {
            "kind": kind.value,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "booking_id": invoice.booking_id,
            "created_by": actor_id,
        }
        if extra:
            metadata.update(extra)

        entry = LedgerEntry(
            user_id=invoice.user_id,
            invoice_id=invoice.id,
            entry_type=entry_type,
            amount=amount,
            description=description,
            meta_data=jsonable_encoder(metadata),
            completed_at=completed_at or utc_now(),
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    async def create_invoice(
        db: AsyncSession,
        *,
        actor_id: Optional[int],
        user_id: int,
        items: Sequence[InvoiceItemCreate],
        booking_id: Optional[int] = None,
        status: InvoiceStatus = InvoiceStatus.DRAFT,
        tax_rate=None,
        issue_date: Optional[datetime] = None,
        due_date: Optional[datetime] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        invoice_number: Optional[str] = None,
        item_origin: ItemOrigin = ItemOrigin.MANUAL,
    ) -> InvoiceCreation:
        """
        Create an invoice together with its items.

        Flow:
        1. Validate status (draft or pending), items and tax rate
        2. Check billed user, booking and invoice number
        3. Insert invoice as draft so the item guard accepts the lines
        4. Insert items and recalculate totals
        5. Reject a zero-value invoice
        6. Draft: informational adjustment entry. Pending: draft -> pending
           through the state machine, which emits the debit
        """
        from backend.app.domain.billing.invoice_state import InvoiceStateMachine

        # 1. Input validation
        if status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise BusinessValidationError(
                "Invoice status must be draft or pending",
                details={"status": getattr(status, "value", status)},
            )
        if not items:
            raise BusinessValidationError("Invoice must contain at least one item")

        rate = _validate_tax_rate(tax_rate if tax_rate is not None else str(settings.default_tax_rate))
        for index, item in enumerate(items):
            _validate_item(index, item)

        # 2. Referenced records
        if await db.get(User, user_id) is None:
            raise ResourceNotFoundError("User", user_id)

        if booking_id is not None:
            if await db.get(Booking, booking_id) is None:
                raise ResourceNotFoundError("Booking", booking_id)
            if await LedgerStore.active_invoice_for_booking(db, booking_id) is not None:
                raise StateConflictError(
                    "An active invoice already exists for this booking",
                    details={"booking_id": booking_id},
                )

        issue_date = issue_date or utc_now()
        due_date = due_date or issue_date + timedelta(days=settings.invoice_due_days)

        if invoice_number:
            existing = await db.execute(select(Invoice.id).where(Invoice.invoice_number == invoice_number))
            if existing.scalar_one_or_none() is not None:
                raise StateConflictError(
                    "Invoice number is already in use",
                    details={"invoice_number": invoice_number},
                )
        else:
            invoice_number = await LedgerStore.next_invoice_number(db, issue_date)

        # 3. Invoice starts as draft
        invoice = Invoice(
            invoice_number=invoice_number,
            user_id=user_id,
            booking_id=booking_id,
            status=InvoiceStatus.DRAFT,
            tax_rate=rate,
            subtotal=ZERO,
            tax_total=ZERO,
            total_amount=ZERO,
            total_paid=ZERO,
            balance_due=ZERO,
            issue_date=issue_date,
            due_date=due_date,
            reference=reference,
            notes=notes,
            created_by=actor_id,
        )
        db.add(invoice)
        await db.flush()

        # 4. Items and totals
        await LedgerStore.add_items(db, invoice, items, default_origin=item_origin)
        totals = await LedgerStore.recalculate_totals(db, invoice)

        # 5. Zero-value invoices are invalid
        if totals.total_amount <= 0:
            raise IntegrityFailureError(
                "Invoice total must be greater than zero",
                details={"total_amount": totals.total_amount},
            )

        # 6. Lifecycle entry
        if status == InvoiceStatus.PENDING:
            change = await InvoiceStateMachine.transition(db, invoice, InvoiceStatus.PENDING, actor_id)
            ledger_entry = change.ledger_entry
        else:
            ledger_entry = await LedgerStore.record_ledger_entry(
                db,
                invoice,
                LedgerEntryType.ADJUSTMENT,
                LedgerEntryKind.INVOICE_CREATED,
                totals.total_amount,
                f"Draft invoice created: {invoice.invoice_number}",
                actor_id,
            )
            # A draft raised for a booking becomes that booking's check-in invoice
            if booking_id is not None:
                booking = await db.get(Booking, booking_id)
                if booking.checkin_approved_at is None and booking.checkin_invoice_id is None:
                    booking.checkin_invoice_id = invoice.id
                    await db.flush()

        await log_event(
            db,
            AuditAction.INVOICE_CREATED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={
                "invoice_number": invoice.invoice_number,
                "status": invoice.status.value,
                "total_amount": invoice.total_amount,
                "booking_id": booking_id,
            },
        )
        return InvoiceCreation(invoice=invoice, ledger_entry=ledger_entry)

    @staticmethod
    async def replace_auto_generated_items(
        db: AsyncSession,
        invoice: Invoice,
        new_items: Sequence[InvoiceItemCreate],
        actor_id: Optional[int],
        matcher: Optional[ItemMatcher] = None,
    ) -> ItemReplacement:
        """
        Soft-delete the invoice's auto-generated lines, insert the replacement
        set and recalculate totals. Lines the matcher rejects (manual lines by
        default) are left untouched.
        """
        matcher = matcher or auto_generated_matcher
        if invoice.status != InvoiceStatus.DRAFT:
            raise StateConflictError(
                "Invoice items can only be replaced while the invoice is a draft",
                details={"invoice_id": invoice.id, "status": invoice.status.value},
            )

        replacement = ItemReplacement()
        now = utc_now()
        for item in await LedgerStore.active_items(db, invoice.id):
            if matcher(item):
                item.deleted_at = now
                item.deleted_by = actor_id
                replacement.removed_item_ids.append(item.id)
        await db.flush()

        if new_items:
            replacement.added_items = await LedgerStore.add_items(
                db, invoice, new_items, default_origin=ItemOrigin.AUTO_TIME_CHARGE
            )
        replacement.totals = await LedgerStore.recalculate_totals(db, invoice)

        await log_event(
            db,
            AuditAction.INVOICE_ITEMS_REPLACED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={
                "removed_item_ids": replacement.removed_item_ids,
                "added_item_ids": [item.id for item in replacement.added_items],
            },
        )
        return replacement


async def create_invoice_atomic(db: AsyncSession, payload: InvoiceCreate, actor_id: Optional[int]) -> InvoiceCreation:
    """Create the invoice with its items, totals and lifecycle entry in one unit."""
    async with atomic(db, "create_invoice", user_id=payload.user_id, booking_id=payload.booking_id):
        creation = await LedgerStore.create_invoice(
            db,
            actor_id=actor_id,
            user_id=payload.user_id,
            items=payload.items,
            booking_id=payload.booking_id,
            status=payload.status,
            tax_rate=payload.tax_rate,
            issue_date=payload.issue_date,
            due_date=payload.due_date,
            reference=payload.reference,
            notes=payload.notes,
            invoice_number=payload.invoice_number,
        )

    logger.info(
        "Invoice %s created as %s, total %s",
        creation.invoice.invoice_number,
        creation.invoice.status.value,
        creation.invoice.total_amount,
    )
    return creation


async def update_invoice_totals_atomic(db: AsyncSession, invoice_id: int, actor_id: Optional[int]) -> Invoice:
    """Lock the invoice and recompute its totals from live items."""
    async with atomic(db, "update_invoice_totals", invoice_id=invoice_id):
        invoice = await LedgerStore.get_invoice(db, invoice_id, for_update=True)
        totals = await LedgerStore.recalculate_totals(db, invoice)
        await log_event(
            db,
            AuditAction.INVOICE_TOTALS_RECALCULATED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={"subtotal": totals.subtotal, "tax_total": totals.tax_total, "total_amount": totals.total_amount},
        )

    logger.info("Invoice %s totals recalculated: %s", invoice.invoice_number, invoice.total_amount)
    return invoice


async def add_invoice_item_atomic(
    db: AsyncSession, invoice_id: int, item: InvoiceItemCreate, actor_id: Optional[int]
) -> InvoiceItem:
    """Add one manual line to a draft invoice and refresh its totals."""
    async with atomic(db, "add_invoice_item", invoice_id=invoice_id):
        invoice = await LedgerStore.get_invoice(db, invoice_id, for_update=True)
        created = await LedgerStore.add_items(db, invoice, [item], default_origin=ItemOrigin.MANUAL)
        await LedgerStore.recalculate_totals(db, invoice)
        await log_event(
            db,
            AuditAction.INVOICE_ITEM_ADDED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={"item_id": created[0].id, "line_total": created[0].line_total},
        )

    return created[0]
