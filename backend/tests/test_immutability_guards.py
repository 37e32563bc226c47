"""
Flush guards: locked rows cannot be changed even by code that bypasses the
domain services and edits ORM objects directly.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select

from backend.app.core.exceptions import ImmutabilityViolationError
from backend.app.domain.billing.ledger_store import LedgerStore, create_invoice_atomic
from backend.app.domain.billing.payment_recorder import record_invoice_payment_atomic
from backend.app.domain.checkin.checkin_service import approve_booking_checkin_atomic
from backend.app.domain.checkin.ttis import ttis_correction
from backend.app.models.aircraft import Aircraft
from backend.app.models.audit_log import AuditLog
from backend.app.models.billing_enums import InvoiceStatus, ItemOrigin, PaymentMethod
from backend.app.models.booking import Booking
from backend.app.models.invoice_item import InvoiceItem
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.payment import Payment
from backend.app.schemas.invoice import InvoiceCreate


@pytest.fixture
async def pending_invoice(db_session, staff_user, member_user, hire_item):
    payload = InvoiceCreate(user_id=member_user.id, status=InvoiceStatus.PENDING, items=[hire_item()])
    creation = await create_invoice_atomic(db_session, payload, staff_user.id)
    return creation.invoice


@pytest.mark.asyncio
async def test_ledger_entry_update_is_blocked(db_session, pending_invoice):
    entries = await LedgerStore.ledger_entries(db_session, pending_invoice.id)
    entry_id = entries[0].id

    entries[0].amount = Decimal("1.00")
    with pytest.raises(ImmutabilityViolationError) as exc:
        await db_session.commit()
    await db_session.rollback()

    assert exc.value.error_code == "ERR_INTEGRITY_002"
    assert exc.value.details["entity"] == "LedgerEntry"

    entry = await db_session.get(LedgerEntry, entry_id, populate_existing=True)
    assert entry.amount == Decimal("230.00")


@pytest.mark.asyncio
async def test_payment_delete_is_blocked(db_session, staff_user, pending_invoice):
    recorded = await record_invoice_payment_atomic(
        db_session, pending_invoice.id, Decimal("50.00"), PaymentMethod.CASH, staff_user.id
    )

    await db_session.delete(recorded.payment)
    with pytest.raises(ImmutabilityViolationError):
        await db_session.commit()
    await db_session.rollback()

    payments = (await db_session.execute(select(Payment))).scalars().all()
    assert len(payments) == 1


@pytest.mark.asyncio
async def test_audit_rows_are_append_only(db_session, pending_invoice):
    audit = (await db_session.execute(select(AuditLog))).scalars().first()

    audit.action = "NOTHING_HAPPENED"
    with pytest.raises(ImmutabilityViolationError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_item_insert_on_pending_invoice_is_blocked(db_session, pending_invoice):
    invoice_id = pending_invoice.id
    db_session.add(InvoiceItem(
        invoice_id=invoice_id,
        description="Landing fee",
        origin=ItemOrigin.MANUAL,
        quantity=Decimal("1"),
        unit_price=Decimal("20.00"),
        tax_rate=Decimal("0.15"),
        amount=Decimal("20.00"),
        tax_amount=Decimal("3.00"),
        rate_inclusive=Decimal("23.00"),
        line_total=Decimal("23.00"),
    ))

    with pytest.raises(ImmutabilityViolationError) as exc:
        await db_session.flush()
    await db_session.rollback()

    assert "pending" in exc.value.details["reason"]
    items = await LedgerStore.active_items(db_session, invoice_id)
    assert len(items) == 1


@pytest.mark.asyncio
async def test_item_edit_on_pending_invoice_is_blocked(db_session, pending_invoice):
    items = await LedgerStore.active_items(db_session, pending_invoice.id)

    items[0].unit_price = Decimal("1.00")
    with pytest.raises(ImmutabilityViolationError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_approved_booking_flight_log_is_locked(db_session, staff_user, flight_booking, approval_payload):
    await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)
    booking_id = flight_booking.id

    flight_booking.hobbs_end = Decimal("1205.00")
    with pytest.raises(ImmutabilityViolationError) as exc:
        await db_session.commit()
    await db_session.rollback()

    assert "hobbs_end" in exc.value.details["reason"]
    booking = await db_session.get(Booking, booking_id, populate_existing=True)
    assert booking.hobbs_end == Decimal("1202.00")


@pytest.mark.asyncio
async def test_approved_booking_free_text_stays_editable(db_session, staff_user, flight_booking, approval_payload):
    await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)

    flight_booking.purpose = "Circuits and forced landings"
    await db_session.commit()


@pytest.mark.asyncio
async def test_unapproved_booking_is_editable(db_session, flight_booking):
    flight_booking.hobbs_start = Decimal("1199.50")
    await db_session.commit()


@pytest.mark.asyncio
async def test_large_ttis_decrease_needs_a_correction(db_session, aircraft):
    aircraft_id = aircraft.id

    aircraft.total_time_in_service = Decimal("990.00")
    with pytest.raises(ImmutabilityViolationError) as exc:
        await db_session.commit()
    await db_session.rollback()

    assert "requires a correction" in exc.value.details["reason"]
    plane = await db_session.get(Aircraft, aircraft_id, populate_existing=True)
    assert plane.total_time_in_service == Decimal("1000.00")


@pytest.mark.asyncio
async def test_small_ttis_decrease_is_allowed(db_session, aircraft):
    aircraft.total_time_in_service = Decimal("996.00")
    await db_session.commit()


@pytest.mark.asyncio
async def test_large_ttis_decrease_inside_correction(db_session, aircraft):
    with ttis_correction(db_session):
        aircraft.total_time_in_service = Decimal("990.00")
        await db_session.commit()

    assert aircraft.total_time_in_service == Decimal("990.00")


@pytest.mark.asyncio
async def test_negative_ttis_is_blocked(db_session, aircraft):
    with ttis_correction(db_session):
        aircraft.total_time_in_service = Decimal("-1.00")
        with pytest.raises(ImmutabilityViolationError) as exc:
            await db_session.flush()
    await db_session.rollback()

    assert "negative" in exc.value.details["reason"]
