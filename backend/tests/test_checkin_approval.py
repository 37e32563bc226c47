"""
Booking check-in approval: every invoice linkage branch, TTIS application,
rollback on failure and the debrief that follows approval.
"""

import pytest
from decimal import Decimal
from sqlalchemy import func, select

from backend.app.core.exceptions import (
    BusinessValidationError,
    CheckinAlreadyApprovedError,
    CheckinStepError,
    IntegrityFailureError,
    StateConflictError,
)
from backend.app.domain.billing.invoice_state import update_invoice_status_atomic
from backend.app.domain.billing.ledger_store import LedgerStore, create_invoice_atomic
from backend.app.domain.checkin.checkin_service import (
    approve_booking_checkin_atomic,
    finalize_booking_checkin_atomic,
)
from backend.app.domain.checkin.debrief import upsert_lesson_progress
from backend.app.models.aircraft import Aircraft
from backend.app.models.audit_log import AuditLog
from backend.app.models.billing_enums import InvoiceStatus, ItemOrigin, LedgerEntryType
from backend.app.models.booking import Booking
from backend.app.models.booking_enums import BookingStatus, BookingType, TotalTimeMethod
from backend.app.models.invoice import Invoice
from backend.app.models.lesson_progress import LessonProgress
from backend.app.schemas.checkin import CheckinFinalize, DebriefFields
from backend.app.schemas.invoice import InvoiceCreate


async def _invoice_count(db_session):
    return (await db_session.execute(select(func.count(Invoice.id)))).scalar()


@pytest.mark.asyncio
async def test_approve_without_invoice_creates_pending_invoice(db_session, staff_user, flight_booking, aircraft, approval_payload):
    result = await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)

    assert result.invoice_status == InvoiceStatus.PENDING
    assert result.total_amount == Decimal("230.00")
    assert result.applied_aircraft_delta == Decimal("2.00")
    assert result.aircraft_total_time_in_service == Decimal("1002.00")

    booking = await db_session.get(Booking, flight_booking.id, populate_existing=True)
    assert booking.status == BookingStatus.COMPLETE
    assert booking.checkin_approved_at is not None
    assert booking.checkin_approved_by == staff_user.id
    assert booking.checkin_invoice_id == result.invoice_id
    assert booking.flight_time == Decimal("2.00")
    assert booking.flight_time_hobbs == Decimal("2.00")
    assert booking.flight_time_tach == Decimal("1.60")
    assert booking.total_hours_start == Decimal("1000.00")
    assert booking.total_hours_end == Decimal("1002.00")
    assert booking.applied_total_time_method == TotalTimeMethod.HOBBS

    items = await LedgerStore.active_items(db_session, result.invoice_id)
    assert [item.origin for item in items] == [ItemOrigin.AUTO_TIME_CHARGE]

    invoice = await db_session.get(Invoice, result.invoice_id)
    assert invoice.booking_id == flight_booking.id


@pytest.mark.asyncio
async def test_second_approval_is_rejected(db_session, staff_user, flight_booking, approval_payload):
    booking_id, actor_id = flight_booking.id, staff_user.id
    payload = approval_payload()
    await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)

    with pytest.raises(CheckinAlreadyApprovedError):
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)

    assert await _invoice_count(db_session) == 1
    aircraft = await db_session.get(Aircraft, payload.checked_out_aircraft_id, populate_existing=True)
    assert aircraft.total_time_in_service == Decimal("1002.00")


@pytest.mark.asyncio
async def test_linked_pending_invoice_is_not_rebilled(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    """Retry after an interrupted approval: only the booking lock runs."""
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=flight_booking.id, status=InvoiceStatus.PENDING, items=[hire_item()]),
        staff_user.id,
    )
    flight_booking.checkin_invoice_id = creation.invoice.id
    await db_session.commit()

    result = await approve_booking_checkin_atomic(
        db_session, flight_booking.id, approval_payload(items=[hire_item(quantity="3")]), staff_user.id
    )

    assert result.invoice_id == creation.invoice.id
    assert result.total_amount == Decimal("230.00")
    assert await _invoice_count(db_session) == 1

    entries = await LedgerStore.ledger_entries(db_session, creation.invoice.id)
    assert [entry.entry_type for entry in entries] == [LedgerEntryType.DEBIT]

    audit = (await db_session.execute(select(AuditLog).where(AuditLog.action == "CHECKIN_APPROVED"))).scalar_one()
    assert audit.meta_data["branch"] == "already_pending"


@pytest.mark.asyncio
async def test_linked_draft_is_completed_and_manual_lines_kept(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(
            user_id=member_user.id,
            booking_id=flight_booking.id,
            items=[
                hire_item(quantity="1", origin=ItemOrigin.AUTO_TIME_CHARGE),
                hire_item(description="Landing fee", quantity="1", unit_price="20.00", origin=ItemOrigin.MANUAL),
            ],
        ),
        staff_user.id,
    )
    draft_id = creation.invoice.id
    manual_id = next(
        item.id for item in await LedgerStore.active_items(db_session, draft_id) if item.origin == ItemOrigin.MANUAL
    )

    result = await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)

    assert result.invoice_id == draft_id
    assert result.invoice_status == InvoiceStatus.PENDING
    # 230.00 for two hours of hire plus 23.00 landing fee
    assert result.total_amount == Decimal("253.00")

    items = await LedgerStore.active_items(db_session, draft_id)
    assert manual_id in {item.id for item in items}
    assert len(items) == 2

    entries = await LedgerStore.ledger_entries(db_session, draft_id)
    debits = [entry for entry in entries if entry.entry_type == LedgerEntryType.DEBIT]
    assert len(debits) == 1
    assert debits[0].amount == Decimal("253.00")


@pytest.mark.asyncio
async def test_untagged_hire_line_in_saved_draft_is_not_billed_twice(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    """A draft saved through plain invoice creation has no origin tags; its hire line is still replaced."""
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=flight_booking.id, items=[hire_item()]),
        staff_user.id,
    )
    draft_id = creation.invoice.id

    result = await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)

    assert result.invoice_id == draft_id
    assert result.total_amount == Decimal("230.00")

    items = await LedgerStore.active_items(db_session, draft_id)
    assert [(item.description, item.origin) for item in items] == [("Aircraft Hire (ZK-ABC)", ItemOrigin.AUTO_TIME_CHARGE)]


@pytest.mark.asyncio
async def test_draft_step_failure_names_step_and_rolls_back(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    """Replacing the only auto line with nothing leaves a zero total; approval fails at the transition."""
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(
            user_id=member_user.id,
            booking_id=flight_booking.id,
            items=[hire_item(origin=ItemOrigin.AUTO_TIME_CHARGE)],
        ),
        staff_user.id,
    )
    draft_id, booking_id, actor_id = creation.invoice.id, flight_booking.id, staff_user.id
    payload = approval_payload(items=[])

    with pytest.raises(CheckinStepError) as exc:
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)

    assert exc.value.step == "status_transition"
    assert exc.value.details["cause"]["error_code"] == "ERR_INTEGRITY_001"

    invoice = await db_session.get(Invoice, draft_id, populate_existing=True)
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.total_amount == Decimal("230.00")
    assert len(await LedgerStore.active_items(db_session, draft_id)) == 1

    booking = await db_session.get(Booking, booking_id, populate_existing=True)
    assert booking.checkin_approved_at is None


@pytest.mark.asyncio
async def test_linked_invoice_in_other_status_is_rejected(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=flight_booking.id, items=[hire_item()]),
        staff_user.id,
    )
    booking_id, actor_id = flight_booking.id, staff_user.id
    await update_invoice_status_atomic(db_session, creation.invoice.id, InvoiceStatus.CANCELLED, actor_id)

    with pytest.raises(StateConflictError):
        await approve_booking_checkin_atomic(db_session, booking_id, approval_payload(), actor_id)


@pytest.mark.asyncio
async def test_zero_total_approval_leaves_nothing_behind(db_session, staff_user, flight_booking, aircraft, approval_payload, hire_item):
    booking_id, aircraft_id, actor_id = flight_booking.id, aircraft.id, staff_user.id
    payload = approval_payload(items=[hire_item(unit_price="0.00")])

    with pytest.raises(IntegrityFailureError) as exc:
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)

    assert exc.value.message == "Invoice total must be greater than zero"
    assert await _invoice_count(db_session) == 0

    booking = await db_session.get(Booking, booking_id, populate_existing=True)
    assert booking.checkin_approved_at is None
    assert booking.checkin_invoice_id is None
    plane = await db_session.get(Aircraft, aircraft_id, populate_existing=True)
    assert plane.total_time_in_service == Decimal("1000.00")


@pytest.mark.asyncio
async def test_only_flight_bookings_can_be_approved(db_session, staff_user, make_booking, approval_payload):
    booking = await make_booking(booking_type=BookingType.GROUNDWORK)
    booking_id, actor_id = booking.id, staff_user.id
    payload = approval_payload()

    with pytest.raises(BusinessValidationError):
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_approved(db_session, staff_user, make_booking, approval_payload):
    booking = await make_booking(status=BookingStatus.CANCELLED)
    booking_id, actor_id = booking.id, staff_user.id
    payload = approval_payload()

    with pytest.raises(StateConflictError):
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)


@pytest.mark.asyncio
async def test_billing_fields_are_required(db_session, staff_user, flight_booking, approval_payload):
    booking_id, actor_id = flight_booking.id, staff_user.id
    for payload in (approval_payload(billing_basis=None), approval_payload(billing_hours=Decimal("0"))):
        with pytest.raises(BusinessValidationError):
            await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)


@pytest.mark.asyncio
async def test_meter_end_before_start_is_rejected(db_session, staff_user, flight_booking, approval_payload):
    booking_id, actor_id = flight_booking.id, staff_user.id
    payload = approval_payload(hobbs_end=Decimal("1199.50"))

    with pytest.raises(BusinessValidationError) as exc:
        await approve_booking_checkin_atomic(db_session, booking_id, payload, actor_id)
    assert exc.value.message == "hobbs_end must be >= hobbs_start"
    assert await _invoice_count(db_session) == 0


@pytest.mark.asyncio
async def test_reduced_tacho_method(db_session, staff_user, flight_booking, aircraft, approval_payload):
    aircraft.total_time_method = TotalTimeMethod.TACHO_LESS_10
    await db_session.commit()

    result = await approve_booking_checkin_atomic(db_session, flight_booking.id, approval_payload(), staff_user.id)

    # tach delta 1.60 x 0.90
    assert result.applied_aircraft_delta == Decimal("1.44")
    assert result.aircraft_total_time_in_service == Decimal("1001.44")


@pytest.mark.asyncio
async def test_debrief_saved_after_approval(db_session, staff_user, flight_booking, approval_payload):
    debrief = DebriefFields(instructor_comments="Good circuits, flare a touch late", lesson_status="pass")

    result = await approve_booking_checkin_atomic(
        db_session, flight_booking.id, approval_payload(debrief=debrief), staff_user.id
    )

    assert result.debrief_saved is True
    progress = (
        await db_session.execute(select(LessonProgress).where(LessonProgress.booking_id == flight_booking.id))
    ).scalar_one()
    assert progress.instructor_comments == "Good circuits, flare a touch late"
    assert progress.instructor_id == staff_user.id
    assert progress.user_id == flight_booking.user_id


@pytest.mark.asyncio
async def test_empty_debrief_is_skipped(db_session, staff_user, flight_booking, approval_payload):
    result = await approve_booking_checkin_atomic(
        db_session, flight_booking.id, approval_payload(debrief=DebriefFields(airmanship="")), staff_user.id
    )

    assert result.debrief_saved is False
    assert (await db_session.execute(select(LessonProgress))).scalars().all() == []


@pytest.mark.asyncio
async def test_debrief_failure_keeps_approval(db_session, staff_user, flight_booking, approval_payload, mocker):
    mocker.patch(
        "backend.app.domain.checkin.debrief.upsert_lesson_progress",
        side_effect=BusinessValidationError("Lesson record unavailable"),
    )
    booking_id = flight_booking.id

    result = await approve_booking_checkin_atomic(
        db_session, booking_id, approval_payload(debrief=DebriefFields(safety_concerns="None")), staff_user.id
    )

    assert result.debrief_saved is False
    booking = await db_session.get(Booking, booking_id, populate_existing=True)
    assert booking.checkin_approved_at is not None
    assert await _invoice_count(db_session) == 1


@pytest.mark.asyncio
async def test_lesson_progress_is_upserted(db_session, staff_user, flight_booking):
    await upsert_lesson_progress(
        db_session, flight_booking, DebriefFields(lesson_highlights="Steep turns"), staff_user.id, staff_user.id
    )
    await upsert_lesson_progress(
        db_session, flight_booking, DebriefFields(focus_next_lesson="Forced landings"), staff_user.id, staff_user.id
    )
    await db_session.commit()

    rows = (await db_session.execute(select(LessonProgress))).scalars().all()
    assert len(rows) == 1
    assert rows[0].lesson_highlights == "Steep turns"
    assert rows[0].focus_next_lesson == "Forced landings"


@pytest.mark.asyncio
async def test_finalize_against_approved_invoice(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=flight_booking.id, status=InvoiceStatus.PENDING, items=[hire_item()]),
        staff_user.id,
    )
    flight_log = approval_payload().model_dump(exclude={"items", "tax_rate", "due_date", "reference", "notes", "debrief"})

    result = await finalize_booking_checkin_atomic(
        db_session, flight_booking.id, CheckinFinalize(invoice_id=creation.invoice.id, **flight_log), staff_user.id
    )

    assert result.invoice_id == creation.invoice.id
    assert result.aircraft_total_time_in_service == Decimal("1002.00")
    booking = await db_session.get(Booking, flight_booking.id, populate_existing=True)
    assert booking.checkin_invoice_id == creation.invoice.id
    assert booking.status == BookingStatus.COMPLETE


@pytest.mark.asyncio
async def test_finalize_requires_approved_invoice(db_session, staff_user, member_user, flight_booking, approval_payload, hire_item):
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=flight_booking.id, items=[hire_item()]),
        staff_user.id,
    )
    booking_id, actor_id = flight_booking.id, staff_user.id
    flight_log = approval_payload().model_dump(exclude={"items", "tax_rate", "due_date", "reference", "notes", "debrief"})

    with pytest.raises(StateConflictError):
        await finalize_booking_checkin_atomic(
            db_session, booking_id, CheckinFinalize(invoice_id=creation.invoice.id, **flight_log), actor_id
        )


@pytest.mark.asyncio
async def test_finalize_rejects_another_bookings_invoice(db_session, staff_user, member_user, make_booking, approval_payload, hire_item):
    first = await make_booking()
    second = await make_booking()
    creation = await create_invoice_atomic(
        db_session,
        InvoiceCreate(user_id=member_user.id, booking_id=first.id, status=InvoiceStatus.PENDING, items=[hire_item()]),
        staff_user.id,
    )
    second_id, actor_id = second.id, staff_user.id
    flight_log = approval_payload().model_dump(exclude={"items", "tax_rate", "due_date", "reference", "notes", "debrief"})

    with pytest.raises(StateConflictError) as exc:
        await finalize_booking_checkin_atomic(
            db_session, second_id, CheckinFinalize(invoice_id=creation.invoice.id, **flight_log), actor_id
        )
    assert exc.value.message == "Invoice belongs to a different booking"
