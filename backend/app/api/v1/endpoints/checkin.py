"""
Booking Check-in API Endpoints.

Approve a flight check-in (invoice + TTIS + booking lock), finalize it
against an existing invoice, or correct its end readings afterwards.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_staff
from backend.app.db.session import get_db
from backend.app.domain.checkin.checkin_service import (
    approve_booking_checkin_atomic,
    finalize_booking_checkin_atomic,
)
from backend.app.domain.checkin.ttis import correct_booking_checkin_ttis_atomic
from backend.app.schemas.checkin import (
    CheckinApprovalResult,
    CheckinApprove,
    CheckinCorrect,
    CheckinCorrectionResult,
    CheckinFinalize,
)
from backend.app.schemas.common import Envelope
from backend.app.services.idempotency import IdempotencyCache, idempotency_cache

router = APIRouter(prefix="/bookings", tags=["Check-in"])


@router.post("/{booking_id}/checkin/approve", response_model=Envelope[CheckinApprovalResult])
async def approve_checkin(
    payload: CheckinApprove,
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve a booking check-in.

    Creates the invoice (or completes a linked draft), applies the flight to
    aircraft TTIS and locks the flight log. Approving twice is rejected.
    """
    cached = await cache.reserve()
    if cached is not None:
        return cached

    result = await approve_booking_checkin_atomic(db, booking_id, payload, current_user["user_id"])
    body = Envelope(data=result)
    await cache.store(body)
    return body


@router.post("/{booking_id}/checkin/finalize", response_model=Envelope[CheckinApprovalResult])
async def finalize_checkin(
    payload: CheckinFinalize,
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    cached = await cache.reserve()
    if cached is not None:
        return cached

    result = await finalize_booking_checkin_atomic(db, booking_id, payload, current_user["user_id"])
    body = Envelope(data=result)
    await cache.store(body)
    return body


@router.post("/{booking_id}/checkin/correct", response_model=Envelope[CheckinCorrectionResult])
async def correct_checkin(
    payload: CheckinCorrect,
    booking_id: int = Path(..., description="Booking ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """Correct end readings after approval; aircraft TTIS moves by the change in applied delta only."""
    cached = await cache.reserve()
    if cached is not None:
        return cached

    outcome = await correct_booking_checkin_ttis_atomic(
        db,
        booking_id,
        current_user["user_id"],
        payload.correction_reason,
        hobbs_end=payload.hobbs_end,
        tach_end=payload.tach_end,
        airswitch_end=payload.airswitch_end,
    )
    body = Envelope(
        data=CheckinCorrectionResult(
            booking_id=booking_id,
            old_applied_delta=outcome.old_applied_delta,
            new_applied_delta=outcome.new_applied_delta,
            correction_delta=outcome.correction_delta,
            aircraft_total_time_in_service=outcome.aircraft_total_time_in_service,
        )
    )
    await cache.store(body)
    return body
