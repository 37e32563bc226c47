"""
Training debrief captured with a check-in approval.

Runs after the financial commit in its own unit: a failed debrief save is
logged and reported, but the approval stands.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import AppException
from backend.app.db.transaction import atomic
from backend.app.models.booking import Booking
from backend.app.models.lesson_progress import LessonProgress
from backend.app.schemas.checkin import DebriefFields
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.debrief")

DEBRIEF_TEXT_FIELDS = (
    "instructor_comments",
    "lesson_highlights",
    "areas_for_improvement",
    "airmanship",
    "focus_next_lesson",
    "safety_concerns",
    "weather_conditions",
)


async def upsert_lesson_progress(
    db: AsyncSession,
    booking: Booking,
    debrief: DebriefFields,
    instructor_id: Optional[int],
    actor_id: Optional[int],
) -> LessonProgress:
    """Update the booking's progress record, or create it. Only supplied fields are written."""
    result = await db.execute(select(LessonProgress).where(LessonProgress.booking_id == booking.id))
    progress = result.scalar_one_or_none()
    created = progress is None

    if created:
        progress = LessonProgress(booking_id=booking.id)
        db.add(progress)

    progress.user_id = booking.user_id
    progress.lesson_id = booking.lesson_id
    progress.instructor_id = instructor_id
    progress.date = datetime.now(timezone.utc)

    for name in DEBRIEF_TEXT_FIELDS:
        value = getattr(debrief, name)
        if value is not None:
            setattr(progress, name, value)
    if debrief.lesson_status is not None:
        progress.status = debrief.lesson_status

    await db.flush()
    await log_event(
        db,
        AuditAction.DEBRIEF_SAVED,
        entity_type="booking",
        entity_id=booking.id,
        actor_id=actor_id,
        metadata={"lesson_progress_id": progress.id, "created": created},
    )
    return progress


async def save_debrief_after_approval(
    db: AsyncSession,
    booking: Booking,
    debrief: Optional[DebriefFields],
    actor_id: Optional[int],
) -> bool:
    """
    Save the debrief in a fresh unit after approval has committed.

    Returns True when a record was written, False when there was nothing to
    save or the save failed (already logged by the transaction helper).
    """
    if debrief is None or not debrief.has_content():
        return False

    booking_id = booking.id
    instructor_id = booking.checked_out_instructor_id or booking.instructor_id
    try:
        async with atomic(db, "save_debrief", booking_id=booking_id):
            await upsert_lesson_progress(db, booking, debrief, instructor_id, actor_id)
    except (AppException, SQLAlchemyError):
        logger.warning("Check-in for booking %s approved but debrief was not saved", booking_id)
        return False
    return True
