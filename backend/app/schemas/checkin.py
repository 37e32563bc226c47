"""
Booking Check-in API Schema Definitions.

Pydantic schemas for approving, finalizing and correcting a flight check-in.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from backend.app.models.billing_enums import InvoiceStatus
from backend.app.models.booking_enums import BillingBasis, LessonOutcome
from backend.app.schemas.invoice import InvoiceItemCreate


class CheckinFlightLog(BaseModel):
    """Flight-log fields captured at check-in."""
    checked_out_aircraft_id: Optional[int] = None
    checked_out_instructor_id: Optional[int] = None
    flight_type_id: Optional[int] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None

    hobbs_start: Optional[Decimal] = None
    hobbs_end: Optional[Decimal] = None
    tach_start: Optional[Decimal] = None
    tach_end: Optional[Decimal] = None
    airswitch_start: Optional[Decimal] = None
    airswitch_end: Optional[Decimal] = None
    solo_end_hobbs: Optional[Decimal] = None
    solo_end_tach: Optional[Decimal] = None
    dual_time: Optional[Decimal] = None
    solo_time: Optional[Decimal] = None

    billing_basis: Optional[BillingBasis] = None
    billing_hours: Optional[Decimal] = None


class DebriefFields(BaseModel):
    """Optional training debrief recorded alongside an approval."""
    instructor_comments: Optional[str] = None
    lesson_highlights: Optional[str] = None
    areas_for_improvement: Optional[str] = None
    airmanship: Optional[str] = None
    focus_next_lesson: Optional[str] = None
    safety_concerns: Optional[str] = None
    weather_conditions: Optional[str] = None
    lesson_status: Optional[LessonOutcome] = None

    def has_content(self) -> bool:
        return any(value not in (None, "") for value in self.model_dump().values())


class CheckinApprove(CheckinFlightLog):
    """Schema for approving a booking check-in (creates or completes its invoice)."""
    items: List[InvoiceItemCreate] = Field(default_factory=list)
    tax_rate: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    debrief: Optional[DebriefFields] = None


class CheckinFinalize(CheckinFlightLog):
    """Schema for locking a booking against an invoice that already exists."""
    invoice_id: int


class CheckinCorrect(BaseModel):
    """Schema for correcting end readings after approval."""
    hobbs_end: Optional[Decimal] = None
    tach_end: Optional[Decimal] = None
    airswitch_end: Optional[Decimal] = None
    correction_reason: str = Field(..., min_length=3, max_length=1000)


class CheckinApprovalResult(BaseModel):
    booking_id: int
    invoice_id: int
    invoice_number: str
    invoice_status: InvoiceStatus
    total_amount: Decimal
    applied_aircraft_delta: Decimal
    aircraft_total_time_in_service: Decimal
    debrief_saved: bool = False


class CheckinCorrectionResult(BaseModel):
    booking_id: int
    old_applied_delta: Decimal
    new_applied_delta: Decimal
    correction_delta: Decimal
    aircraft_total_time_in_service: Decimal
