"""
Booking and aircraft enumerations.
"""

import enum
from decimal import Decimal


class BookingType(str, enum.Enum):
    FLIGHT = "flight"
    GROUNDWORK = "groundwork"
    MAINTENANCE = "maintenance"
    OTHER = "other"


class BookingStatus(str, enum.Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"
    BRIEFING = "briefing"
    FLYING = "flying"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class BillingBasis(str, enum.Enum):
    """Meter the flight is billed against."""
    HOBBS = "hobbs"
    TACHO = "tacho"
    AIRSWITCH = "airswitch"


class TotalTimeMethod(str, enum.Enum):
    """
    How an aircraft's total time in service advances per flight.

    Each method names the meter it reads and the fraction of that meter's
    elapsed time that counts towards TTIS.
    """
    HOBBS = "hobbs"
    TACHO = "tacho"
    AIRSWITCH = "airswitch"
    HOBBS_LESS_5 = "hobbs less 5%"
    HOBBS_LESS_10 = "hobbs less 10%"
    TACHO_LESS_5 = "tacho less 5%"
    TACHO_LESS_10 = "tacho less 10%"

    @property
    def meter(self) -> str:
        """Meter whose delta drives this method. Airswitch time is read off the hobbs delta."""
        if self in (TotalTimeMethod.TACHO, TotalTimeMethod.TACHO_LESS_5, TotalTimeMethod.TACHO_LESS_10):
            return "tach"
        return "hobbs"

    @property
    def factor(self) -> Decimal:
        if self in (TotalTimeMethod.HOBBS_LESS_5, TotalTimeMethod.TACHO_LESS_5):
            return Decimal("0.95")
        if self in (TotalTimeMethod.HOBBS_LESS_10, TotalTimeMethod.TACHO_LESS_10):
            return Decimal("0.90")
        return Decimal("1")


class LessonOutcome(str, enum.Enum):
    PASS = "pass"
    NOT_YET_COMPETENT = "not yet competent"
