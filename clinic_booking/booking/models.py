# Record types shared by the scheduling and booking engine
from dataclasses import dataclass, field
from datetime import date, time
from typing import Dict, List, Optional

from .booking_utils import format_date, format_time

ROLES = ("patient", "provider", "admin")

DEFAULT_SLOT_DURATION_MINUTES = 30


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (PENDING, CONFIRMED, COMPLETED, CANCELLED)
    TERMINAL = (COMPLETED, CANCELLED)


@dataclass
class Requester:
    """
    Identity of whoever is making the request, as handed over by the external auth layer.
    """
    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_provider(self) -> bool:
        return self.role == "provider"

    @property
    def is_patient(self) -> bool:
        return self.role == "patient"


@dataclass
class AvailabilityWindow:
    """
    A provider's slot definition for one calendar date. Either a rest day, an explicit list of
    slot start times, or a start/end pair stepped by slot_duration_minutes.
    """
    provider_id: int
    schedule_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    slot_duration_minutes: int = DEFAULT_SLOT_DURATION_MINUTES
    is_rest_day: bool = False
    explicit_slots: Optional[List[time]] = None
    id: Optional[int] = None

    @property
    def has_explicit_slots(self) -> bool:
        return bool(self.explicit_slots)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "providerId": self.provider_id,
            "date": format_date(self.schedule_date),
            "startTime": format_time(self.start_time) if self.start_time else None,
            "endTime": format_time(self.end_time) if self.end_time else None,
            "slotDurationMinutes": self.slot_duration_minutes,
            "isRestDay": self.is_rest_day,
            "explicitSlots": [format_time(slot) for slot in self.explicit_slots] if self.explicit_slots else None,
        }


@dataclass
class Booking:
    provider_id: int
    subject_id: int
    booker_id: int
    booking_date: date
    booking_time: time
    status: str = BookingStatus.CONFIRMED
    is_first_visit: bool = False
    notes: str = ""
    subject_details: Optional[Dict[str, str]] = None
    cancellation_reason: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status != BookingStatus.CANCELLED

    def involves(self, user_id: int) -> bool:
        """True if the user is the attendee or the one who made the booking."""
        return user_id in (self.subject_id, self.booker_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "providerId": self.provider_id,
            "subjectId": self.subject_id,
            "bookerId": self.booker_id,
            "date": format_date(self.booking_date),
            "time": format_time(self.booking_time),
            "status": self.status,
            "isFirstVisit": self.is_first_visit,
            "notes": self.notes,
            "subjectDetails": self.subject_details,
            "cancellationReason": self.cancellation_reason,
        }


@dataclass
class ScheduleUpdate:
    """Outcome of an availability write: the stored window plus what the cascade did."""
    window: AvailabilityWindow
    cancelled: List[Booking] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "schedule": self.window.to_dict(),
            "cancelledBookings": [booking.to_dict() for booking in self.cancelled],
            "warnings": list(self.warnings),
        }
