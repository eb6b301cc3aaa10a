"""
Booking creation with double-booking protection, and the status machine that governs a booking afterwards.
"""
import logging
from typing import Dict, List

from . import notifications
from .booking_utils import (DEFAULT_TIMEZONE, clinic_now, format_date, format_time, is_past_date_time, parse_date,
                            parse_time, sanitize_notes, sanitize_subject_details)
from .error_utils import Forbidden, NotFound, ValidationError
from .models import Booking, BookingStatus, Requester

logger = logging.getLogger(__name__)

# Legal moves regardless of who asks. Completed and cancelled are terminal.
ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.PENDING, BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

PROVIDER_TARGETS = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED}
PARTICIPANT_TARGETS = {BookingStatus.CANCELLED}


def _parse_id(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field)


def parse_status(value) -> str:
    if not isinstance(value, str) or value not in BookingStatus.ALL:
        raise ValidationError(f"status must be one of {', '.join(BookingStatus.ALL)}", "status")
    return value


def check_transition(booking: Booking, new_status: str, requester: Requester) -> None:
    """
    Raises unless requester may move booking to new_status.

    Admins may make any legal move. Providers may move their own bookings to confirmed, completed or
    cancelled. The attendee or whoever booked may only cancel.
    """
    new_status = parse_status(new_status)

    if requester.is_admin:
        pass
    elif requester.is_provider:
        if booking.provider_id != requester.id:
            raise Forbidden("Providers may only update their own bookings")
        if new_status not in PROVIDER_TARGETS:
            raise Forbidden(f"Providers may not move a booking to {new_status}")
    elif requester.is_patient:
        if not booking.involves(requester.id):
            raise Forbidden("You may only update your own bookings")
        if new_status not in PARTICIPANT_TARGETS:
            raise Forbidden("You may only cancel your booking")
    else:
        raise Forbidden("Unknown role")

    if booking.status in BookingStatus.TERMINAL:
        raise ValidationError(f"A {booking.status} booking can no longer change status", "status")
    if new_status not in ALLOWED_TRANSITIONS[booking.status]:
        raise ValidationError(f"A {booking.status} booking cannot be moved to {new_status}", "status")


class AppointmentService:
    """Booking reads and writes for one request, on top of a persistence object."""

    def __init__(self, db, notifier=None, timezone: str = DEFAULT_TIMEZONE, clock=None):
        self.db = db
        self.notifier = notifier
        self.timezone = timezone
        self._clock = clock or (lambda: clinic_now(self.timezone))

    def now(self):
        return self._clock()

    def create_booking(self, payload: Dict, requester: Requester) -> Booking:
        """
        Books one provider slot for a subject.

        Checks run in order: input format, provider exists, requester may book for this subject,
        subject exists, the published window offers the time, slot is free. The last two checks and the
        insert share one transaction in the persistence layer, so of two racing requests for the same
        slot one gets Conflict.

        Returns: the stored booking, status confirmed.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        for field in ("providerId", "subjectId", "date", "time"):
            if payload.get(field) in (None, ""):
                raise ValidationError(f"{field} is required", field)

        provider_id = _parse_id(payload["providerId"], "providerId")
        subject_id = _parse_id(payload["subjectId"], "subjectId")
        booker_id = _parse_id(payload["bookerId"], "bookerId") if payload.get("bookerId") not in (None, "") else requester.id
        booking_date = parse_date(payload["date"])
        booking_time = parse_time(payload["time"])
        now = self.now()
        if is_past_date_time(booking_date, booking_time, now):
            raise ValidationError("Cannot book a time in the past", "time")

        is_first_visit = payload.get("isFirstVisit", False)
        if not isinstance(is_first_visit, bool):
            raise ValidationError("isFirstVisit must be true or false", "isFirstVisit")
        notes = sanitize_notes(payload.get("notes"))
        subject_details = sanitize_subject_details(payload.get("subjectDetails"), now.date())

        provider = self.db.get_user(provider_id)
        if not provider or provider.get("role") != "provider":
            raise NotFound("Provider does not exist", "providerId")

        if requester.is_patient:
            if booker_id != requester.id:
                raise Forbidden("Patients may only book as themselves")
            if subject_id != requester.id:
                raise Forbidden("Patients may only book appointments for themselves")
        elif not (requester.is_provider or requester.is_admin):
            raise Forbidden("Unknown role")

        if self.db.get_user(subject_id) is None:
            raise NotFound("Subject does not exist", "subjectId")
        if booker_id != requester.id and self.db.get_user(booker_id) is None:
            raise NotFound("Booker does not exist", "bookerId")

        booking = Booking(provider_id=provider_id, subject_id=subject_id, booker_id=booker_id,
                          booking_date=booking_date, booking_time=booking_time, status=BookingStatus.CONFIRMED,
                          is_first_visit=is_first_visit, notes=notes, subject_details=subject_details)
        stored = self.db.create_booking(booking)
        logger.info("Booking %s created for provider %s on %s at %s", stored.id, provider_id,
                    format_date(booking_date), format_time(booking_time))

        payload = {"booking": stored.to_dict()}
        notifications.notify_user(self.db, self.notifier, provider_id, "booking_created", payload)
        if subject_id != provider_id:
            notifications.notify_user(self.db, self.notifier, subject_id, "booking_created", payload)
        return stored

    def _load(self, booking_id: int) -> Booking:
        booking = self.db.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking not found", "id")
        return booking

    def get_booking(self, booking_id: int, requester: Requester) -> Booking:
        booking = self._load(booking_id)
        if requester.is_admin:
            return booking
        if requester.is_provider and booking.provider_id == requester.id:
            return booking
        if requester.is_patient and booking.involves(requester.id):
            return booking
        raise Forbidden("You may not view this booking")

    def list_bookings(self, requester: Requester, provider_id=None, subject_id=None, status=None,
                      date_value=None) -> List[Booking]:
        """
        Bookings visible to the requester, newest date first. Patients only ever see bookings they attend
        or made, providers only their own calendar; admins may filter by provider and subject.
        """
        status = parse_status(status) if status not in (None, "") else None
        booking_date = parse_date(date_value) if date_value not in (None, "") else None
        subject_id = _parse_id(subject_id, "subjectId") if subject_id not in (None, "") else None
        provider_id = _parse_id(provider_id, "providerId") if provider_id not in (None, "") else None

        if requester.is_patient:
            return self.db.list_bookings(participant_id=requester.id, status=status, booking_date=booking_date)
        if requester.is_provider:
            return self.db.list_bookings(provider_id=requester.id, subject_id=subject_id, status=status,
                                         booking_date=booking_date)
        if requester.is_admin:
            return self.db.list_bookings(provider_id=provider_id, subject_id=subject_id, status=status,
                                         booking_date=booking_date)
        raise Forbidden("Unknown role")

    def my_bookings(self, requester: Requester) -> List[Booking]:
        if requester.is_provider:
            return self.db.list_bookings(provider_id=requester.id)
        if requester.is_patient:
            return self.db.list_bookings(participant_id=requester.id)
        raise Forbidden("Only providers and patients have their own bookings")

    def change_status(self, booking_id: int, new_status, requester: Requester) -> Booking:
        booking = self._load(booking_id)
        check_transition(booking, new_status, requester)
        updated = self.db.update_booking_status(booking.id, booking.status, new_status)
        logger.info("Booking %s moved from %s to %s by user %s", booking.id, booking.status, new_status, requester.id)

        payload = {"booking": updated.to_dict(), "previousStatus": booking.status}
        for user_id in {updated.provider_id, updated.subject_id} - {requester.id}:
            notifications.notify_user(self.db, self.notifier, user_id, "booking_status_changed", payload)
        return updated

    def cancel_booking(self, booking_id: int, requester: Requester) -> Booking:
        return self.change_status(booking_id, BookingStatus.CANCELLED, requester)

    def delete_booking(self, booking_id: int, requester: Requester) -> None:
        """Only an admin or the booking's own provider may delete it."""
        booking = self._load(booking_id)
        if not (requester.is_admin or (requester.is_provider and booking.provider_id == requester.id)):
            raise Forbidden("Only an admin or the booking's provider may delete it")
        self.db.delete_booking(booking.id)
        logger.info("Booking %s deleted by user %s", booking.id, requester.id)
