"""
Provider availability: validating windows before they are stored, answering "which slots are still open"
for a date, and cancelling bookings that a schedule change has made invalid.
"""
import calendar
from datetime import date, time
import logging
from typing import Dict, List, Tuple

from . import notifications
from .booking_utils import (DEFAULT_TIMEZONE, MINUTES_PER_DAY, clinic_now, filter_past_slots, format_date,
                            format_time, generate_slots, invalidation_reason, minutes_to_time, parse_date, parse_time,
                            time_to_minutes)
from .error_utils import Forbidden, NotFound, ValidationError
from .models import (DEFAULT_SLOT_DURATION_MINUTES, AvailabilityWindow, Booking, BookingStatus, Requester,
                     ScheduleUpdate)

logger = logging.getLogger(__name__)


def _parse_provider_id(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("providerId must be an integer", "providerId")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("providerId must be an integer", "providerId")


def _parse_duration(value) -> int:
    if value is None:
        return DEFAULT_SLOT_DURATION_MINUTES
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("slotDurationMinutes must be a whole number of minutes", "slotDurationMinutes")
    if value <= 0 or value >= MINUTES_PER_DAY:
        raise ValidationError("slotDurationMinutes must be between 1 and 1439", "slotDurationMinutes")
    return value


def _parse_explicit_slots(values) -> List[time]:
    if not isinstance(values, list):
        raise ValidationError("explicitSlots must be a list of HH:MM times", "explicitSlots")
    slots = [parse_time(value, f"explicitSlots[{index}]") for index, value in enumerate(values)]
    if len(set(slots)) != len(slots):
        raise ValidationError("explicitSlots contains duplicate times", "explicitSlots")
    for earlier, later in zip(slots, slots[1:]):
        if later <= earlier:
            raise ValidationError("explicitSlots must be in ascending time order", "explicitSlots")
    return slots


def validate_availability(payload: Dict, today: date) -> AvailabilityWindow:
    """
    Checks an availability write and builds the window to persist. Nothing is stored here.

    Args:
        payload: request body with providerId, date and any of startTime, endTime,
            slotDurationMinutes, isRestDay, explicitSlots
        today: clinic-local date; windows may only target today or later

    Returns: AvailabilityWindow in canonical form. Rest days carry no times, and an explicit slot
        list always comes with a start/end that encloses it.

    Raises: ValidationError naming the offending field.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    if payload.get("providerId") in (None, ""):
        raise ValidationError("providerId is required", "providerId")
    if payload.get("date") in (None, ""):
        raise ValidationError("date is required", "date")

    provider_id = _parse_provider_id(payload["providerId"])
    schedule_date = parse_date(payload["date"])
    if schedule_date < today:
        raise ValidationError("date cannot be in the past", "date")

    duration = _parse_duration(payload.get("slotDurationMinutes"))
    is_rest_day = payload.get("isRestDay", False)
    if not isinstance(is_rest_day, bool):
        raise ValidationError("isRestDay must be true or false", "isRestDay")

    raw_slots = payload.get("explicitSlots")
    explicit_slots = _parse_explicit_slots(raw_slots) if raw_slots is not None else []

    if is_rest_day:
        if explicit_slots:
            raise ValidationError("A rest day cannot have explicit slots", "explicitSlots")
        return AvailabilityWindow(provider_id=provider_id, schedule_date=schedule_date,
                                  slot_duration_minutes=duration, is_rest_day=True)

    start_time = parse_time(payload["startTime"], "startTime") if payload.get("startTime") else None
    end_time = parse_time(payload["endTime"], "endTime") if payload.get("endTime") else None

    if explicit_slots:
        first_minutes = time_to_minutes(explicit_slots[0])
        last_end_minutes = time_to_minutes(explicit_slots[-1]) + duration
        if last_end_minutes >= MINUTES_PER_DAY:
            raise ValidationError("The last explicit slot must finish before midnight", "explicitSlots")
        if start_time is None:
            start_time = explicit_slots[0]
        elif time_to_minutes(start_time) > first_minutes:
            raise ValidationError("startTime must not be later than the first explicit slot", "startTime")
        if end_time is None:
            end_time = minutes_to_time(last_end_minutes)
        elif time_to_minutes(end_time) < last_end_minutes:
            raise ValidationError("endTime must leave room for the last explicit slot", "endTime")
        return AvailabilityWindow(provider_id=provider_id, schedule_date=schedule_date, start_time=start_time,
                                  end_time=end_time, slot_duration_minutes=duration, explicit_slots=explicit_slots)

    if start_time is None:
        raise ValidationError("startTime is required unless the day is a rest day", "startTime")
    if end_time is None:
        raise ValidationError("endTime is required unless the day is a rest day", "endTime")
    if start_time >= end_time:
        raise ValidationError("startTime must be earlier than endTime", "startTime")
    if time_to_minutes(end_time) - time_to_minutes(start_time) < duration:
        raise ValidationError("The window is shorter than one slot", "endTime")
    return AvailabilityWindow(provider_id=provider_id, schedule_date=schedule_date, start_time=start_time,
                              end_time=end_time, slot_duration_minutes=duration)


class ScheduleService:
    """Schedule reads and writes for one request, on top of a persistence object."""

    def __init__(self, db, notifier=None, timezone: str = DEFAULT_TIMEZONE, clock=None):
        self.db = db
        self.notifier = notifier
        self.timezone = timezone
        self._clock = clock or (lambda: clinic_now(self.timezone))

    def now(self):
        return self._clock()

    def _require_provider(self, provider_id: int) -> Dict:
        provider = self.db.get_user(provider_id)
        if not provider or provider.get("role") != "provider":
            raise NotFound("Provider does not exist", "providerId")
        return provider

    @staticmethod
    def _authorize_write(requester: Requester, provider_id: int):
        if requester.is_admin:
            return
        if requester.is_provider and requester.id == provider_id:
            return
        if requester.is_provider:
            raise Forbidden("Providers may only change their own schedule")
        raise Forbidden("Only providers or admins may change schedules")

    def save_window(self, payload: Dict, requester: Requester) -> ScheduleUpdate:
        """
        Create-or-replace a provider's window for one date, then reconcile bookings on that date.
        Bookings that could not be cancelled are reported as warnings; the new window stays in place regardless.
        """
        if requester.is_patient:
            raise Forbidden("Only providers or admins may change schedules")
        window = validate_availability(payload, self.now().date())
        self._require_provider(window.provider_id)
        self._authorize_write(requester, window.provider_id)

        stored = self.db.upsert_window(window)
        logger.info("Availability for provider %s on %s saved", stored.provider_id, format_date(stored.schedule_date))
        cancelled, warnings = self.reconcile_bookings(stored)
        return ScheduleUpdate(window=stored, cancelled=cancelled, warnings=warnings)

    def reconcile_bookings(self, window: AvailabilityWindow) -> Tuple[List[Booking], List[str]]:
        """
        Cancels every non-cancelled booking on the window's date that the window no longer allows.
        Each cancellation is its own write; failures are collected rather than raised.

        Returns: (bookings that were cancelled, warning messages for the ones that could not be)
        """
        cancelled, warnings = [], []
        try:
            bookings = self.db.list_active_bookings(window.provider_id, window.schedule_date)
        except Exception as e:
            logger.exception("Could not load bookings for provider %s on %s", window.provider_id, window.schedule_date)
            return cancelled, [f"Bookings for {format_date(window.schedule_date)} could not be checked: {e}"]

        for booking in bookings:
            reason = invalidation_reason(window, booking.booking_time)
            if reason is None:
                continue
            if not self.db.cancel_booking(booking.id, reason):
                message = f"Booking {booking.id} at {format_time(booking.booking_time)} could not be cancelled ({reason})"
                logger.error(message)
                warnings.append(message)
                continue
            booking.status = BookingStatus.CANCELLED
            booking.cancellation_reason = reason
            cancelled.append(booking)
            notifications.notify_user(self.db, self.notifier, booking.subject_id, "booking_cancelled_by_schedule",
                                      {"booking": booking.to_dict(), "reason": reason})

        if cancelled:
            logger.info("Cancelled %s booking(s) for provider %s on %s", len(cancelled), window.provider_id,
                        format_date(window.schedule_date))
        if warnings:
            logger.warning("%s cancellation(s) failed for provider %s on %s", len(warnings), window.provider_id,
                           format_date(window.schedule_date))
        return cancelled, warnings

    def available_slots(self, provider_id, date_value) -> Dict:
        """
        Open slot times for one provider and date, earliest first.

        Slots come from the window, minus times already held by a non-cancelled booking, minus times
        that have already started when the date is today. Past dates have no open slots.
        """
        provider_id = _parse_provider_id(provider_id)
        target_date = parse_date(date_value)
        window = self.db.get_window(provider_id, target_date)
        if window is None:
            raise NotFound("No availability has been published for that date", "date")

        explicit = [format_time(slot) for slot in window.explicit_slots] if window.explicit_slots else None
        result = {
            "providerId": provider_id,
            "date": format_date(target_date),
            "isRestDay": window.is_rest_day,
            "explicitSlots": explicit,
            "availableSlots": [],
        }
        if window.is_rest_day:
            return result

        booked = {booking.booking_time for booking in self.db.list_active_bookings(provider_id, target_date)}
        candidates = [slot for slot in generate_slots(window) if slot not in booked]
        open_slots = filter_past_slots(candidates, target_date, self.now())
        result["availableSlots"] = [format_time(slot) for slot in sorted(open_slots)]
        return result

    def list_provider_schedule(self, provider_id, start_date=None, end_date=None) -> List[AvailabilityWindow]:
        provider_id = _parse_provider_id(provider_id)
        start = parse_date(start_date, "startDate") if start_date else None
        end = parse_date(end_date, "endDate") if end_date else None
        if start and end and start > end:
            raise ValidationError("startDate must not be after endDate", "startDate")
        self._require_provider(provider_id)
        return self.db.list_windows(provider_id=provider_id, start_date=start, end_date=end)

    def schedules_for_month(self, year, month, requester: Requester, provider_id=None) -> List[AvailabilityWindow]:
        """
        Every window in a calendar month. Providers asking without a filter only see their own.
        """
        try:
            year, month = int(year), int(month)
        except (TypeError, ValueError):
            raise ValidationError("year and month must be numbers", "month")
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12", "month")
        if not 1 <= year <= 9999:
            raise ValidationError("year is out of range", "year")

        if provider_id not in (None, ""):
            provider_id = _parse_provider_id(provider_id)
        elif requester.is_provider:
            provider_id = requester.id
        else:
            provider_id = None

        last_day = calendar.monthrange(year, month)[1]
        return self.db.list_windows(provider_id=provider_id, start_date=date(year, month, 1),
                                    end_date=date(year, month, last_day))

    def delete_window(self, provider_id, date_value, requester: Requester) -> None:
        """Blocked with Conflict while the date still has non-cancelled bookings."""
        provider_id = _parse_provider_id(provider_id)
        target_date = parse_date(date_value)
        if requester.is_patient:
            raise Forbidden("Only providers or admins may delete schedules")
        self._authorize_write(requester, provider_id)
        self.db.delete_window(provider_id, target_date)
        logger.info("Availability for provider %s on %s deleted", provider_id, format_date(target_date))
