# Utility functions for scheduling and booking functionality
import re
from datetime import date, datetime, time
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import phonenumbers
from email_validator import EmailNotValidError, validate_email

from .error_utils import ValidationError

DEFAULT_TIMEZONE = "Asia/Taipei"

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
# 24 hour clock, hour may be given with one digit ("9:00") and is normalized on output
TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):([0-5][0-9])$')

MINUTES_PER_DAY = 24 * 60

SUBJECT_DETAIL_KEYS = ("name", "phone", "email", "gender", "birthDate")
GENDERS = ("male", "female", "other")

MAX_NOTES_LENGTH = 1000
MAX_PHONE_LENGTH = 50
MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 200

# Why a booking no longer fits its provider's window
REASON_PROVIDER_UNAVAILABLE = "provider unavailable"
REASON_SLOT_REMOVED = "schedule slot removed"
REASON_HOURS_CHANGED = "schedule hours changed"


def parse_date(value, field: str = "date") -> date:
    """
    Converts an ISO date string (YYYY-MM-DD) into a date object.

    Raises ValidationError naming *field* if the text is not a real calendar date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise ValidationError(f"{field} must be formatted as YYYY-MM-DD", field)
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} is not a valid calendar date", field)


def parse_time(value, field: str = "time") -> time:
    """Converts "HH:MM" text into a time object, rejecting anything else."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be formatted as HH:MM", field)
    match = TIME_PATTERN.match(value.strip())
    if not match:
        raise ValidationError(f"{field} must be formatted as HH:MM", field)
    return time(int(match.group(1)), int(match.group(2)))


def format_date(value: date) -> str:
    return value.isoformat()


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def get_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}", "timezone")


def clinic_now(timezone: Optional[str] = None) -> datetime:
    """Current wall-clock time in the clinic's timezone."""
    return datetime.now(get_timezone(timezone))


def generate_slots(window) -> List[time]:
    """
    Slot generator for a single availability window.

    Rest days have no slots. An explicit slot list is returned as-is since it was ordered and
    de-duplicated when the window was validated. Otherwise slots are stepped from start_time by
    slot_duration_minutes, stopping strictly before end_time.

    Returns: a new list of time objects each call, so callers are free to filter it.
    """
    if window.is_rest_day:
        return []
    if window.explicit_slots:
        return list(window.explicit_slots)
    if window.start_time is None or window.end_time is None:
        return []

    begin_minutes = time_to_minutes(window.start_time)
    end_minutes = time_to_minutes(window.end_time)
    step = window.slot_duration_minutes

    return [minutes_to_time(minutes) for minutes in range(begin_minutes, end_minutes, step)]


def invalidation_reason(window, booked_time: time) -> Optional[str]:
    """
    Why a booking at booked_time does not fit the window, or None if it does.
    A time inside the start/end range fits even when it is off the slot grid.
    """
    if window.is_rest_day:
        return REASON_PROVIDER_UNAVAILABLE
    if window.explicit_slots:
        if booked_time not in window.explicit_slots:
            return REASON_SLOT_REMOVED
        return None
    if window.start_time is None or window.end_time is None:
        return REASON_HOURS_CHANGED
    if not (window.start_time <= booked_time < window.end_time):
        return REASON_HOURS_CHANGED
    return None


def check_window_fit(window, booked_time: time) -> None:
    """Raises ValidationError unless a new booking at booked_time would survive the window as published."""
    reason = invalidation_reason(window, booked_time)
    if reason == REASON_PROVIDER_UNAVAILABLE:
        raise ValidationError("The provider is not available on that date", "date")
    if reason is not None:
        raise ValidationError("That time is not offered by the provider's schedule", "time")


def filter_past_slots(slots: List[time], target_date: date, now: datetime) -> List[time]:
    """
    Drops slots that have already started relative to *now* (clinic-local).
    Past dates have nothing left, future dates keep every slot, and today keeps only slots strictly after the current time.
    """
    today = now.date()
    if target_date < today:
        return []
    if target_date > today:
        return list(slots)
    current = now.time()
    return [slot for slot in slots if slot > current]


def is_past_date_time(target_date: date, target_time: time, now: datetime) -> bool:
    # A time that starts in the current minute has already gone, same as in filter_past_slots
    current_minute = now.replace(tzinfo=None, second=0, microsecond=0)
    return datetime.combine(target_date, target_time) <= current_minute


def sanitize_phone(phone: str) -> str:
    # Step 1: Remove any leading or trailing whitespace.
    phone = phone.strip()

    # Step 2: Ensure the input does not exceed the allowed length.
    if len(phone) > MAX_PHONE_LENGTH:
        raise ValidationError("Phone number input is too long", "subjectDetails.phone")

    # Step 3: Only an optional leading '+', digits, spaces, hyphens, and parentheses are allowed.
    allowed_pattern = re.compile(r'^\+?[0-9\-\(\)\s]+$')
    if not allowed_pattern.fullmatch(phone):
        raise ValidationError("Phone contains disallowed characters", "subjectDetails.phone")

    # Step 4: Parse with phonenumbers. Numbers without an international prefix are read as local to the clinic's region.
    try:
        if phone.startswith('+'):
            parsed_phone = phonenumbers.parse(phone, None)
        else:
            parsed_phone = phonenumbers.parse(phone, 'TW')
    except phonenumbers.NumberParseException:
        raise ValidationError("Invalid phone number format", "subjectDetails.phone")

    if not phonenumbers.is_possible_number(parsed_phone) or not phonenumbers.is_valid_number(parsed_phone):
        raise ValidationError("Phone number is not valid", "subjectDetails.phone")

    # Step 5: Canonical E.164 format for storage.
    return phonenumbers.format_number(parsed_phone, phonenumbers.PhoneNumberFormat.E164)


def sanitize_email(email: str) -> str:
    email = email.strip()
    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("Email input is too long", "subjectDetails.email")
    try:
        # Deliverability needs DNS, which the booking path must not wait on
        valid = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email format: {str(e)}", "subjectDetails.email")
    return valid.normalized


def sanitize_notes(notes: Optional[str]) -> str:
    """
    Trims booking notes, enforces a maximum length and rejects control characters other than tab, LF and CR.
    """
    if notes is None:
        return ""
    if not isinstance(notes, str):
        raise ValidationError("notes must be text", "notes")
    notes = notes.strip()
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes is too long. Max {MAX_NOTES_LENGTH} characters.", "notes")
    allowed_control_codes = {9, 10, 13}
    for ch in notes:
        if ord(ch) < 32 and ord(ch) not in allowed_control_codes:
            raise ValidationError("notes contains disallowed characters", "notes")
    return notes


def sanitize_subject_details(details: Optional[Dict], today: date) -> Optional[Dict[str, str]]:
    """
    Validates the structured record describing who actually attends an appointment.

    Returns: a new dict holding only the provided keys, with phone in E.164 and a normalized email, or None when nothing was given.
    """
    if details is None or details == {}:
        return None
    if not isinstance(details, dict):
        raise ValidationError("subjectDetails must be an object", "subjectDetails")

    unknown = sorted(set(details) - set(SUBJECT_DETAIL_KEYS))
    if unknown:
        raise ValidationError(f"Unknown subjectDetails fields: {', '.join(unknown)}", "subjectDetails")

    clean = {}
    for key, value in details.items():
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise ValidationError(f"subjectDetails.{key} must be text", f"subjectDetails.{key}")
        if key == "name":
            value = value.strip()
            if len(value) > MAX_NAME_LENGTH:
                raise ValidationError("Name is too long", "subjectDetails.name")
            clean[key] = value
        elif key == "phone":
            clean[key] = sanitize_phone(value)
        elif key == "email":
            clean[key] = sanitize_email(value)
        elif key == "gender":
            if value not in GENDERS:
                raise ValidationError(f"gender must be one of {', '.join(GENDERS)}", "subjectDetails.gender")
            clean[key] = value
        elif key == "birthDate":
            birth_date = parse_date(value, "subjectDetails.birthDate")
            if birth_date > today:
                raise ValidationError("birthDate cannot be in the future", "subjectDetails.birthDate")
            clean[key] = format_date(birth_date)
    return clean or None
