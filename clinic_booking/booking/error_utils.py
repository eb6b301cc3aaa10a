# Custom exceptions to be used throughout the project.

class BookingError(Exception):
    """
    Base class for every error the scheduling and booking engine raises on purpose.
    Carries a human readable message and, where one applies, the name of the offending input field.
    """
    # By default Exception class takes a tuple of arguments
    def __init__(self, message, field=None, *args):
        super().__init__(message, *args)
        self.message = message
        self.field = field

    def to_dict(self):
        body = {"error": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(BookingError):
    """
    To be raised when a date, time or availability field is malformed or inconsistent.
    May be raised under the following circumstances:
        1. Date is not ISO format (YYYY-MM-DD) or is in the past
        2. Time is not HH:MM or explicit slots are unordered / duplicated
        3. Start and end times do not leave room for at least one slot
        4. An unrecognized booking status was requested
    """


class NotFound(BookingError):
    """Missing provider, subject, availability window or booking."""


class Conflict(BookingError):
    """
    Double booking, or deleting an availability window that still has non-cancelled bookings.
    """
    def __init__(self, message, field=None, count=None):
        super().__init__(message, field)
        self.count = count

    def to_dict(self):
        body = super().to_dict()
        if self.count is not None:
            body["count"] = self.count
        return body


class Forbidden(BookingError):
    """Role or ownership violation."""
