from contextlib import contextmanager
from datetime import date
import logging
import os
from typing import Dict, List, Optional

import psycopg2
from psycopg2 import errors
from psycopg2.extras import DictCursor, Json

from .booking_utils import check_window_fit, format_time, parse_time
from .error_utils import Conflict, NotFound
from .models import AvailabilityWindow, Booking

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Statements are idempotent so the schema can be applied on every start-up.
SCHEMA_STATEMENTS = (
    """CREATE TABLE IF NOT EXISTS schema_version (
        version integer PRIMARY KEY,
        applied_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL
    );""",
    """CREATE TABLE IF NOT EXISTS users (
        id serial PRIMARY KEY,
        name text NOT NULL,
        email text,
        phone text,
        role text NOT NULL CHECK (role IN ('patient', 'provider', 'admin'))
    );""",
    """CREATE TABLE IF NOT EXISTS availability_windows (
        id serial PRIMARY KEY,
        provider_id integer NOT NULL REFERENCES users (id),
        schedule_date date NOT NULL,
        start_time time,
        end_time time,
        slot_duration_minutes integer NOT NULL DEFAULT 30 CHECK (slot_duration_minutes > 0),
        is_rest_day boolean NOT NULL DEFAULT false,
        explicit_slots jsonb,
        created_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL,
        updated_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL,
        UNIQUE (provider_id, schedule_date)
    );""",
    """CREATE TABLE IF NOT EXISTS bookings (
        id serial PRIMARY KEY,
        provider_id integer NOT NULL REFERENCES users (id),
        subject_id integer NOT NULL REFERENCES users (id),
        booker_id integer NOT NULL REFERENCES users (id),
        booking_date date NOT NULL,
        booking_time time NOT NULL,
        status text NOT NULL DEFAULT 'confirmed'
            CHECK (status IN ('pending', 'confirmed', 'completed', 'cancelled')),
        is_first_visit boolean NOT NULL DEFAULT false,
        notes text NOT NULL DEFAULT '',
        subject_details jsonb,
        cancellation_reason text,
        created_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL,
        updated_at timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL
    );""",
    # At most one non-cancelled booking per provider, date and time.
    """CREATE UNIQUE INDEX IF NOT EXISTS bookings_one_active_per_slot
        ON bookings (provider_id, booking_date, booking_time)
        WHERE status <> 'cancelled';""",
    """CREATE INDEX IF NOT EXISTS bookings_provider_date
        ON bookings (provider_id, booking_date);""",
)

BOOKING_COLUMNS = """id, provider_id, subject_id, booker_id, booking_date, booking_time, status,
    is_first_visit, notes, subject_details, cancellation_reason"""

WINDOW_COLUMNS = """id, provider_id, schedule_date, start_time, end_time, slot_duration_minutes,
    is_rest_day, explicit_slots"""


class DatabasePersistence:
    # DSNs whose schema has already been applied by this process
    _schema_ready = set()

    def __init__(self, dsn: Optional[str] = None):
        self._dsn = dsn or self._find_dsn()
        if self._dsn not in DatabasePersistence._schema_ready:
            self._setup_schema()
            DatabasePersistence._schema_ready.add(self._dsn)

    @staticmethod
    def _find_dsn() -> str:
        """
        Must include environment variable for database url path when deploying to production.
        """
        if os.environ.get('FLASK_ENV') == 'production':
            return os.environ['DATABASE_URL']
        return os.environ.get('DATABASE_URL', 'dbname=clinic_booking')

    @contextmanager
    def _database_connect(self):
        """
        Internal function to manage the Postgres database connections.
        Each use is one transaction: committed when the block exits cleanly, rolled back if it raises.
        """
        connection = psycopg2.connect(self._dsn)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def _setup_schema(self):
        """
        Applies the versioned schema. The schema is fixed at build time so no column probing happens here.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
                cursor.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version")
                current_version = cursor.fetchone()[0]
                if current_version > SCHEMA_VERSION:
                    raise RuntimeError(f"Database schema version {current_version} is newer than supported version {SCHEMA_VERSION}")
                if current_version < SCHEMA_VERSION:
                    logger.info("Recording schema version %s", SCHEMA_VERSION)
                    cursor.execute("INSERT INTO schema_version (version) VALUES (%s) ON CONFLICT DO NOTHING", (SCHEMA_VERSION,))

    # Users

    def get_user(self, user_id: int) -> Optional[Dict]:
        query = "SELECT id, name, email, phone, role FROM users WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (user_id,))
                row = cursor.fetchone()
        return dict(row) if row else None

    def add_user(self, name: str, role: str, email: Optional[str] = None, phone: Optional[str] = None) -> Dict:
        """Seeds a user record. Account management itself lives outside the engine."""
        query = "INSERT INTO users (name, role, email, phone) VALUES (%s, %s, %s, %s) RETURNING id, name, email, phone, role"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (name, role, email, phone))
                row = cursor.fetchone()
        return dict(row)

    # Availability windows

    def get_window(self, provider_id: int, schedule_date: date) -> Optional[AvailabilityWindow]:
        query = f"SELECT {WINDOW_COLUMNS} FROM availability_windows WHERE provider_id = %s AND schedule_date = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (provider_id, schedule_date))
                row = cursor.fetchone()
        return self._row_to_window(row) if row else None

    def list_windows(self, provider_id: Optional[int] = None, start_date: Optional[date] = None,
                     end_date: Optional[date] = None) -> List[AvailabilityWindow]:
        """Windows ordered by date, optionally narrowed to one provider and an inclusive date range."""
        clauses, params = [], []
        if provider_id is not None:
            clauses.append("provider_id = %s")
            params.append(provider_id)
        if start_date is not None:
            clauses.append("schedule_date >= %s")
            params.append(start_date)
        if end_date is not None:
            clauses.append("schedule_date <= %s")
            params.append(end_date)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT {WINDOW_COLUMNS} FROM availability_windows{where} ORDER BY schedule_date ASC, provider_id ASC"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
        return [self._row_to_window(row) for row in rows]

    def upsert_window(self, window: AvailabilityWindow) -> AvailabilityWindow:
        """
        Creates or replaces the window for (provider_id, schedule_date). The unique constraint on that pair is the arbiter.
        """
        query = f"""INSERT INTO availability_windows
                        (provider_id, schedule_date, start_time, end_time, slot_duration_minutes, is_rest_day, explicit_slots)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider_id, schedule_date) DO UPDATE SET
                        start_time = EXCLUDED.start_time,
                        end_time = EXCLUDED.end_time,
                        slot_duration_minutes = EXCLUDED.slot_duration_minutes,
                        is_rest_day = EXCLUDED.is_rest_day,
                        explicit_slots = EXCLUDED.explicit_slots,
                        updated_at = CURRENT_TIMESTAMP
                    RETURNING {WINDOW_COLUMNS}"""
        logger.info("Executing query: %s", query)
        explicit_slots = Json([format_time(slot) for slot in window.explicit_slots]) if window.explicit_slots else None
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (window.provider_id, window.schedule_date, window.start_time, window.end_time,
                                       window.slot_duration_minutes, window.is_rest_day, explicit_slots))
                row = cursor.fetchone()
        return self._row_to_window(row)

    def delete_window(self, provider_id: int, schedule_date: date) -> None:
        """
        Deletes a window unless non-cancelled bookings still exist for its date.
        The window row is locked first so a booking cannot slip in between the count and the delete.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT id FROM availability_windows WHERE provider_id = %s AND schedule_date = %s FOR UPDATE",
                               (provider_id, schedule_date))
                if cursor.fetchone() is None:
                    raise NotFound("No availability window exists for that provider and date")
                cursor.execute("SELECT COUNT(*) FROM bookings WHERE provider_id = %s AND booking_date = %s AND status <> 'cancelled'",
                               (provider_id, schedule_date))
                count = cursor.fetchone()[0]
                if count > 0:
                    raise Conflict("Cannot delete an availability window that still has bookings", count=count)
                query = "DELETE FROM availability_windows WHERE provider_id = %s AND schedule_date = %s"
                logger.info("Executing query: %s", query)
                cursor.execute(query, (provider_id, schedule_date))

    # Bookings

    def create_booking(self, booking: Booking) -> Booking:
        """
        Window check, slot check and insert inside one transaction. A concurrent writer that got past the
        slot check is stopped by the partial unique index and surfaces here as a Conflict, never as a
        second active booking. Rest days and times outside the window are rejected before anything is written.
        """
        insert_query = f"""INSERT INTO bookings
                              (provider_id, subject_id, booker_id, booking_date, booking_time, status,
                               is_first_visit, notes, subject_details)
                           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                           RETURNING {BOOKING_COLUMNS}"""
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                # Holds off a concurrent window change or deletion for this date until we commit
                cursor.execute(f"SELECT {WINDOW_COLUMNS} FROM availability_windows WHERE provider_id = %s AND schedule_date = %s FOR SHARE",
                               (booking.provider_id, booking.booking_date))
                window_row = cursor.fetchone()
                if window_row is None:
                    raise NotFound("No availability has been published for that date", "date")
                check_window_fit(self._row_to_window(window_row), booking.booking_time)
                cursor.execute("""SELECT id FROM bookings
                                  WHERE provider_id = %s AND booking_date = %s AND booking_time = %s AND status <> 'cancelled'""",
                               (booking.provider_id, booking.booking_date, booking.booking_time))
                if cursor.fetchone() is not None:
                    raise Conflict("That time slot is already booked", "time")
                logger.info("Executing query: %s", insert_query)
                try:
                    cursor.execute(insert_query, (
                        booking.provider_id, booking.subject_id, booking.booker_id, booking.booking_date,
                        booking.booking_time, booking.status, booking.is_first_visit, booking.notes,
                        Json(booking.subject_details) if booking.subject_details else None))
                except errors.UniqueViolation:
                    logger.warning("Concurrent booking rejected for provider %s on %s at %s",
                                   booking.provider_id, booking.booking_date, booking.booking_time)
                    raise Conflict("That time slot is already booked", "time")
                row = cursor.fetchone()
        return self._row_to_booking(row)

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        query = f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (booking_id,))
                row = cursor.fetchone()
        return self._row_to_booking(row) if row else None

    def list_bookings(self, provider_id: Optional[int] = None, subject_id: Optional[int] = None,
                      participant_id: Optional[int] = None, status: Optional[str] = None,
                      booking_date: Optional[date] = None) -> List[Booking]:
        """
        Bookings ordered by date descending then time ascending.
        participant_id matches bookings where the user is either the subject or the booker.
        """
        clauses, params = [], []
        if provider_id is not None:
            clauses.append("provider_id = %s")
            params.append(provider_id)
        if subject_id is not None:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if participant_id is not None:
            clauses.append("(subject_id = %s OR booker_id = %s)")
            params.extend([participant_id, participant_id])
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if booking_date is not None:
            clauses.append("booking_date = %s")
            params.append(booking_date)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT {BOOKING_COLUMNS} FROM bookings{where} ORDER BY booking_date DESC, booking_time ASC, id ASC"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
        return [self._row_to_booking(row) for row in rows]

    def list_active_bookings(self, provider_id: int, booking_date: date) -> List[Booking]:
        query = f"""SELECT {BOOKING_COLUMNS} FROM bookings
                    WHERE provider_id = %s AND booking_date = %s AND status <> 'cancelled'
                    ORDER BY booking_time ASC"""
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (provider_id, booking_date))
                rows = cursor.fetchall()
        return [self._row_to_booking(row) for row in rows]

    def update_booking_status(self, booking_id: int, expected_status: str, new_status: str) -> Booking:
        """
        Moves a booking from expected_status to new_status in one statement.
        If the row changed underneath us the update matches nothing and Conflict is raised.
        """
        query = f"""UPDATE bookings SET status = %s, updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s AND status = %s
                    RETURNING {BOOKING_COLUMNS}"""
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (new_status, booking_id, expected_status))
                row = cursor.fetchone()
        if row is None:
            raise Conflict("Booking status changed while the update was in progress", "status")
        return self._row_to_booking(row)

    def cancel_booking(self, booking_id: int, reason: str) -> bool:
        """
        Cancels one booking and annotates it with the reason. Used by the schedule cascade, one row per transaction.

        Returns True if the booking is cancelled afterwards, False if the write failed.
        """
        query = """UPDATE bookings
                   SET status = 'cancelled',
                       cancellation_reason = %s,
                       notes = LTRIM(notes || ' (cancelled: ' || %s || ')'),
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = %s AND status <> 'cancelled'"""
        logger.info("Executing query: %s", query)
        try:
            with self._database_connect() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (reason, reason, booking_id))
        except psycopg2.DatabaseError as e:
            logger.error(f"Cancelling booking {booking_id} failed: {e.args}")
            return False
        return True

    def delete_booking(self, booking_id: int) -> None:
        query = "DELETE FROM bookings WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, (booking_id,))
                if cursor.rowcount == 0:
                    raise NotFound("Booking not found")

    # Row mapping

    @staticmethod
    def _row_to_window(row) -> AvailabilityWindow:
        explicit_slots = row['explicit_slots']
        return AvailabilityWindow(
            id=row['id'],
            provider_id=row['provider_id'],
            schedule_date=row['schedule_date'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            slot_duration_minutes=row['slot_duration_minutes'],
            is_rest_day=row['is_rest_day'],
            # jsonb comes back as a list of "HH:MM" tokens
            explicit_slots=[parse_time(slot, "explicitSlots") for slot in explicit_slots] if explicit_slots else None,
        )

    @staticmethod
    def _row_to_booking(row) -> Booking:
        return Booking(
            id=row['id'],
            provider_id=row['provider_id'],
            subject_id=row['subject_id'],
            booker_id=row['booker_id'],
            booking_date=row['booking_date'],
            booking_time=row['booking_time'],
            status=row['status'],
            is_first_visit=row['is_first_visit'],
            notes=row['notes'],
            subject_details=row['subject_details'],
            cancellation_reason=row['cancellation_reason'],
        )


# For testing:

if __name__ == "__main__":
    test = DatabasePersistence()
    logger.info("Schema version %s ready", SCHEMA_VERSION)
