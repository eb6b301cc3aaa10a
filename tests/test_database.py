# Runs against a real Postgres database. Point TEST_DATABASE_URL at a disposable database, e.g.
# TEST_DATABASE_URL="dbname=clinic_booking_test" python -m pytest tests/test_database.py

import os
import sys
import threading
import unittest
from datetime import date, time
import psycopg2
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from clinic_booking.booking.database import DatabasePersistence
from clinic_booking.booking.error_utils import Conflict, NotFound, ValidationError
from clinic_booking.booking.models import AvailabilityWindow, Booking, BookingStatus

TEST_DATABASE_URL = os.environ.get('TEST_DATABASE_URL')
DAY = date(2031, 3, 4)


@unittest.skipUnless(TEST_DATABASE_URL, "TEST_DATABASE_URL is not set")
class DatabasePersistenceTest(unittest.TestCase):
    def setUp(self):
        self.db = DatabasePersistence(TEST_DATABASE_URL)
        with psycopg2.connect(TEST_DATABASE_URL) as conn:
            with conn.cursor() as cursor:
                cursor.execute("TRUNCATE bookings, availability_windows, users RESTART IDENTITY CASCADE")
        conn.close()
        self.provider = self.db.add_user("Dr. Chen", "provider", "chen@gmail.com")
        self.patient = self.db.add_user("Lin", "patient", "lin@gmail.com")
        for day in (DAY, date(2031, 3, 5)):
            self.db.upsert_window(AvailabilityWindow(provider_id=self.provider["id"], schedule_date=day,
                                                     start_time=time(8, 0), end_time=time(17, 0)))

    def booking(self, at="09:00"):
        return Booking(provider_id=self.provider["id"], subject_id=self.patient["id"],
                       booker_id=self.patient["id"], booking_date=DAY, booking_time=time.fromisoformat(at),
                       notes="checkup", subject_details={"name": "Lin"})

    def test_window_round_trip_with_explicit_slots(self):
        window = AvailabilityWindow(provider_id=self.provider["id"], schedule_date=DAY, start_time=time(8, 15),
                                    end_time=time(13, 30), explicit_slots=[time(8, 15), time(9, 40), time(13, 0)])
        stored = self.db.upsert_window(window)
        loaded = self.db.get_window(self.provider["id"], DAY)
        self.assertEqual(loaded.id, stored.id)
        self.assertEqual(loaded.explicit_slots, [time(8, 15), time(9, 40), time(13, 0)])
        self.assertFalse(loaded.is_rest_day)

    def test_upsert_replaces_window(self):
        first = self.db.upsert_window(AvailabilityWindow(provider_id=self.provider["id"], schedule_date=DAY,
                                                         start_time=time(9, 0), end_time=time(12, 0)))
        second = self.db.upsert_window(AvailabilityWindow(provider_id=self.provider["id"], schedule_date=DAY,
                                                          is_rest_day=True))
        self.assertEqual(first.id, second.id)
        self.assertTrue(second.is_rest_day)
        self.assertIsNone(second.start_time)
        self.assertFalse(second.has_explicit_slots)
        self.assertEqual(len(self.db.list_windows(provider_id=self.provider["id"], start_date=DAY, end_date=DAY)), 1)

    def test_second_active_booking_conflicts(self):
        stored = self.db.create_booking(self.booking())
        self.assertEqual(stored.status, BookingStatus.CONFIRMED)
        self.assertEqual(stored.subject_details, {"name": "Lin"})
        with self.assertRaises(Conflict):
            self.db.create_booking(self.booking())
        self.assertTrue(self.db.cancel_booking(stored.id, "patient request"))
        self.db.create_booking(self.booking())

    def test_booking_must_fit_the_window(self):
        missing = self.booking()
        missing.booking_date = date(2031, 3, 9)
        with self.assertRaises(NotFound):
            self.db.create_booking(missing)
        with self.assertRaises(ValidationError):
            self.db.create_booking(self.booking("17:30"))
        self.db.upsert_window(AvailabilityWindow(provider_id=self.provider["id"], schedule_date=DAY, is_rest_day=True))
        with self.assertRaises(ValidationError):
            self.db.create_booking(self.booking())
        self.assertEqual(self.db.list_bookings(provider_id=self.provider["id"]), [])

    def test_concurrent_bookings_for_one_slot(self):
        barrier = threading.Barrier(4)
        outcomes = []

        def attempt():
            db = DatabasePersistence(TEST_DATABASE_URL)
            barrier.wait()
            try:
                outcomes.append(db.create_booking(self.booking("10:00")))
            except Conflict as e:
                outcomes.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sum(isinstance(outcome, Booking) for outcome in outcomes), 1)
        self.assertEqual(sum(isinstance(outcome, Conflict) for outcome in outcomes), 3)
        self.assertEqual(len(self.db.list_active_bookings(self.provider["id"], DAY)), 1)

    def test_cancel_annotates_notes(self):
        stored = self.db.create_booking(self.booking())
        self.db.cancel_booking(stored.id, "provider unavailable")
        loaded = self.db.get_booking(stored.id)
        self.assertEqual(loaded.status, BookingStatus.CANCELLED)
        self.assertEqual(loaded.cancellation_reason, "provider unavailable")
        self.assertEqual(loaded.notes, "checkup (cancelled: provider unavailable)")

    def test_status_update_is_compare_and_set(self):
        stored = self.db.create_booking(self.booking())
        updated = self.db.update_booking_status(stored.id, BookingStatus.CONFIRMED, BookingStatus.COMPLETED)
        self.assertEqual(updated.status, BookingStatus.COMPLETED)
        with self.assertRaises(Conflict):
            self.db.update_booking_status(stored.id, BookingStatus.CONFIRMED, BookingStatus.CANCELLED)

    def test_delete_window_blocked_by_bookings(self):
        self.db.upsert_window(AvailabilityWindow(provider_id=self.provider["id"], schedule_date=DAY,
                                                 start_time=time(9, 0), end_time=time(12, 0)))
        stored = self.db.create_booking(self.booking())
        with self.assertRaises(Conflict) as context:
            self.db.delete_window(self.provider["id"], DAY)
        self.assertEqual(context.exception.count, 1)
        self.db.cancel_booking(stored.id, "patient request")
        self.db.delete_window(self.provider["id"], DAY)
        self.assertIsNone(self.db.get_window(self.provider["id"], DAY))
        with self.assertRaises(NotFound):
            self.db.delete_window(self.provider["id"], DAY)

    def test_list_bookings_order(self):
        late = self.db.create_booking(self.booking("11:00"))
        early = self.db.create_booking(self.booking("09:00"))
        later_day = self.booking("08:00")
        later_day.booking_date = date(2031, 3, 5)
        next_day = self.db.create_booking(later_day)
        ids = [booking.id for booking in self.db.list_bookings(participant_id=self.patient["id"])]
        self.assertEqual(ids, [next_day.id, early.id, late.id])

    def test_delete_booking(self):
        stored = self.db.create_booking(self.booking())
        self.db.delete_booking(stored.id)
        self.assertIsNone(self.db.get_booking(stored.id))
        with self.assertRaises(NotFound):
            self.db.delete_booking(stored.id)


if __name__ == '__main__':
    unittest.main()
