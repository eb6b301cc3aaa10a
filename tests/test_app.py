import os
import sys
import unittest
from unittest import mock
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.dirname(__file__))
from clinic_booking.app import app
from clinic_booking.booking.database import DatabasePersistence
from clinic_booking.booking.notifications import LogNotifier
from memory_store import MemoryPersistence, RecordingNotifier, fixed_clock


class AppTest(unittest.TestCase):
    def setUp(self):
        self.db = MemoryPersistence()
        self.notifier = RecordingNotifier()
        app.config['TESTING'] = True
        app.config['PERSISTENCE_FACTORY'] = lambda: self.db
        app.config['NOTIFIER'] = self.notifier
        app.config['CLOCK'] = fixed_clock()
        self.client = app.test_client()

        self.provider = self.db.add_user("Dr. Chen", "provider", "chen@gmail.com")
        self.patient = self.db.add_user("Lin", "patient", "lin@gmail.com")
        self.admin = self.db.add_user("Office", "admin")

    def tearDown(self):
        app.config['PERSISTENCE_FACTORY'] = DatabasePersistence
        app.config['NOTIFIER'] = None
        app.config['CLOCK'] = None

    def headers(self, user):
        return {"X-User-Id": str(user["id"]), "X-User-Role": user["role"]}

    def publish(self, **fields):
        body = {"providerId": self.provider["id"], "date": "2025-07-02", "startTime": "09:00", "endTime": "12:00"}
        body.update(fields)
        return self.client.put("/schedules", json=body, headers=self.headers(self.provider))

    def book(self, user=None, **fields):
        body = {"providerId": self.provider["id"], "subjectId": self.patient["id"],
                "date": "2025-07-02", "time": "10:00"}
        body.update(fields)
        return self.client.post("/bookings", json=body, headers=self.headers(user or self.patient))

    def test_identity_headers_required(self):
        with self.client.get("/bookings") as response:
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.get_json(), {"error": "Authentication required"})
        with self.client.get("/bookings", headers={"X-User-Id": "1", "X-User-Role": "superuser"}) as response:
            self.assertEqual(response.status_code, 401)
        with self.client.get("/bookings", headers={"X-User-Id": "me", "X-User-Role": "admin"}) as response:
            self.assertEqual(response.status_code, 401)

    def test_publish_schedule(self):
        with self.publish(slotDurationMinutes=30) as response:
            self.assertEqual(response.status_code, 200)
            body = response.get_json()
            self.assertEqual(body["schedule"]["startTime"], "09:00")
            self.assertEqual(body["schedule"]["endTime"], "12:00")
            self.assertEqual(body["cancelledBookings"], [])
            self.assertEqual(body["warnings"], [])

    def test_publish_invalid_schedule(self):
        with self.publish(startTime="12:00", endTime="09:00") as response:
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["field"], "startTime")
        with self.client.put("/schedules", data="not json", headers=self.headers(self.provider)) as response:
            self.assertEqual(response.status_code, 400)

    def test_patient_cannot_publish(self):
        body = {"providerId": self.provider["id"], "date": "2025-07-02", "isRestDay": True}
        with self.client.put("/schedules", json=body, headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 403)

    def test_available_slots(self):
        self.publish()
        self.book()
        url = f"/schedules/{self.provider['id']}/available/2025-07-02"
        with self.client.get(url, headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["availableSlots"], ["09:00", "09:30", "10:30", "11:00", "11:30"])
        with self.client.get(f"/schedules/{self.provider['id']}/available/2025-07-09",
                             headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 404)

    def test_booking_flow(self):
        self.publish()
        with self.book(notes="first time") as response:
            self.assertEqual(response.status_code, 201)
            booking = response.get_json()
            self.assertEqual(booking["status"], "confirmed")
            self.assertEqual(booking["time"], "10:00")
            self.assertEqual(booking["bookerId"], self.patient["id"])

        with self.book(self.admin) as response:
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.get_json()["field"], "time")

        with self.client.get("/bookings/mine", headers=self.headers(self.patient)) as response:
            self.assertEqual([item["id"] for item in response.get_json()["bookings"]], [booking["id"]])

        with self.client.put(f"/bookings/{booking['id']}/cancel", headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["status"], "cancelled")

        with self.book(self.admin) as response:
            self.assertEqual(response.status_code, 201)

    def test_booking_needs_an_open_window(self):
        with self.book() as response:
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.get_json()["field"], "date")
        self.publish(isRestDay=True)
        with self.book() as response:
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["field"], "date")
        self.publish(startTime="13:00", endTime="17:00")
        with self.book() as response:
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["field"], "time")
        self.assertEqual(self.db.bookings, {})

    def test_broken_service_account_still_books(self):
        self.publish()
        app.config['NOTIFIER'] = None
        with mock.patch.dict(os.environ, {"SERVICE_ACCOUNT_FILE": "/nonexistent/key.json"}):
            with self.book() as response:
                self.assertEqual(response.status_code, 201)
        self.assertEqual(len(self.db.bookings), 1)
        self.assertIsInstance(app.config['NOTIFIER'], LogNotifier)

    def test_booking_errors(self):
        with self.book(providerId=999) as response:
            self.assertEqual(response.status_code, 404)
        with self.book(subjectId=self.admin["id"]) as response:
            self.assertEqual(response.status_code, 403)
        with self.book(time="25:00") as response:
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["field"], "time")

    def test_status_updates(self):
        self.publish()
        booking = self.book().get_json()
        url = f"/bookings/{booking['id']}/status"
        with self.client.patch(url, json={"status": "finished"}, headers=self.headers(self.provider)) as response:
            self.assertEqual(response.status_code, 400)
        with self.client.patch(url, json={"status": "completed"}, headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 403)
        with self.client.patch(url, json={"status": "completed"}, headers=self.headers(self.provider)) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["status"], "completed")
        with self.client.patch(url, json={"status": "cancelled"}, headers=self.headers(self.admin)) as response:
            self.assertEqual(response.status_code, 400)

    def test_reschedule_cancels_bookings(self):
        self.publish()
        booking = self.book(time="09:00").get_json()
        with self.publish(startTime="10:00") as response:
            self.assertEqual(response.status_code, 200)
            cancelled = response.get_json()["cancelledBookings"]
            self.assertEqual([item["id"] for item in cancelled], [booking["id"]])
            self.assertEqual(cancelled[0]["cancellationReason"], "schedule hours changed")

    def test_delete_schedule(self):
        self.publish()
        self.book()
        url = f"/schedules/{self.provider['id']}/2025-07-02"
        with self.client.delete(url, headers=self.headers(self.provider)) as response:
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.get_json()["count"], 1)
        self.publish(isRestDay=True)
        with self.client.delete(url, headers=self.headers(self.provider)) as response:
            self.assertEqual(response.status_code, 200)

    def test_schedule_listings(self):
        self.publish()
        self.publish(date="2025-08-04", isRestDay=True)
        with self.client.get(f"/schedules/provider/{self.provider['id']}",
                             headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual([item["date"] for item in response.get_json()["schedules"]],
                             ["2025-07-02", "2025-08-04"])
        with self.client.get("/schedules/2025/8", headers=self.headers(self.admin)) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual([item["date"] for item in response.get_json()["schedules"]], ["2025-08-04"])

    def test_delete_booking(self):
        self.publish()
        booking = self.book().get_json()
        with self.client.delete(f"/bookings/{booking['id']}", headers=self.headers(self.patient)) as response:
            self.assertEqual(response.status_code, 403)
        with self.client.delete(f"/bookings/{booking['id']}", headers=self.headers(self.admin)) as response:
            self.assertEqual(response.status_code, 200)
        with self.client.get(f"/bookings/{booking['id']}", headers=self.headers(self.admin)) as response:
            self.assertEqual(response.status_code, 404)

    def test_unknown_route(self):
        with self.client.get("/nowhere") as response:
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.get_json(), {"error": "Not found"})


if __name__ == '__main__':
    unittest.main()
