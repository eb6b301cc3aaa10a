from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import base64
from pathlib import Path
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google.oauth2 import service_account
import logging
import os

logger = logging.getLogger(__name__)

SUBJECTS = {
    "booking_created": "New appointment booked",
    "booking_status_changed": "Your appointment status has changed",
    "booking_cancelled_by_schedule": "Your appointment has been cancelled",
}


class GmailNotifier:
    """
    Notification sink that emails booking events through the Gmail API, sending as the clinic's address
    with a domain-delegated service account.
    """

    SCOPES = ['https://www.googleapis.com/auth/gmail.send']

    def __init__(self, sender_email=None, api_key_path=None):
        self.sender_email = sender_email or os.getenv('NOTIFY_SENDER_EMAIL', 'noreply@clinic.example')
        self._api_key_path = api_key_path or self._find_api_key()
        self.service = self._authorize()

    @property
    def get_api_key_path(self):
        return self._api_key_path

    @staticmethod
    def _find_api_key() -> str:
        """
        Since Credentials.from_service_account_file() takes file path, find the file path to either the environment variable in prod or local dev file.
        """
        api_key_path = os.getenv('SERVICE_ACCOUNT_FILE')
        # If none, then get local development key
        if not api_key_path:
            api_key_path = Path("./clinic_booking/booking/service-account.json")
        return api_key_path

    @staticmethod
    def render_body(recipient, event, payload) -> str:
        booking = payload.get("booking", {})
        lines = [f"Hello {recipient.get('name', '')},", ""]
        lines.append(f"Appointment on {booking.get('date')} at {booking.get('time')}: {booking.get('status')}.")
        if payload.get("reason"):
            lines.append(f"Reason: {payload['reason']}.")
        return "\n".join(lines)

    def create_message(self, to, from_email, subject, body):
        message = MIMEMultipart()
        message['to'] = to
        message['from'] = from_email
        message['subject'] = subject

        # Add plain text part
        message.attach(MIMEText(body, 'plain'))

        # Encode to base64 for Gmail API
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()
        return {'raw': raw}

    def notify(self, recipient, event, payload) -> bool:
        email = recipient.get('email')
        if not email:
            logger.info(f"User {recipient.get('id')} has no email address, skipping {event}")
            return False
        message = self.create_message(email, self.sender_email, SUBJECTS.get(event, event),
                                      self.render_body(recipient, event, payload))
        try:
            self.service.users().messages().send(userId='me', body=message).execute()
        except HttpError as e:
            logger.error(f'An error occurred: {e}')
            return False
        return True

    def _authorize(self):
        creds = service_account.Credentials.from_service_account_file(
                self.get_api_key_path,
                scopes=self.SCOPES,
                subject=self.sender_email  # Impersonating the clinic's sending address
            )
        return build("gmail", "v1", credentials=creds)
