# Fire-and-forget delivery of booking notifications
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

EVENTS = ("booking_created", "booking_status_changed", "booking_cancelled_by_schedule")


class LogNotifier:
    """
    Default notification sink. Records the notification in the log and reports it as delivered.
    Used whenever no mail transport is configured.
    """

    def notify(self, recipient: Dict, event: str, payload: Dict) -> bool:
        logger.info("Notification %s for user %s: %s", event, recipient.get("id"), payload)
        return True


def notify_user(db, notifier, user_id: int, event: str, payload: Dict) -> bool:
    """
    Looks up the recipient and hands the notification to the sink.
    Never raises: a failed lookup or delivery is logged and reported as False so the caller's result stands.
    """
    if notifier is None:
        return False
    if event not in EVENTS:
        logger.error("Unknown notification event %s for user %s", event, user_id)
        return False
    try:
        recipient: Optional[Dict] = db.get_user(user_id)
        if recipient is None:
            logger.warning("Notification %s skipped, user %s not found", event, user_id)
            return False
        delivered = notifier.notify(recipient, event, payload)
    except Exception as e:
        logger.error(f"Notification {event} to user {user_id} failed: {e}")
        return False
    if not delivered:
        logger.error("Notification %s to user %s was not delivered", event, user_id)
    return bool(delivered)
