# notifications.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests


class NotificationTemplate(str, Enum):
    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    BOOKING_CANCELLATION = "BOOKING_CANCELLATION"
    AVAILABILITY_PROPOSED = "AVAILABILITY_PROPOSED"
    AVAILABILITY_ACCEPTED = "AVAILABILITY_ACCEPTED"
    AVAILABILITY_REJECTED = "AVAILABILITY_REJECTED"


@dataclass
class NotificationResult:
    success: bool
    error: Optional[str] = None


class Notifier:
    """Delivery collaborator. Rendering and channels (email, SMS, WhatsApp) live behind it."""

    def notify(self, recipient: dict, template_type: NotificationTemplate, data: dict) -> NotificationResult:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def notify(self, recipient, template_type, data):
        logging.info(f"Notification {template_type.value} for {recipient.get('email') or recipient.get('phone')}: {data}")
        return NotificationResult(success=True)


class WebhookNotifier(Notifier):
    def __init__(self, url, timeout=5.0, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, recipient, template_type, data):
        payload = {"recipient": recipient, "template": template_type.value, "data": data}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            return NotificationResult(success=False, error=str(e))
        if response.status_code >= 400:
            return NotificationResult(success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        return NotificationResult(success=True)


def send_notification(notifier, recipient, template_type, data):
    """Deliver one notification. Failures are logged and never propagated."""
    if notifier is None or not recipient:
        return NotificationResult(success=False, error="no notifier or recipient")
    try:
        result = notifier.notify(recipient, template_type, data)
    except Exception as e:
        logging.error(f"Notification {template_type.value} raised: {e}")
        return NotificationResult(success=False, error=str(e))
    if not result.success:
        logging.error(f"Notification {template_type.value} failed: {result.error}")
    return result


def dispatch_notification(notifier, recipient, template_type, data, background_tasks=None):
    """
    Fire-and-forget delivery, always called after the storage transaction committed.

    With FastAPI ``BackgroundTasks`` the send happens after the response is
    written; without them it runs inline but still cannot fail the caller.
    """
    if background_tasks is not None:
        background_tasks.add_task(send_notification, notifier, recipient, template_type, data)
        return None
    return send_notification(notifier, recipient, template_type, data)


def user_recipient(user):
    if user is None:
        return None
    return {"name": user.name, "email": user.email, "phone": user.phone}


def booking_recipient(booking):
    if booking.client is not None:
        return user_recipient(booking.client)
    return {"name": booking.guest_name, "email": booking.guest_email, "phone": booking.guest_phone}
