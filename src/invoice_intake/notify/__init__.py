"""
Outbound notifications.

Notifications are fire-and-forget: Notifier.notify() reports success as a
bool and never raises.
"""

from .messages import build_health_alert_message, build_invoice_message, confidence_label
from .webhook import NotificationError, Notifier, NullNotifier, WebhookNotifier, create_notifier

__all__ = [
    "NotificationError",
    "Notifier",
    "NullNotifier",
    "WebhookNotifier",
    "build_health_alert_message",
    "build_invoice_message",
    "confidence_label",
    "create_notifier",
]
