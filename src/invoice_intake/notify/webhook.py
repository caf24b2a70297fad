"""
Webhook notifier (Slack-compatible incoming webhooks).
"""

import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import requests

from ..config import NotificationConfig
from ..retry import RetryOptions, execute

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Delivery failed. Never escapes Notifier.notify()."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable or (
            status_code is not None and (status_code == 429 or status_code >= 500)
        )
        super().__init__(message)


class Notifier:
    """
    Notification capability.

    Subclasses implement send(), which raises NotificationError on failure.
    Callers use notify(), which retries per the given options and turns
    any failure into a logged False.
    """

    name = "notifier"
    enabled = True

    def send(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    def notify(
        self,
        payload: dict[str, Any],
        options: Optional[RetryOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """
        Deliver a payload.

        Args:
            payload: JSON-serializable message body
            options: Retry policy (default: a single attempt)
            sleep: Sleep function for backoff (injectable for tests)

        Returns:
            True if delivered, False otherwise
        """
        opts = options or RetryOptions(max_retries=0)
        try:
            execute(lambda: self.send(payload), opts, sleep=sleep)
        except Exception as e:
            logger.warning(f"{self.name} delivery failed (ignored): {e}")
            return False
        return True


class NullNotifier(Notifier):
    """Used when notifications are disabled. Delivers nothing, reports failure."""

    name = "null notifier"
    enabled = False

    def send(self, payload: dict[str, Any]) -> None:
        logger.debug("Notifications disabled, dropping payload")

    def notify(self, payload, options=None, sleep=time.sleep) -> bool:
        self.send(payload)
        return False


class WebhookNotifier(Notifier):
    """POSTs JSON payloads to a webhook URL. Any 2xx counts as delivered."""

    name = "webhook"

    def __init__(self, webhook_url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def send(self, payload: dict[str, Any]) -> None:
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise NotificationError(f"Webhook request timed out: {e}", retryable=True) from e
        except requests.ConnectionError as e:
            raise NotificationError(f"Webhook connection failed: {e}", retryable=True) from e

        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"Webhook returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.debug("Webhook delivered (%d)", response.status_code)

    def close(self) -> None:
        self.session.close()


def create_notifier(config: NotificationConfig) -> Notifier:
    """Build the notifier for the configured channel."""
    if config.enabled and config.webhook_url:
        return WebhookNotifier(config.webhook_url, timeout=config.timeout_seconds)
    return NullNotifier()
