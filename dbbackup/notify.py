"""
Run notifications.

Messages are POSTed as plain text to an ntfy-style topic URL, with the title
in a header and an optional bearer token. Delivery is fire-and-forget: one
attempt, failures logged and swallowed.
"""

import logging
from typing import Optional

import httpx


logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10.0


class Notifier:
    """Sends start/success/failure messages to the configured endpoint."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: float = _DEFAULT_TIMEOUT):
        self.url = url
        self.token = token
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, title: str, message: str) -> bool:
        """
        Send one notification.

        Args:
            title: Short title, sent as the Title header
            message: Message body

        Returns:
            True if the endpoint accepted the message, False if it was not
            sent (no endpoint) or delivery failed
        """
        if not self.enabled:
            return False

        headers = {'Title': title}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        try:
            response = httpx.post(
                self.url,
                content=message.encode('utf-8'),
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                f"Notification '{title}' rejected with status {exc.response.status_code}"
            )
            return False
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Notification '{title}' failed: {exc}")
            return False

        return True
