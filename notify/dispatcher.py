"""
notify/dispatcher.py -- Email transports for recovery links.

The core only needs something with send(to_email, subject, body). Two
transports ship here:

  ResendNotifier -- POSTs to the Resend HTTP API with requests. Any network
      error or non-2xx status raises NotificationUnavailableError; retrying
      is the caller's business (AuthService logs and moves on).

  LogNotifier -- used when RESEND_API_KEY is not set. Logs that delivery is
      disabled; the body (which contains a live reset link) is logged at
      DEBUG only.

Tests inject their own recording object instead of either.
"""

from __future__ import annotations

import html
import logging
from typing import Protocol

import requests

from auth.errors import NotificationUnavailableError

logger = logging.getLogger("latchkey.notify")

RESEND_API = "https://api.resend.com/emails"

# Module-level session shared across sends for connection pooling.
# max_redirects=3 -- this is a single known API, no reason to follow long chains.
_session = requests.Session()
_session.max_redirects = 3


class Notifier(Protocol):
    def send(self, to_email: str, subject: str, body: str) -> None: ...


class ResendNotifier:
    """Send plain-text + HTML email through Resend."""

    def __init__(self, api_key: str, sender: str, timeout: float = 10.0) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout

    def send(self, to_email: str, subject: str, body: str) -> None:
        payload = {
            "from": self._sender,
            "to": [to_email],
            "subject": subject,
            "text": body,
            "html": f"<p>{html.escape(body)}</p>",
        }
        try:
            resp = _session.post(
                RESEND_API,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Resend delivery failed: %s", e)
            raise NotificationUnavailableError(reason=str(e)) from e
        logger.info("Email accepted by Resend (id=%s)", _message_id(resp))


class LogNotifier:
    """Stand-in transport for development: nothing leaves the process."""

    def send(self, to_email: str, subject: str, body: str) -> None:
        logger.warning("Email delivery disabled (RESEND_API_KEY not set); dropping %r", subject)
        logger.debug("Undelivered email body: %s", body)


def _message_id(resp: requests.Response) -> str:
    try:
        return str(resp.json().get("id", "?"))
    except ValueError:
        return "?"


def build_notifier(settings) -> Notifier:
    """Pick the transport for the configured environment."""
    if settings.resend_api_key:
        return ResendNotifier(settings.resend_api_key, settings.email_from, timeout=settings.email_timeout_seconds)
    return LogNotifier()
