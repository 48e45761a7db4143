"""
auth/events.py -- Notification sink for lifecycle events.

The engine publishes fire-and-forget events (user.registered, user.login,
security.refresh_token_reused, ...). Delivery is best-effort: publish()
never raises into the caller, so a broken sink can never roll back a
registration or fail a login.

Every event is enriched with eventId, service, version, and timestamp
before it reaches the transport.

Sinks:
  LoggingPublisher  -- logs the name and id of each event and keeps
                       nothing. Default when no webhook is configured. The
                       payload is not logged: reset events carry a secret.
  WebhookPublisher  -- HTTP POST of the JSON event via requests, with a
                       bounded timeout. Failures are logged and dropped.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from core.config import APP_VERSION, SERVICE_NAME

logger = logging.getLogger("gatehouse.events")


class EventPublisher(Protocol):
    def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


def enrich(event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Wrap a payload in the standard event envelope."""
    return {
        "eventId": uuid.uuid4().hex,
        "event": event_name,
        "service": SERVICE_NAME,
        "version": APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": dict(payload),
    }


class LoggingPublisher:
    """Logs that an event happened. Nothing is retained."""

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = enrich(event_name, payload)
        logger.info("event %s id=%s", event_name, event["eventId"])


class WebhookPublisher:
    """POSTs each event to a collaborator endpoint (mailer, audit log).

    Usage:
        publisher = WebhookPublisher("https://notify.internal/events", timeout=3.0)
        publisher.publish("user.registered", {"userId": "...", "email": "..."})
    """

    def __init__(self, url: str, *, timeout: float = 3.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        # Collaborator endpoint is known and internal; no reason to follow long chains.
        self._session.max_redirects = 3

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = enrich(event_name, payload)
        try:
            resp = self._session.post(self.url, json=event, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Event delivery failed for %s (id=%s): %s", event_name, event["eventId"], e)
