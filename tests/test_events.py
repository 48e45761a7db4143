"""Tests for auth/events.py -- event envelope and the two publishers."""

import logging
from unittest.mock import MagicMock

import requests

from auth.events import LoggingPublisher, WebhookPublisher, enrich
from core.config import APP_VERSION, SERVICE_NAME


def test_enrich_wraps_payload():
    event = enrich("user.login", {"userId": "u1"})
    assert event["event"] == "user.login"
    assert event["service"] == SERVICE_NAME
    assert event["version"] == APP_VERSION
    assert event["data"] == {"userId": "u1"}
    assert len(event["eventId"]) == 32
    assert event["timestamp"].endswith("+00:00")


def test_enrich_copies_payload():
    payload = {"userId": "u1"}
    event = enrich("user.login", payload)
    payload["userId"] = "changed"
    assert event["data"]["userId"] == "u1"


def test_logging_publisher_logs_without_retaining(caplog):
    publisher = LoggingPublisher()
    with caplog.at_level(logging.INFO, logger="gatehouse.events"):
        publisher.publish("user.password_reset_requested", {"userId": "u1", "resetToken": "s3cr3t-value"})
    assert "user.password_reset_requested" in caplog.text
    assert "s3cr3t-value" not in caplog.text
    assert not hasattr(publisher, "events")


def test_webhook_posts_enveloped_json():
    session = MagicMock()
    publisher = WebhookPublisher("https://notify.example.com/events", timeout=1.5, session=session)
    publisher.publish("user.logout", {"userId": "u1"})

    session.post.assert_called_once()
    args, kwargs = session.post.call_args
    assert args == ("https://notify.example.com/events",)
    assert kwargs["timeout"] == 1.5
    assert kwargs["json"]["event"] == "user.logout"
    assert kwargs["json"]["data"] == {"userId": "u1"}
    session.post.return_value.raise_for_status.assert_called_once()


def test_webhook_failure_is_logged_not_raised(caplog):
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")
    publisher = WebhookPublisher("https://notify.example.com/events", session=session)
    with caplog.at_level(logging.WARNING, logger="gatehouse.events"):
        publisher.publish("user.login", {"userId": "u1"})
    assert "Event delivery failed" in caplog.text


def test_webhook_http_error_is_swallowed():
    session = MagicMock()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502")
    WebhookPublisher("https://notify.example.com/events", session=session).publish("user.login", {})


def test_webhook_limits_redirects():
    session = requests.Session()
    WebhookPublisher("https://notify.example.com/events", session=session)
    assert session.max_redirects == 3
