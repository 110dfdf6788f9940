from __future__ import annotations

import logging
from unittest.mock import Mock

import requests

from longhorn_backup_manager.notify import (
    NotificationEvent,
    NullNotifier,
    WebhookNotifier,
    build_notifier,
)


def test_build_notifier_without_url_returns_null_notifier() -> None:
    assert isinstance(build_notifier(None), NullNotifier)
    assert isinstance(build_notifier(""), NullNotifier)


def test_build_notifier_with_url_returns_webhook_notifier() -> None:
    notifier = build_notifier("https://hooks.example.invalid/lbm", timeout_seconds=3)

    assert isinstance(notifier, WebhookNotifier)
    assert notifier.timeout_seconds == 3


def test_webhook_notifier_posts_event_as_json() -> None:
    session = Mock()
    event = NotificationEvent(kind="enrolled", message="prod/pg-data enrolled", timestamp="2026-01-01T00:00:00+00:00")

    WebhookNotifier("https://hooks.example.invalid/lbm", timeout_seconds=4, session=session).post(event)

    session.post.assert_called_once_with(
        "https://hooks.example.invalid/lbm",
        json={"kind": "enrolled", "message": "prod/pg-data enrolled", "timestamp": "2026-01-01T00:00:00+00:00"},
        timeout=4,
    )
    session.post.return_value.raise_for_status.assert_called_once_with()


def test_webhook_notifier_with_delivery_error_logs_and_does_not_raise(caplog) -> None:
    session = Mock()
    session.post.side_effect = requests.ConnectionError("connection refused")

    with caplog.at_level(logging.WARNING, logger="longhorn_backup_manager"):
        WebhookNotifier("https://hooks.example.invalid/lbm", session=session).post(
            NotificationEvent(kind="offsite-drift", message="1 volume(s) differ")
        )

    assert "Failed to deliver offsite-drift notification" in caplog.text
