from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
import logging
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    message: str
    timestamp: str = field(default_factory=_utc_now_iso)


class Notifier(Protocol):
    def post(self, event: NotificationEvent) -> None: ...


class NullNotifier:
    def post(self, event: NotificationEvent) -> None:
        logger.debug("Notification sink disabled; dropping %s event", event.kind)


class WebhookNotifier:
    """Fire-and-forget JSON webhook. Delivery failures are logged, never raised."""

    def __init__(self, url: str, *, timeout_seconds: int = 10, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def post(self, event: NotificationEvent) -> None:
        try:
            response = self.session.post(self.url, json=asdict(event), timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as error:
            logger.warning("Failed to deliver %s notification: %s", event.kind, error)


def build_notifier(url: str | None, *, timeout_seconds: int = 10) -> Notifier:
    if not url:
        return NullNotifier()
    return WebhookNotifier(url, timeout_seconds=timeout_seconds)
