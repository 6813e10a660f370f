"""Notification providers for deployment events: console and webhook."""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone
from typing import Any

import requests

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "phase_started",
    "phase_succeeded",
    "phase_failed",
    "rollback_step",
    "report",
    "rollback_release",
)


def make_event(event_type: str, **details: Any) -> dict[str, Any]:
    """Build an event dict with a type and a UTC timestamp.

    Raises ValueError when *event_type* is not one of ``EVENT_TYPES``.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type: {event_type!r}")
    return {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **details,
    }


class NotificationProvider(abc.ABC):
    """Abstract notification provider."""

    @abc.abstractmethod
    def notify(self, event: dict[str, Any]) -> bool:
        """Send a notification about a deployment event.

        Parameters
        ----------
        event:
            Event dict with keys: type, timestamp, and event-specific
            fields such as phase, detail or label.

        Returns True if notification was sent successfully.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True if provider is ready to send."""


class ConsoleNotifier(NotificationProvider):
    """Always-available console/log notification provider."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def notify(self, event: dict[str, Any]) -> bool:
        self._log.append(event)
        logger.info("[infra-core] %s", _format_event(event))
        return True

    def is_available(self) -> bool:
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Access the in-memory log for testing."""
        return list(self._log)

    def types(self) -> list[str]:
        return [e.get("type", "") for e in self._log]


class WebhookNotifier(NotificationProvider):
    """POST events as JSON to a webhook URL (Slack-compatible ``text``)."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self.timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def notify(self, event: dict[str, Any]) -> bool:
        if not self.is_available():
            logger.warning("Webhook notifier unavailable, skipping.")
            return False

        payload = {"text": _format_event(event), "event": event}
        try:
            resp = requests.post(self._webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Webhook notification failed: %s", exc)
            return False
        return resp.status_code in (200, 201, 202, 204)


class MultiNotifier(NotificationProvider):
    """Fan one event out to several providers."""

    def __init__(self, providers: list[NotificationProvider]) -> None:
        self.providers = list(providers)

    def is_available(self) -> bool:
        return any(p.is_available() for p in self.providers)

    def notify(self, event: dict[str, Any]) -> bool:
        results = [p.notify(event) for p in self.providers if p.is_available()]
        return bool(results) and all(results)


def _format_event(event: dict[str, Any]) -> str:
    """Format an event dict into a readable notification message."""
    parts = [f"InfraCore {event.get('type', 'unknown')}"]
    phase = event.get("phase")
    if phase:
        parts.append(f"phase={phase}")
    label = event.get("label")
    if label:
        parts.append(f"step={label}")
    state = event.get("final_state")
    if state:
        parts.append(f"state={state}")
    detail = event.get("detail")
    if detail:
        parts.append(f"({detail})")
    return " ".join(parts)
