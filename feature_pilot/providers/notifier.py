"""Notifier implementations.

``LoggingNotifier`` is the default channel for the CLI: each event becomes
a structured log line. ``RecordingNotifier`` keeps events in memory so that
callers (and tests) can inspect what the core emitted.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from feature_pilot.enums import NotificationEvent
from feature_pilot.providers.base import Notifier

log = structlog.get_logger(__name__)


class LoggingNotifier(Notifier):
    """Emit every event as an INFO log line.

    Streamed agent output is logged at DEBUG only, since it can be large.
    """

    async def notify(
        self,
        project_id: str,
        feature_id: str,
        event: NotificationEvent,
        payload: dict[str, Any],
    ) -> None:
        if event == NotificationEvent.AGENT_OUTPUT:
            log.debug("notification", kind=str(event), project_id=project_id, feature_id=feature_id)
            return
        log.info("notification", kind=str(event), project_id=project_id, feature_id=feature_id, **payload)


@dataclass
class RecordedEvent:
    project_id: str
    feature_id: str
    event: NotificationEvent
    payload: dict[str, Any]


class RecordingNotifier(Notifier):
    """Keep every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []

    async def notify(
        self,
        project_id: str,
        feature_id: str,
        event: NotificationEvent,
        payload: dict[str, Any],
    ) -> None:
        self.events.append(RecordedEvent(project_id, feature_id, event, dict(payload)))

    def of_type(self, event: NotificationEvent) -> list[RecordedEvent]:
        return [recorded for recorded in self.events if recorded.event == event]

    def clear(self) -> None:
        self.events.clear()
