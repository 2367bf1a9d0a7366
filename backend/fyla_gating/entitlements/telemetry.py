"""
Gating telemetry: structured, leveled events for the feature gating engine.

Provides:
- GatingEvent: Structured event with a stable event_name
- GatingTelemetry: Emits events to a dedicated logger and optional sinks

Fail-open paths (serving cached or default data after a provider error) are
silent for the user, so every such path emits an event here. Monitoring keys
on event_name, never on message text.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Dedicated logger for structured gating events
telemetry_logger = logging.getLogger("fyla_gating.telemetry")


# ---------------------------------------------------------------------------
# Event names
# ---------------------------------------------------------------------------

SUBSCRIPTION_LOADED = "subscription.loaded"
SUBSCRIPTION_FETCH_FAILED = "subscription.fetch_failed"
SUBSCRIPTION_SERVED_STALE = "subscription.served_stale"
SUBSCRIPTION_FALLBACK_FREE = "subscription.fallback_free"
SUBSCRIPTION_PAYLOAD_MISSING = "subscription.payload_missing"
SUBSCRIPTION_FIELD_INVALID = "subscription.field_invalid"
SUBSCRIPTION_INVALIDATED = "subscription.invalidated"
SUBSCRIPTION_FETCH_CANCELLED = "subscription.fetch_cancelled"

USAGE_FETCH_FAILED = "usage.fetch_failed"
USAGE_SERVED_STALE = "usage.served_stale"

ENTITLEMENT_DENIED = "entitlement.denied"
ENTITLEMENT_UNKNOWN_FEATURE = "entitlement.unknown_feature"
ENTITLEMENT_SESSION_CLOSED = "entitlement.session_closed"

ACTIVATION_SUCCEEDED = "activation.succeeded"
ACTIVATION_FAILED = "activation.failed"
ACTIVATION_RECONCILED = "activation.reconciled"


@dataclass
class GatingEvent:
    """Structured telemetry event."""

    event_name: str
    level: int
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level_name
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


EventSink = Callable[[GatingEvent], None]


class GatingTelemetry:
    """
    Emits gating events.

    Every event is logged on the "fyla_gating.telemetry" logger with
    event_name and fields in `extra`, then handed to each registered sink.
    A failing sink is logged and skipped; telemetry never breaks a check.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self._sinks: List[EventSink] = list(sinks or [])

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, event_name: str, level: int = logging.INFO, **fields: Any) -> GatingEvent:
        event = GatingEvent(event_name=event_name, level=level, fields=fields)

        telemetry_logger.log(
            level,
            event_name,
            extra={
                "event_name": event_name,
                "event_id": event.event_id,
                "event_fields": fields,
            },
        )

        for sink in self._sinks:
            try:
                sink(event)
            except Exception as exc:
                logger.warning("Telemetry sink failed", extra={
                    "event_name": event_name,
                    "error": str(exc),
                })

        return event

    def info(self, event_name: str, **fields: Any) -> GatingEvent:
        return self.emit(event_name, logging.INFO, **fields)

    def warning(self, event_name: str, **fields: Any) -> GatingEvent:
        return self.emit(event_name, logging.WARNING, **fields)

    def error(self, event_name: str, **fields: Any) -> GatingEvent:
        return self.emit(event_name, logging.ERROR, **fields)


class RecordingSink:
    """Sink that keeps events in memory (diagnostics screens, tests)."""

    def __init__(self, max_events: int = 1000):
        self.events: List[GatingEvent] = []
        self._max_events = max_events

    def __call__(self, event: GatingEvent) -> None:
        self.events.append(event)
        if len(self.events) > self._max_events:
            del self.events[0]

    def names(self) -> List[str]:
        return [e.event_name for e in self.events]

    def of(self, event_name: str) -> List[GatingEvent]:
        return [e for e in self.events if e.event_name == event_name]
