"""
Unit tests for gating telemetry.

Tests cover:
- Structured log records on the dedicated logger
- Sink delivery and failing-sink isolation
- Event serialisation
"""

import json
import logging

from fyla_gating.entitlements.telemetry import (
    GatingEvent,
    GatingTelemetry,
    RecordingSink,
    SUBSCRIPTION_FETCH_FAILED,
    USAGE_SERVED_STALE,
)


class TestGatingTelemetry:
    """Tests for event emission."""

    def test_emits_structured_log_record(self, caplog):
        """Events should be logged with structured extra fields."""
        telemetry = GatingTelemetry()

        with caplog.at_level(logging.WARNING, logger="fyla_gating.telemetry"):
            telemetry.warning(SUBSCRIPTION_FETCH_FAILED, error_type="ConnectionError")

        record = caplog.records[0]
        assert record.name == "fyla_gating.telemetry"
        assert record.levelno == logging.WARNING
        assert record.event_name == SUBSCRIPTION_FETCH_FAILED
        assert record.event_fields == {"error_type": "ConnectionError"}

    def test_sinks_receive_events(self):
        """Every sink should receive each event."""
        sink = RecordingSink()
        telemetry = GatingTelemetry(sinks=[sink])

        event = telemetry.info(USAGE_SERVED_STALE, resource="services", age_seconds=12.5)

        assert sink.events == [event]
        assert sink.names() == [USAGE_SERVED_STALE]
        assert event.fields["resource"] == "services"

    def test_failing_sink_does_not_break_emit(self, caplog):
        """A failing sink should be logged and skipped."""
        def broken(event):
            raise RuntimeError("sink down")

        sink = RecordingSink()
        telemetry = GatingTelemetry(sinks=[broken])
        telemetry.add_sink(sink)

        with caplog.at_level(logging.WARNING):
            telemetry.error(SUBSCRIPTION_FETCH_FAILED)

        assert sink.names() == [SUBSCRIPTION_FETCH_FAILED]
        assert any(r.getMessage() == "Telemetry sink failed" for r in caplog.records)

    def test_recording_sink_is_bounded(self):
        """RecordingSink should keep only the newest events."""
        sink = RecordingSink(max_events=3)
        telemetry = GatingTelemetry(sinks=[sink])

        for i in range(5):
            telemetry.info("test.event", index=i)

        assert [e.fields["index"] for e in sink.events] == [2, 3, 4]


class TestGatingEvent:
    """Tests for GatingEvent serialisation."""

    def test_to_json(self):
        """Events should serialise to JSON with their fields."""
        event = GatingEvent(
            event_name=SUBSCRIPTION_FETCH_FAILED,
            level=logging.WARNING,
            fields={"status_code": 503},
        )

        data = json.loads(event.to_json())

        assert data["event_name"] == SUBSCRIPTION_FETCH_FAILED
        assert data["level"] == "WARNING"
        assert data["fields"] == {"status_code": 503}
        assert data["event_id"]
        assert data["timestamp"]
