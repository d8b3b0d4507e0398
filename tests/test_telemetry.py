"""Tests for OTel tracing helpers and runner spans."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from vmprovision.runner import PipelineRunner
from vmprovision.telemetry import add_span_event, configure_tracing, shutdown_tracing


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_span():
    """Create a mock OTel span that is recording."""
    span = MagicMock()
    span.is_recording.return_value = True
    return span


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def traced_runner(ledger, base_env, exporter):
    """Runner whose spans go to an in-memory exporter (no global provider)."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    runner = PipelineRunner(ledger=ledger, env=base_env, run_id="trace-run")
    runner._tracer = provider.get_tracer("test")
    return runner


# ---------------------------------------------------------------------------
# Tracing helpers
# ---------------------------------------------------------------------------


class TestAddSpanEvent:
    def test_records_on_recording_span(self, mock_span):
        with patch("vmprovision.telemetry.otel_trace") as mock_trace:
            mock_trace.get_current_span.return_value = mock_span
            add_span_event("cache.restored", {"cache.key": "ruby-3.3.0-x86_64"})

        mock_span.add_event.assert_called_once_with(
            name="cache.restored", attributes={"cache.key": "ruby-3.3.0-x86_64"}
        )

    def test_ignores_non_recording_span(self, mock_span):
        mock_span.is_recording.return_value = False
        with patch("vmprovision.telemetry.otel_trace") as mock_trace:
            mock_trace.get_current_span.return_value = mock_span
            add_span_event("cache.stored", {})

        mock_span.add_event.assert_not_called()


class TestConfigureTracing:
    def test_installs_provider(self):
        with patch("vmprovision.telemetry.otel_trace.set_tracer_provider") as set_provider:
            assert configure_tracing("localhost:4317", "vm-test") is True

        provider = set_provider.call_args[0][0]
        assert provider.resource.attributes["service.name"] == "vm-test"
        provider.shutdown()

    def test_failure_returns_false(self):
        with patch(
            "vmprovision.telemetry.otel_trace.set_tracer_provider",
            side_effect=RuntimeError("already set"),
        ):
            assert configure_tracing("localhost:4317") is False

    def test_shutdown_swallows_export_errors(self):
        provider = MagicMock()
        provider.force_flush.side_effect = RuntimeError("collector down")
        with patch("vmprovision.telemetry.otel_trace.get_tracer_provider", return_value=provider):
            shutdown_tracing()


# ---------------------------------------------------------------------------
# Runner spans
# ---------------------------------------------------------------------------


class TestRunnerSpans:
    def test_run_and_step_spans(self, traced_runner, make_step, exporter):
        traced_runner.run([make_step("a"), make_step("b")])

        spans = exporter.get_finished_spans()
        names = [s.name for s in spans]
        assert names == ["provision.step", "provision.step", "provision.run"]

        run_span = spans[-1]
        assert run_span.attributes["run.id"] == "trace-run"
        assert run_span.attributes["run.completed"] == 2
        assert [s.attributes["step.name"] for s in spans[:2]] == ["a", "b"]
        assert all(s.parent.span_id == run_span.context.span_id for s in spans[:2])

    def test_failed_step_marks_error(self, traced_runner, make_step, exporter):
        traced_runner.run([make_step("a", fail_times=1)])

        step_span, run_span = exporter.get_finished_spans()
        assert step_span.status.status_code == StatusCode.ERROR
        assert step_span.attributes["step.outcome"] == "failed"
        assert run_span.attributes["run.failed_step"] == "a"
        assert run_span.status.status_code == StatusCode.ERROR
