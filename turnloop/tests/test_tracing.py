from __future__ import annotations

import logging

from turnloop.src.core.telemetry import InMemorySink, Telemetry
from turnloop.src.core.tracing import (
    NULL_TRACE,
    CallbackSpanExporter,
    LoggingSpanExporter,
    SpanKind,
    SpanRecorder,
    TelemetrySpanExporter,
)


def test_disabled_recorder_returns_null_trace() -> None:
    exported = []
    recorder = SpanRecorder(CallbackSpanExporter(exported.append), enabled=False)

    trace = recorder.new_trace()
    span = trace.open_span(SpanKind.AGENT)
    trace.close_span(span)

    assert trace is NULL_TRACE
    assert span is None
    assert exported == []


def test_spans_nest_under_root_and_export_on_close() -> None:
    exported = []
    recorder = SpanRecorder(CallbackSpanExporter(exported.append))
    trace = recorder.new_trace()

    root = trace.open_span(SpanKind.AGENT, attributes={"run_id": "r1"})
    model = trace.open_span(SpanKind.MODEL_CALL, attributes={"turn": 1})
    trace.close_span(model)
    tool = trace.open_span(SpanKind.TOOL_CALL, "get_weather")
    trace.close_span(tool, "error", "boom")
    assert exported == []
    trace.close_span(root)

    assert exported == [root]
    assert [child.kind for child in root.children] == [SpanKind.MODEL_CALL, SpanKind.TOOL_CALL]
    assert all(child.parent_id == root.span_id for child in root.children)
    assert all(child.trace_id == trace.trace_id for child in root.iter_all())
    assert tool.status == "error" and tool.error == "boom"
    assert root.status == "ok"
    assert root.duration_ms is not None


def test_closing_parent_closes_open_children() -> None:
    exported = []
    trace = SpanRecorder(CallbackSpanExporter(exported.append)).new_trace()
    root = trace.open_span(SpanKind.AGENT)
    dangling = trace.open_span(SpanKind.TOOL_CALL, "slow")

    trace.close_span(root)

    assert dangling.status == "error"
    assert dangling.error == "span left open"
    assert exported == [root]


def test_traces_are_independent() -> None:
    recorder = SpanRecorder()
    first = recorder.new_trace()
    second = recorder.new_trace()

    assert first.trace_id != second.trace_id
    first.open_span(SpanKind.AGENT)
    assert second.root is None


def test_span_serialisation() -> None:
    trace = SpanRecorder().new_trace()
    root = trace.open_span(SpanKind.AGENT)
    child = trace.open_span(SpanKind.POLICY_CHECK, "input_guardrails")
    child.set_attribute("checks", 2)
    trace.close_span(child)
    trace.close_span(root)

    payload = root.to_dict()

    assert payload["kind"] == "agent"
    assert payload["children"][0]["name"] == "input_guardrails"
    assert payload["children"][0]["attributes"] == {"checks": 2}


def test_exporter_failures_are_contained(caplog) -> None:
    def explode(span):
        raise RuntimeError("collector down")

    trace = SpanRecorder(CallbackSpanExporter(explode)).new_trace()
    root = trace.open_span(SpanKind.AGENT)
    with caplog.at_level(logging.WARNING, logger="turnloop.src.core.tracing"):
        trace.close_span(root)

    assert "collector down" in caplog.text


def test_telemetry_exporter_emits_trace_event() -> None:
    sink = InMemorySink()
    trace = SpanRecorder(TelemetrySpanExporter(Telemetry(sinks=[sink]))).new_trace()
    root = trace.open_span(SpanKind.AGENT)
    trace.close_span(trace.open_span(SpanKind.MODEL_CALL))
    trace.close_span(root)

    (event,) = sink.named("trace.finished")
    assert event["trace_id"] == trace.trace_id
    assert event["span_count"] == 2
    assert event["root"]["children"][0]["kind"] == "model_call"


def test_logging_exporter_writes_one_line_per_span(caplog) -> None:
    trace = SpanRecorder(LoggingSpanExporter()).new_trace()
    root = trace.open_span(SpanKind.AGENT)
    trace.close_span(trace.open_span(SpanKind.TOOL_CALL, "lookup"))
    with caplog.at_level(logging.INFO, logger="turnloop.trace"):
        trace.close_span(root)

    lines = [record for record in caplog.records if record.name == "turnloop.trace"]
    assert len(lines) == 2
    assert "tool_call lookup" in lines[1].getMessage()
