from __future__ import annotations

import asyncio
from typing import Any, List

from turnloop.src.core.config import AgentSettings
from turnloop.src.core.hooks import AgentHooks, CallbackHooks
from turnloop.src.core.orchestrator import Orchestrator
from turnloop.src.core.safety import PolicyGate, blocked_phrases
from turnloop.src.core.telemetry import InMemorySink, Telemetry
from turnloop.src.core.tools import ToolCatalog, ToolDefinition, ToolParameter
from turnloop.src.core.tracing import CallbackSpanExporter, SpanRecorder, TelemetrySpanExporter
from turnloop.src.core.types import ModelResponse, StopReason, ToolCallRequest
from turnloop.src.governance.gatekeeper import CapabilityGate, CapabilitySet


class RecordingHooks(AgentHooks):
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def on_model_call_start(self, turn, messages):
        self.events.append(("model_start", turn))

    def on_model_call_end(self, turn, response):
        self.events.append(("model_end", turn))

    def on_tool_call_start(self, name, args):
        self.events.append(("tool_start", name))

    def on_tool_call_end(self, name, result, error):
        self.events.append(("tool_end", name, result, error))

    def on_turn_end(self, turn):
        self.events.append(("turn_end", turn.turn_number))

    def on_error(self, error):
        self.events.append(("error", str(error)))


def _weather_setup() -> tuple:
    invoked: List[dict] = []

    def handler(ctx, args):
        invoked.append(dict(args))
        return "25C"

    catalog = ToolCatalog(
        [
            ToolDefinition(
                name="get_weather",
                parameters=(ToolParameter(name="city", required=True),),
                handler=handler,
            )
        ]
    )
    responses = [
        ModelResponse(tool_calls=[ToolCallRequest(id="call_1", name="get_weather", arguments={"city": "Shanghai"})]),
        ModelResponse(content="Shanghai is 25°C."),
    ]

    def model(messages, tools):
        return responses.pop(0)

    return model, catalog, invoked


def test_capability_denial_skips_handler_and_informs_model() -> None:
    deleted: List[Any] = []
    catalog = ToolCatalog(
        [
            ToolDefinition(name="delete_account", handler=lambda ctx, args: deleted.append(args)),
            ToolDefinition(name="lookup", handler=lambda ctx, args: "found"),
        ]
    )
    capabilities = CapabilitySet.model_validate({"tools": [{"name": "lookup"}]})
    responses = [
        ModelResponse(
            tool_calls=[
                ToolCallRequest(id="d1", name="delete_account"),
                ToolCallRequest(id="l1", name="lookup"),
            ]
        ),
        ModelResponse(content="I can only look things up."),
    ]
    sink = InMemorySink()
    orchestrator = Orchestrator(
        model=lambda messages, tools: responses.pop(0),
        catalog=catalog,
        capabilities=capabilities,
        telemetry=Telemetry(sinks=[sink]),
    )

    result = asyncio.run(orchestrator.run("delete me"))

    assert deleted == []
    denial = {"role": "tool", "tool_call_id": "d1", "content": "Error: tool not in capability manifest: delete_account"}
    assert denial in result.messages
    records = result.turns[0].tool_calls
    assert records[0].error == "tool not in capability manifest: delete_account"
    assert records[1].result == "found"
    assert result.stopped_reason is StopReason.COMPLETED
    (event,) = sink.named("orchestrator.tool_denied")
    assert event["tool"] == "delete_account"


def test_capability_gate_instance_is_accepted() -> None:
    gate = CapabilityGate.from_mapping({"tools": [{"name": "other"}]})
    model, catalog, invoked = _weather_setup()

    result = asyncio.run(Orchestrator(model=model, catalog=catalog, capabilities=gate).run("weather"))

    assert invoked == []
    assert result.turns[0].tool_calls[0].error == "tool not in capability manifest: get_weather"


def test_output_guardrail_blocks_final_answer() -> None:
    policy = PolicyGate().add_output("no_secrets", blocked_phrases("password"))
    model = lambda messages, tools: ModelResponse(content="The password is hunter2")

    result = asyncio.run(Orchestrator(model=model, policy=policy).run("tell me"))

    assert result.stopped_reason is StopReason.GUARDRAIL
    assert result.final_output == "Output guardrail triggered: no_secrets: blocked phrase: password"
    assert result.turns == ()


def test_output_guardrail_skipped_for_empty_answer() -> None:
    policy = PolicyGate().add_output("never", lambda ctx: False)

    result = asyncio.run(
        Orchestrator(model=lambda messages, tools: ModelResponse(content=""), policy=policy).run("hi")
    )

    assert result.stopped_reason is StopReason.COMPLETED
    assert result.final_output == ""


def test_hooks_fire_in_transcript_order() -> None:
    model, catalog, _ = _weather_setup()
    hooks = RecordingHooks()

    asyncio.run(Orchestrator(model=model, catalog=catalog, hooks=hooks).run("weather"))

    assert hooks.events == [
        ("model_start", 1),
        ("model_end", 1),
        ("tool_start", "get_weather"),
        ("tool_end", "get_weather", "25C", None),
        ("turn_end", 1),
        ("model_start", 2),
        ("model_end", 2),
        ("turn_end", 2),
    ]


def test_hook_errors_do_not_alter_control_flow() -> None:
    model, catalog, invoked = _weather_setup()

    def explode(*args):
        raise RuntimeError("observer bug")

    hooks = CallbackHooks(on_model_call_start=explode, on_turn_end=explode)

    result = asyncio.run(Orchestrator(model=model, catalog=catalog, hooks=hooks).run("weather"))

    assert result.stopped_reason is StopReason.COMPLETED
    assert invoked == [{"city": "Shanghai"}]


def test_on_error_receives_model_failure() -> None:
    hooks = RecordingHooks()

    def broken(messages, tools):
        raise ValueError("bad gateway")

    asyncio.run(Orchestrator(model=broken, hooks=hooks).run("hi"))

    assert hooks.events == [("model_start", 1), ("error", "bad gateway")]


def test_trace_records_nested_spans() -> None:
    model, catalog, _ = _weather_setup()
    exported = []
    policy = PolicyGate().add_input("length", lambda ctx: len(ctx.text) < 100)
    orchestrator = Orchestrator(
        model=model,
        catalog=catalog,
        policy=policy,
        tracer=SpanRecorder(CallbackSpanExporter(exported.append)),
    )

    result = asyncio.run(orchestrator.run("weather"))

    (root,) = exported
    assert root.kind == "agent"
    assert root.status == "ok"
    assert root.attributes["run_id"] == result.run_id
    assert root.attributes["stopped_reason"] == "completed"
    assert [(child.kind, child.name) for child in root.children] == [
        ("policy_check", "input_guardrails"),
        ("model_call", "model_call"),
        ("tool_call", "get_weather"),
        ("model_call", "model_call"),
    ]


def test_trace_marks_failures() -> None:
    exported = []

    def broken(messages, tools):
        raise RuntimeError("timeout")

    orchestrator = Orchestrator(model=broken, tracer=SpanRecorder(CallbackSpanExporter(exported.append)))
    asyncio.run(orchestrator.run("hi"))

    (root,) = exported
    assert root.status == "error"
    assert root.children[0].status == "error"
    assert root.children[0].error == "timeout"


def test_disabled_tracer_exports_nothing() -> None:
    exported = []
    model, catalog, _ = _weather_setup()
    tracer = SpanRecorder(CallbackSpanExporter(exported.append), enabled=False)

    asyncio.run(Orchestrator(model=model, catalog=catalog, tracer=tracer).run("weather"))

    assert exported == []


def test_telemetry_events_for_a_run() -> None:
    sink = InMemorySink()
    model, catalog, _ = _weather_setup()

    result = asyncio.run(Orchestrator(model=model, catalog=catalog, telemetry=Telemetry(sinks=[sink])).run("w"))

    names = [event["event"] for event in sink.events]
    assert names == ["orchestrator.run_started", "orchestrator.tool_completed", "orchestrator.run_finished"]
    finished = sink.named("orchestrator.run_finished")[0]
    assert finished["run_id"] == result.run_id
    assert finished["stopped_reason"] == "completed"
    assert finished["tool_calls"] == 1


def test_from_settings_applies_configuration() -> None:
    settings = AgentSettings.model_validate(
        {
            "system_prompt": "Be brief.",
            "max_turns": 2,
            "loop_guard": {"enabled": False},
            "tracing": {"enabled": True, "exporter": "telemetry"},
            "capabilities": {"tools": [{"name": "get_weather"}]},
        }
    )
    sink = InMemorySink()
    model, catalog, invoked = _weather_setup()

    orchestrator = Orchestrator.from_settings(settings, model, catalog, telemetry=Telemetry(sinks=[sink]))
    result = asyncio.run(orchestrator.run("weather"))

    assert orchestrator.max_turns == 2
    assert orchestrator.loop_guard is None
    assert result.messages[0] == {"role": "system", "content": "Be brief."}
    assert invoked == [{"city": "Shanghai"}]
    (trace_event,) = sink.named("trace.finished")
    assert trace_event["status"] == "ok"
    assert isinstance(orchestrator.tracer.exporter, TelemetrySpanExporter)
