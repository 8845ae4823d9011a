from __future__ import annotations

import asyncio
import json

import pytest

from turnloop.src.core.tools import ToolCatalog, ToolDefinition, ToolParameter
from turnloop.src.core.tools.openai import handle_tool_calls, outcomes_to_messages, parse_tool_calls
from turnloop.src.core.types import CancelToken, ModelResponse, ToolCallRequest


def _openai_call(call_id: str, name: str, arguments: str) -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def test_from_openai_decodes_json_arguments() -> None:
    request = ToolCallRequest.from_openai(_openai_call("call_1", "get_weather", '{"city": "Shanghai"}'))

    assert request == ToolCallRequest(id="call_1", name="get_weather", arguments={"city": "Shanghai"})


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", ""])
def test_from_openai_discards_unusable_arguments(raw: str) -> None:
    request = ToolCallRequest.from_openai(_openai_call("call_1", "noop", raw))

    assert request.arguments == {}


def test_from_openai_requires_function_name() -> None:
    with pytest.raises(ValueError):
        ToolCallRequest.from_openai({"id": "x", "function": {"arguments": "{}"}})


def test_to_openai_round_trips_arguments_as_string() -> None:
    request = ToolCallRequest(id="call_2", name="search", arguments={"q": "weather"})

    payload = request.to_openai()

    assert payload["type"] == "function"
    assert json.loads(payload["function"]["arguments"]) == {"q": "weather"}


def test_model_response_from_openai_message() -> None:
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [_openai_call("call_1", "get_weather", '{"city": "Paris"}')],
    }

    response = ModelResponse.from_openai(message)

    assert response.content == ""
    assert response.tool_calls[0].arguments == {"city": "Paris"}


def test_model_response_coerces_plain_mappings() -> None:
    response = ModelResponse(content="hi", tool_calls=[{"id": "c", "name": "echo", "arguments": {"x": 1}}])

    assert response.tool_calls == (ToolCallRequest(id="c", name="echo", arguments={"x": 1}),)


def test_handle_tool_calls_reports_errors_per_call() -> None:
    catalog = ToolCatalog(
        [
            ToolDefinition(
                name="get_weather",
                parameters=(ToolParameter(name="city", required=True),),
                handler=lambda ctx, args: "25C",
            )
        ]
    )
    calls = parse_tool_calls(
        [
            _openai_call("call_1", "get_weather", '{"city": "Shanghai"}'),
            _openai_call("call_2", "get_weather", "{}"),
            _openai_call("call_3", "unknown", "{}"),
        ]
    )

    outcomes = asyncio.run(handle_tool_calls(catalog, calls))
    messages = outcomes_to_messages(outcomes)

    assert [outcome.error is None for outcome in outcomes] == [True, False, False]
    assert messages[0] == {"role": "tool", "tool_call_id": "call_1", "content": "25C"}
    assert "missing required argument: 'city'" in messages[1]["content"]
    assert messages[2]["content"] == "tool not found: 'unknown'"


def test_handle_tool_calls_stops_once_cancelled() -> None:
    seen = []

    def stop_after_first(ctx, args):
        seen.append(args["step"])
        ctx.cancel.cancel("user abort")
        return "done"

    catalog = ToolCatalog([ToolDefinition(name="step", handler=stop_after_first)])
    calls = [
        ToolCallRequest(id="s1", name="step", arguments={"step": 1}),
        ToolCallRequest(id="s2", name="step", arguments={"step": 2}),
    ]

    outcomes = asyncio.run(handle_tool_calls(catalog, calls, cancel=CancelToken()))

    assert seen == [1]
    assert [outcome.tool_call_id for outcome in outcomes] == ["s1"]
    assert outcomes[0].content == "done"
