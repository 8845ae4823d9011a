from __future__ import annotations

import asyncio
import threading

import pytest

from turnloop.src.core.tools import (
    ToolArgumentError,
    ToolCatalog,
    ToolDefinition,
    ToolExecutionError,
    ToolNotFoundError,
    ToolParameter,
    render_tool_result,
)
from turnloop.src.core.types import CancelToken, ToolContext


def _weather_tool(handler=None) -> ToolDefinition:
    return ToolDefinition(
        name="get_weather",
        description="Look up the current weather",
        parameters=(
            ToolParameter(name="city", type="string", required=True),
            ToolParameter(name="units", type="string", default="metric", enum=("metric", "imperial")),
        ),
        handler=handler or (lambda ctx, args: f"{args['city']}:{args['units']}"),
    )


def test_register_overwrites_existing_entry() -> None:
    catalog = ToolCatalog()
    catalog.register(_weather_tool())
    replacement = _weather_tool(handler=lambda ctx, args: "new")
    catalog.register(replacement)

    assert len(catalog) == 1
    assert catalog.get("get_weather") is replacement


def test_list_is_sorted_and_remove_reports_presence() -> None:
    catalog = ToolCatalog()
    for name in ("zeta", "alpha", "mid"):
        catalog.register(ToolDefinition(name=name, handler=lambda ctx, args: None))

    assert catalog.names() == ["alpha", "mid", "zeta"]
    assert [tool.name for tool in catalog.list()] == ["alpha", "mid", "zeta"]
    assert catalog.remove("mid") is True
    assert catalog.remove("mid") is False
    assert "mid" not in catalog
    assert catalog.get("mid") is None


def test_openai_schema_lists_parameters() -> None:
    catalog = ToolCatalog([_weather_tool()])

    (schema,) = catalog.openai_schemas()

    assert schema["type"] == "function"
    function = schema["function"]
    assert function["name"] == "get_weather"
    assert function["parameters"]["required"] == ["city"]
    assert function["parameters"]["properties"]["units"] == {
        "type": "string",
        "default": "metric",
        "enum": ["metric", "imperial"],
    }


def test_raw_schema_overrides_generated_parameters() -> None:
    raw = {"type": "object", "properties": {"query": {"oneOf": [{"type": "string"}, {"type": "integer"}]}}}
    definition = ToolDefinition(name="search", raw_schema=raw, handler=lambda ctx, args: None)

    assert definition.json_schema()["parameters"] == raw


def test_malformed_raw_schema_is_rejected_on_construction() -> None:
    with pytest.raises(ValueError, match="Invalid parameter schema for tool 'broken'"):
        ToolDefinition(name="broken", raw_schema={"type": "objekt"}, handler=lambda ctx, args: None)


def test_schema_corrupted_after_registration_is_an_argument_error() -> None:
    definition = ToolDefinition(name="search", raw_schema={"type": "object"}, handler=lambda ctx, args: None)
    catalog = ToolCatalog([definition])
    definition.raw_schema["type"] = "objekt"

    with pytest.raises(ToolArgumentError, match="invalid parameter schema"):
        catalog.prepare_arguments("search", {"a": 1})


def test_prepare_arguments_fills_defaults() -> None:
    catalog = ToolCatalog([_weather_tool()])

    prepared = catalog.prepare_arguments("get_weather", {"city": "Shanghai"})

    assert prepared == {"city": "Shanghai", "units": "metric"}


def test_prepare_arguments_reports_missing_required_argument() -> None:
    catalog = ToolCatalog([_weather_tool()])

    with pytest.raises(ToolArgumentError) as excinfo:
        catalog.prepare_arguments("get_weather", {})

    assert str(excinfo.value) == "tool 'get_weather' missing required argument: 'city'"
    assert excinfo.value.tool == "get_weather"


def test_prepare_arguments_validates_declared_types() -> None:
    catalog = ToolCatalog([_weather_tool()])

    with pytest.raises(ToolArgumentError, match="invalid argument units"):
        catalog.prepare_arguments("get_weather", {"city": "Oslo", "units": "kelvin"})


def test_unknown_tool_raises_not_found() -> None:
    catalog = ToolCatalog()

    with pytest.raises(ToolNotFoundError, match="tool not found: 'missing'"):
        catalog.prepare_arguments("missing", {})


def test_dispatch_invokes_handler_with_context() -> None:
    seen = {}

    def handler(ctx: ToolContext, args):
        seen["ctx"] = ctx
        return {"city": args["city"], "temp": 25}

    catalog = ToolCatalog([_weather_tool(handler)])
    token = CancelToken()
    ctx = ToolContext(tool_name="", call_id="call-1", cancel=token)

    result = asyncio.run(catalog.dispatch("get_weather", {"city": "Paris"}, ctx))

    assert result == {"city": "Paris", "temp": 25}
    assert seen["ctx"].tool_name == "get_weather"
    assert seen["ctx"].call_id == "call-1"
    assert seen["ctx"].cancel is token


def test_dispatch_wraps_handler_failures() -> None:
    def handler(ctx, args):
        raise ValueError("upstream unavailable")

    catalog = ToolCatalog([_weather_tool(handler)])

    with pytest.raises(ToolExecutionError, match="upstream unavailable") as excinfo:
        asyncio.run(catalog.dispatch("get_weather", {"city": "Paris"}))

    assert isinstance(excinfo.value.__cause__, ValueError)


def test_tool_decorator_builds_definition_from_signature() -> None:
    catalog = ToolCatalog()

    @catalog.tool
    def add(a: int, b: int = 2) -> int:
        """Add two integers.

        Longer description that is not part of the summary.
        """
        return a + b

    definition = catalog.get("add")
    assert definition is not None
    assert definition.description == "Add two integers."
    params = {param.name: param for param in definition.parameters}
    assert params["a"].type == "integer" and params["a"].required
    assert params["b"].default == 2 and not params["b"].required
    assert asyncio.run(catalog.dispatch("add", {"a": 3})) == 5


def test_async_function_tool_receives_context() -> None:
    catalog = ToolCatalog()

    @catalog.tool(name="echo_call")
    async def echo(ctx: ToolContext, text: str) -> str:
        return f"{ctx.call_id}:{text}"

    ctx = ToolContext(tool_name="echo_call", call_id="c9")
    assert asyncio.run(catalog.dispatch("echo_call", {"text": "hi"}, ctx)) == "c9:hi"
    assert [param.name for param in catalog.get("echo_call").parameters] == ["text"]


def test_duplicate_parameter_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate parameter"):
        ToolDefinition(name="dup", parameters=(ToolParameter(name="x"), ToolParameter(name="x")))


def test_unknown_parameter_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown parameter type"):
        ToolParameter(name="x", type="datetime")


def test_render_tool_result_serialises_structures() -> None:
    assert render_tool_result(None) == ""
    assert render_tool_result("25C") == "25C"
    assert render_tool_result({"temp": 25}) == '{"temp": 25}'
    assert render_tool_result(b"raw") == "raw"


def test_concurrent_registration_is_consistent() -> None:
    catalog = ToolCatalog()

    def register_batch(offset: int) -> None:
        for index in range(50):
            catalog.register(ToolDefinition(name=f"tool_{offset}_{index}", handler=lambda ctx, args: None))

    threads = [threading.Thread(target=register_batch, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(catalog) == 200
    assert len(catalog.json_schemas()) == 200
