from __future__ import annotations

import inspect
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, UnknownType

from ..types import ToolContext


logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolContext, Dict[str, Any]], Union[Any, Awaitable[Any]]]

PARAMETER_TYPES = ("string", "integer", "number", "boolean", "array", "object")

_ANNOTATION_TYPES: Dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "list": "array",
    "dict": "object",
}


class ToolError(RuntimeError):
    """Base class for failures surfaced while dispatching a tool call."""

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(message)
        self.tool = tool


class ToolNotFoundError(ToolError, KeyError):
    def __init__(self, tool: str) -> None:
        super().__init__(tool, f"tool not found: {tool!r}")

    def __str__(self) -> str:
        return self.args[0]


class ToolArgumentError(ToolError, ValueError):
    """Raised when arguments are missing or violate the declared schema."""


class ToolExecutionError(ToolError):
    """Raised when a handler fails; the original exception is chained."""


def _normalise_type(kind: str | None) -> str:
    if not kind:
        return "string"
    kind = str(kind).lower()
    if kind not in PARAMETER_TYPES:
        raise ValueError(f"Unknown parameter type: {kind}")
    return kind


@dataclass(frozen=True)
class ToolParameter:
    """Description of a single argument accepted by a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    enum: Sequence[Any] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("parameter name must not be empty")
        object.__setattr__(self, "type", _normalise_type(self.type))
        object.__setattr__(self, "enum", tuple(self.enum or ()))

    def to_schema(self) -> Dict[str, Any]:
        prop: Dict[str, Any] = {"type": self.type}
        if self.description:
            prop["description"] = self.description
        if self.default is not None:
            prop["default"] = self.default
        if self.enum:
            prop["enum"] = list(self.enum)
        return prop


@dataclass(frozen=True)
class ToolDefinition:
    """A callable tool: metadata exposed to the model plus its handler.

    ``raw_schema`` replaces the generated ``parameters`` object verbatim, which
    preserves nested, ``oneOf`` or other constructs the flat parameter list
    cannot express (for example schemas discovered from remote tool servers).
    """

    name: str
    description: str = ""
    parameters: Sequence[ToolParameter] = field(default_factory=tuple)
    handler: Optional[ToolHandler] = field(default=None, compare=False)
    raw_schema: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("tool name must not be empty")
        params = tuple(_coerce_parameter(param) for param in self.parameters)
        seen = set()
        for param in params:
            if param.name in seen:
                raise ValueError(f"Duplicate parameter {param.name!r} for tool {self.name!r}")
            seen.add(param.name)
        object.__setattr__(self, "name", str(self.name))
        object.__setattr__(self, "description", str(self.description or "").strip())
        object.__setattr__(self, "parameters", params)
        if self.raw_schema is not None:
            object.__setattr__(self, "raw_schema", json.loads(json.dumps(dict(self.raw_schema))))
            try:
                Draft202012Validator.check_schema(self.raw_schema)
            except SchemaError as exc:
                raise ValueError(f"Invalid parameter schema for tool {self.name!r}: {exc.message}") from exc

    def parameters_schema(self) -> Dict[str, Any]:
        if self.raw_schema is not None:
            return json.loads(json.dumps(self.raw_schema))
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {param.name: param.to_schema() for param in self.parameters},
        }
        required = [param.name for param in self.parameters if param.required]
        if required:
            schema["required"] = required
        return schema

    def json_schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema(),
        }

    def openai_schema(self) -> Dict[str, Any]:
        return {"type": "function", "function": self.json_schema()}

    @classmethod
    def from_function(
        cls,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> "ToolDefinition":
        """Synthesise a definition from a plain function.

        Keyword parameters become tool parameters; annotations pick the JSON
        type and parameters without defaults are required.  An optional
        leading ``ctx`` parameter receives the :class:`ToolContext`.
        """

        signature = inspect.signature(fn)
        wants_ctx = False
        params: List[ToolParameter] = []
        for index, param in enumerate(signature.parameters.values()):
            if index == 0 and param.name in {"ctx", "context"}:
                wants_ctx = True
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue
            has_default = param.default is not inspect.Parameter.empty
            params.append(
                ToolParameter(
                    name=param.name,
                    type=_ANNOTATION_TYPES.get(param.annotation, "string"),
                    required=not has_default,
                    default=param.default if has_default else None,
                )
            )
        doc = inspect.getdoc(fn) or ""
        summary = doc.strip().splitlines()[0] if doc.strip() else ""

        if inspect.iscoroutinefunction(fn):

            async def handler(ctx: ToolContext, args: Dict[str, Any]) -> Any:
                if wants_ctx:
                    return await fn(ctx, **args)
                return await fn(**args)

        else:

            def handler(ctx: ToolContext, args: Dict[str, Any]) -> Any:
                if wants_ctx:
                    return fn(ctx, **args)
                return fn(**args)

        return cls(
            name=name or fn.__name__,
            description=description if description is not None else summary or (name or fn.__name__),
            parameters=tuple(params),
            handler=handler,
        )


def _coerce_parameter(param: Any) -> ToolParameter:
    if isinstance(param, ToolParameter):
        return param
    if isinstance(param, Mapping):
        return ToolParameter(**dict(param))
    raise TypeError(f"Unsupported parameter definition: {param!r}")


def render_tool_result(value: Any) -> str:
    """Render a handler return value as transcript text."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):  # pragma: no cover - circular structures
        return str(value)


class ToolCatalog:
    """Thread-safe registry mapping tool names to :class:`ToolDefinition` objects.

    A catalog is an explicitly owned object: share one instance between
    orchestrators to expose the same tools to concurrent runs.  Handlers are
    always invoked outside the registry lock.
    """

    def __init__(self, tools: Sequence[ToolDefinition] | None = None) -> None:
        self._lock = threading.RLock()
        self._tools: Dict[str, ToolDefinition] = {}
        for definition in tools or ():
            self.register(definition)

    def register(self, definition: ToolDefinition) -> ToolDefinition:
        if not isinstance(definition, ToolDefinition):
            raise TypeError("register() expects a ToolDefinition")
        with self._lock:
            replaced = definition.name in self._tools
            self._tools[definition.name] = definition
        logger.debug("%s tool %s", "Replaced" if replaced else "Registered", definition.name)
        return definition

    def tool(
        self,
        fn: Callable[..., Any] | None = None,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Any:
        """Decorator registering ``fn`` through :meth:`ToolDefinition.from_function`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(ToolDefinition.from_function(func, name=name, description=description))
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def get(self, name: str) -> ToolDefinition | None:
        with self._lock:
            return self._tools.get(name)

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._tools.pop(name, None) is not None
        if removed:
            logger.debug("Removed tool %s", name)
        return removed

    def list(self) -> List[ToolDefinition]:
        with self._lock:
            return [self._tools[key] for key in sorted(self._tools)]

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._tools)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self.list())

    def json_schemas(self) -> List[Dict[str, Any]]:
        return [definition.json_schema() for definition in self.list()]

    def openai_schemas(self) -> List[Dict[str, Any]]:
        return [definition.openai_schema() for definition in self.list()]

    def _require(self, name: str) -> ToolDefinition:
        definition = self.get(name)
        if definition is None:
            raise ToolNotFoundError(name)
        return definition

    def prepare_arguments(self, name: str, args: Mapping[str, Any] | None) -> Dict[str, Any]:
        """Return a validated copy of ``args`` with declared defaults filled in.

        Raises:
            ToolNotFoundError: If ``name`` is not registered.
            ToolArgumentError: If a required argument is missing or a value
                violates the tool's parameter schema.
        """

        definition = self._require(name)
        prepared: Dict[str, Any] = dict(args or {})
        for param in definition.parameters:
            if param.name not in prepared and not param.required and param.default is not None:
                prepared[param.name] = param.default
        for param in definition.parameters:
            if param.required and param.name not in prepared:
                raise ToolArgumentError(name, f"tool {name!r} missing required argument: {param.name!r}")
        _validate_against_schema(name, definition.parameters_schema(), prepared)
        return prepared

    async def dispatch(
        self,
        name: str,
        args: Mapping[str, Any] | None,
        ctx: ToolContext | None = None,
    ) -> Any:
        """Validate ``args`` and invoke the handler registered under ``name``.

        Any exception escaping the handler is wrapped in
        :class:`ToolExecutionError` so a misbehaving tool degrades to a
        tool-level error instead of aborting the caller.
        """

        definition = self._require(name)
        if definition.handler is None:
            raise ToolExecutionError(name, f"tool {name!r} has no handler")
        prepared = self.prepare_arguments(name, args)
        return await self.invoke(definition, prepared, ctx)

    async def invoke(
        self,
        definition: ToolDefinition,
        prepared: Dict[str, Any],
        ctx: ToolContext | None = None,
    ) -> Any:
        """Invoke ``definition``'s handler with already prepared arguments."""

        if definition.handler is None:
            raise ToolExecutionError(definition.name, f"tool {definition.name!r} has no handler")
        if ctx is None:
            ctx = ToolContext(tool_name=definition.name)
        else:
            ctx.tool_name = definition.name
        try:
            value = definition.handler(ctx, prepared)
            if inspect.isawaitable(value):
                value = await value
        except ToolError:
            raise
        except Exception as exc:
            raise ToolExecutionError(definition.name, str(exc) or exc.__class__.__name__) from exc
        return value


def _validate_against_schema(tool: str, schema: Mapping[str, Any], args: Mapping[str, Any]) -> None:
    try:
        Draft202012Validator.check_schema(schema)
        validator = Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(dict(args)), key=lambda err: list(err.path))
    except SchemaError as exc:
        raise ToolArgumentError(tool, f"tool {tool!r} has an invalid parameter schema: {exc.message}") from exc
    except UnknownType as exc:
        raise ToolArgumentError(tool, f"tool {tool!r} has an invalid parameter schema: unknown type {exc.type!r}") from exc
    if not errors:
        return
    error = errors[0]
    location = "/".join(str(part) for part in error.path) or "<root>"
    raise ToolArgumentError(tool, f"tool {tool!r} invalid argument {location}: {error.message}")


__all__ = [
    "PARAMETER_TYPES",
    "ToolArgumentError",
    "ToolCatalog",
    "ToolDefinition",
    "ToolError",
    "ToolExecutionError",
    "ToolHandler",
    "ToolNotFoundError",
    "ToolParameter",
    "render_tool_result",
]
