"""Convenience exports for the turnloop package.

To keep import-time side effects minimal we lazily proxy attributes from
``turnloop.src``; importing :mod:`turnloop` does not pull in pydantic,
jsonschema or any runtime module until a name is actually used.
"""

from __future__ import annotations

from typing import Any

__all__ = (
    "AgentHooks",
    "AgentSettings",
    "CallbackHooks",
    "CancelToken",
    "CapabilityGate",
    "CapabilitySet",
    "ModelResponse",
    "Orchestrator",
    "PolicyGate",
    "RepetitionGuard",
    "RepetitionGuardConfig",
    "RunCancelled",
    "RunManifest",
    "RunResult",
    "SpanRecorder",
    "StopReason",
    "Telemetry",
    "ToolCallRecord",
    "ToolCallRequest",
    "ToolCatalog",
    "ToolContext",
    "ToolDefinition",
    "ToolParameter",
    "TurnRecord",
    "load_settings",
)


def __getattr__(name: str) -> Any:
    if name in __all__:
        from turnloop import src as _api

        return getattr(_api, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
