"""Lazy public interface for ``turnloop.src``."""

from __future__ import annotations

import importlib
from typing import Any, Dict

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

_IMPORT_MAP: Dict[str, str] = {
    "AgentHooks": "turnloop.src.core.hooks",
    "CallbackHooks": "turnloop.src.core.hooks",
    "AgentSettings": "turnloop.src.core.config",
    "load_settings": "turnloop.src.core.config",
    "CancelToken": "turnloop.src.core.types",
    "ModelResponse": "turnloop.src.core.types",
    "RunCancelled": "turnloop.src.core.types",
    "RunResult": "turnloop.src.core.types",
    "StopReason": "turnloop.src.core.types",
    "ToolCallRecord": "turnloop.src.core.types",
    "ToolCallRequest": "turnloop.src.core.types",
    "ToolContext": "turnloop.src.core.types",
    "TurnRecord": "turnloop.src.core.types",
    "CapabilityGate": "turnloop.src.governance.gatekeeper",
    "CapabilitySet": "turnloop.src.governance.gatekeeper",
    "Orchestrator": "turnloop.src.core.orchestrator",
    "PolicyGate": "turnloop.src.core.safety",
    "RepetitionGuard": "turnloop.src.core.loop_guard",
    "RepetitionGuardConfig": "turnloop.src.core.loop_guard",
    "RunManifest": "turnloop.src.core.manifest",
    "SpanRecorder": "turnloop.src.core.tracing",
    "Telemetry": "turnloop.src.core.telemetry",
    "ToolCatalog": "turnloop.src.core.tools",
    "ToolDefinition": "turnloop.src.core.tools",
    "ToolParameter": "turnloop.src.core.tools",
}


def __getattr__(name: str) -> Any:
    module_name = _IMPORT_MAP.get(name)
    if module_name is None:
        raise AttributeError(name)
    module = importlib.import_module(module_name)
    return getattr(module, name)


def __dir__() -> list[str]:
    return sorted(set(__all__) | set(globals().keys()))
