"""Declarative agent configuration.

Settings are plain JSON documents validated with Pydantic so a deployment can
describe an agent (prompt, turn budget, repetition thresholds, tracing and
capability restrictions) without writing code.  Runtime objects such as the
model function and tool handlers are supplied separately when the
orchestrator is built via :meth:`Orchestrator.from_settings`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..governance.gatekeeper import CapabilitySet
from .loop_guard import RepetitionGuardConfig


class SettingsError(ValueError):
    """Raised when a settings document cannot be read or validated."""


class LoopGuardSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_repeat_calls: int = Field(default=3, ge=0)
    max_same_tool_in_window: int = Field(default=5, ge=0)
    window_size: int = Field(default=10, ge=1)
    detect_ping_pong: bool = True

    @model_validator(mode="after")
    def _repeat_fits_window(self) -> "LoopGuardSettings":
        if self.max_repeat_calls > self.window_size:
            raise ValueError("max_repeat_calls must not exceed window_size")
        return self

    def to_config(self) -> RepetitionGuardConfig:
        return RepetitionGuardConfig(**self.model_dump())


class TracingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    exporter: str = Field(default="logging", pattern="^(null|logging|telemetry)$")


class AgentSettings(BaseModel):
    """Top-level settings for one agent loop."""

    model_config = ConfigDict(extra="forbid")

    name: str = "agent"
    system_prompt: str | None = None
    max_turns: int = Field(default=10, ge=1)
    loop_guard: LoopGuardSettings = Field(default_factory=LoopGuardSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    capabilities: CapabilitySet | None = None

    def guard_config(self) -> RepetitionGuardConfig | None:
        if not self.loop_guard.enabled:
            return None
        return self.loop_guard.to_config()


def parse_settings(payload: Mapping[str, Any]) -> AgentSettings:
    try:
        return AgentSettings.model_validate(dict(payload))
    except ValidationError as exc:
        raise SettingsError(f"Invalid agent settings: {exc}") from exc


def load_settings(path: Path | str) -> AgentSettings:
    """Read and validate an :class:`AgentSettings` JSON document."""

    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsError(f"Failed to read settings {path}: {exc}") from exc
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SettingsError(f"Settings in {path} must be a JSON object")
    return parse_settings(payload)


__all__ = [
    "AgentSettings",
    "LoopGuardSettings",
    "SettingsError",
    "TracingSettings",
    "load_settings",
    "parse_settings",
]
