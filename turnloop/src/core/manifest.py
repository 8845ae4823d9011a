"""Run manifest schema and helpers.

A manifest is the persisted form of a :class:`RunResult` so downstream
systems (session stores, dashboards, regression suites) can replay and
analyse a run without importing the runtime.  The schema is expressed with
Pydantic so manifests are self-describing, versioned and easy to validate in
tests and from the CLI.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .types import RunResult, StopReason


MANIFEST_SCHEMA_VERSION = "1.0.0"


class ManifestToolCall(BaseModel):
    """Serialised representation of :class:`ToolCallRecord`."""

    tool_name: str
    call_id: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ManifestTurn(BaseModel):
    """Serialised representation of :class:`TurnRecord`."""

    turn_number: int = Field(ge=1)
    model_output: str = ""
    tool_calls: Sequence[ManifestToolCall] = Field(default_factory=list)
    is_final: bool = False


class RunManifest(BaseModel):
    """Versioned manifest describing one orchestrator run."""

    model_config = ConfigDict(use_enum_values=True)

    schema_version: str = Field(default=MANIFEST_SCHEMA_VERSION)
    run_id: str
    created_at: str
    final_output: str = ""
    stopped_reason: StopReason
    total_turns: int = Field(ge=0)
    tool_calls_count: int = Field(ge=0)
    turns: Sequence[ManifestTurn] = Field(default_factory=list)
    messages: Sequence[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def _validate_created_at(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("created_at must be ISO-8601 formatted") from exc
        if parsed.tzinfo is None:
            raise ValueError("created_at must include timezone information")
        return value

    @classmethod
    def from_result(cls, result: RunResult, *, created_at: str | None = None) -> "RunManifest":
        """Construct a manifest from a finished :class:`RunResult`."""

        payload = result.to_dict()
        payload["created_at"] = created_at or datetime.now(timezone.utc).isoformat()
        return cls.model_validate(payload)

    def tool_call_records(self) -> list[ManifestToolCall]:
        return [record for turn in self.turns for record in turn.tool_calls]

    def write(self, path: Path) -> None:
        """Persist the manifest to disk in canonical JSON form."""

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def write_schema(cls, path: Path) -> None:
        """Write the JSON schema for the manifest to disk."""

        path.write_text(json.dumps(load_manifest_schema(), indent=2), encoding="utf-8")


def load_manifest_schema() -> Dict[str, Any]:
    """Return the JSON schema of :class:`RunManifest` as a plain mapping."""

    return RunManifest.model_json_schema()


def write_manifest(result: RunResult, path: Path | str) -> RunManifest:
    """Write ``result`` to ``path`` as a manifest and return the model."""

    manifest = RunManifest.from_result(result)
    manifest.write(Path(path))
    return manifest


__all__ = [
    "MANIFEST_SCHEMA_VERSION",
    "ManifestToolCall",
    "ManifestTurn",
    "RunManifest",
    "load_manifest_schema",
    "write_manifest",
]
