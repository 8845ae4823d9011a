from __future__ import annotations

"""Developer-facing CLI utilities for inspecting turnloop artefacts."""

import importlib
import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from turnloop.src.core.config import SettingsError, load_settings
from turnloop.src.core.manifest import RunManifest, load_manifest_schema
from turnloop.src.core.tools import ToolCatalog
from turnloop.src.governance.gatekeeper import CapabilityGate, CapabilitySet


app = typer.Typer(help="Utility commands for inspecting turnloop artefacts.")
manifest_app = typer.Typer(help="Work with run manifests.")
capabilities_app = typer.Typer(help="Inspect capability sets and tool grants.")
config_app = typer.Typer(help="Validate agent settings documents.")
tools_app = typer.Typer(help="List tool catalog schemas.")
trace_app = typer.Typer(help="Summarise exported execution traces.")
app.add_typer(manifest_app, name="manifest")
app.add_typer(capabilities_app, name="capabilities")
app.add_typer(config_app, name="config")
app.add_typer(tools_app, name="tools")
app.add_typer(trace_app, name="trace")


@app.callback()
def main_options(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for library output."),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.secho(f"Unknown log level: {log_level}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _fail(message: str) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _load_json_file(path: Path) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        typer.secho(f"Failed to read {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _load_manifest(path: Path, *, return_raw: bool = False) -> RunManifest | Tuple[RunManifest, Dict[str, Any]]:
    """Load and validate a run manifest from ``path``."""

    raw_payload = _load_json_file(path)
    try:
        manifest = RunManifest.model_validate(raw_payload)
    except ValidationError as exc:
        typer.secho("Manifest validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc
    if return_raw:
        return manifest, raw_payload
    return manifest


def _validate_against_schema(data: Dict[str, Any], schema_path: Path | None = None) -> None:
    schema = load_manifest_schema() if schema_path is None else _load_json_file(schema_path)
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        typer.secho("Manifest failed JSON schema validation:", err=True, fg=typer.colors.RED)
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "<root>"
            typer.secho(f"- {location}: {error.message}", err=True, fg=typer.colors.RED)
        if len(errors) > 5:
            typer.secho(f"... {len(errors) - 5} additional errors omitted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _truncate_text(value: Optional[str], limit: int = 160) -> Optional[str]:
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _summarise_manifest(manifest: RunManifest, *, sample_limit: int = 5) -> Dict[str, Any]:
    records = manifest.tool_call_records()
    failures = [record for record in records if not record.ok]
    per_tool = Counter(record.tool_name for record in records)

    sample: List[Dict[str, Any]] = []
    for record in records[:sample_limit]:
        sample.append(
            {
                "tool": record.tool_name,
                "call_id": record.call_id,
                "ok": record.ok,
                "result": _truncate_text(record.result),
                "error": _truncate_text(record.error),
            }
        )

    return {
        "run_id": manifest.run_id,
        "created_at": manifest.created_at,
        "stopped_reason": manifest.stopped_reason,
        "final_output": _truncate_text(manifest.final_output),
        "total_turns": manifest.total_turns,
        "tool_calls": manifest.tool_calls_count,
        "tool_failures": len(failures),
        "tools": dict(sorted(per_tool.items())),
        "messages": len(manifest.messages),
        "sample_tool_calls": sample,
    }


@manifest_app.command("validate")
def validate_manifest(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to manifest.json"),
    schema: Path | None = typer.Option(
        None,
        "--schema",
        "-s",
        help="Optional JSON schema to validate against (defaults to bundled schema).",
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        readable=True,
    ),
) -> None:
    """Validate ``manifest.json`` files written by :func:`write_manifest`."""

    manifest, payload = _load_manifest(path, return_raw=True)
    _validate_against_schema(payload, schema)
    typer.secho(
        f"Manifest {path} conforms to schema version {manifest.schema_version}",
        fg=typer.colors.GREEN,
    )


@manifest_app.command("schema")
def write_manifest_schema(
    output: Path = typer.Argument(
        ..., resolve_path=True, help="Destination path for writing the manifest JSON schema."
    ),
) -> None:
    """Write the JSON schema describing run manifests to ``output``."""

    try:
        RunManifest.write_schema(output)
    except OSError as exc:
        typer.secho(f"Failed to write schema: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Wrote manifest schema to {output}", fg=typer.colors.GREEN)


@manifest_app.command("summary")
def manifest_summary(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to manifest.json"),
    sample: int = typer.Option(
        5,
        "--sample",
        "-n",
        min=1,
        help="Number of tool calls to include in the sample section.",
    ),
) -> None:
    """Emit a condensed JSON summary of a manifest."""

    manifest = _load_manifest(path)
    summary = _summarise_manifest(manifest, sample_limit=sample)
    typer.echo(json.dumps(summary, indent=2, ensure_ascii=True))


def _load_capabilities(path: Path) -> CapabilitySet:
    payload = _load_json_file(path)
    try:
        return CapabilitySet.model_validate(payload)
    except ValidationError as exc:
        typer.secho("Capability set validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc


@capabilities_app.command("check")
def check_capabilities(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a capability set JSON file"),
    tools: List[str] = typer.Argument(..., help="Tool names to evaluate"),
    strict: bool = typer.Option(False, "--strict", help="Exit with status 1 when any tool is denied."),
) -> None:
    """Report whether each tool would be allowed under the capability set."""

    gate = CapabilityGate(_load_capabilities(path))
    decisions = []
    for tool in tools:
        decision = gate.evaluate(tool)
        decisions.append({"tool": tool, **decision.as_dict()})
    typer.echo(json.dumps(decisions, indent=2, ensure_ascii=True))
    if strict and any(not entry["allowed"] for entry in decisions):
        raise typer.Exit(code=1)


@capabilities_app.command("tags")
def capability_tags(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a capability set JSON file"),
) -> None:
    """List the distinct skill tags declared by a capability set."""

    capabilities = _load_capabilities(path)
    typer.echo(json.dumps(capabilities.all_tags(), indent=2, ensure_ascii=True))


@config_app.command("validate")
def validate_config(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to agent settings JSON"),
) -> None:
    """Validate an agent settings document and print its normalised form."""

    try:
        settings = load_settings(path)
    except SettingsError as exc:
        _fail(str(exc))
    typer.echo(settings.model_dump_json(indent=2, by_alias=True))


def _resolve_catalog(target: str) -> ToolCatalog:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        _fail(f"Expected MODULE:ATTR, got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        typer.secho(f"Failed to import {module_name}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    obj = getattr(module, attr, None)
    if obj is None:
        _fail(f"{module_name} has no attribute {attr!r}")
    if callable(obj) and not isinstance(obj, ToolCatalog):
        obj = obj()
    if not isinstance(obj, ToolCatalog):
        _fail(f"{target} is not a ToolCatalog")
    return obj


@tools_app.command("list")
def list_tools(
    target: str = typer.Argument(..., help="Catalog location as MODULE:ATTR (attribute or factory)"),
    openai: bool = typer.Option(False, "--openai", help="Emit OpenAI function-calling descriptors."),
) -> None:
    """Print the schema of every tool registered in a catalog."""

    catalog = _resolve_catalog(target)
    payload = catalog.openai_schemas() if openai else catalog.json_schemas()
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=True))


def _iter_trace_events(path: Path) -> List[Dict[str, Any]]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        typer.secho(f"Failed to read {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    events: List[Dict[str, Any]] = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            typer.secho(f"Invalid JSON on line {number} of {path}: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
        if isinstance(event, dict) and event.get("event") == "trace.finished":
            events.append(event)
    return events


def _walk_spans(span: Dict[str, Any]):
    yield span
    for child in span.get("children") or []:
        if isinstance(child, dict):
            yield from _walk_spans(child)


@trace_app.command("summary")
def trace_summary(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Telemetry JSONL file"),
) -> None:
    """Summarise ``trace.finished`` events written by a JSON lines telemetry sink."""

    events = _iter_trace_events(path)
    statuses: Counter[str] = Counter()
    kinds: Counter[str] = Counter()
    durations: List[float] = []
    failed_spans: List[Dict[str, Any]] = []
    for event in events:
        statuses[str(event.get("status"))] += 1
        if isinstance(event.get("duration_ms"), (int, float)):
            durations.append(float(event["duration_ms"]))
        root = event.get("root")
        if not isinstance(root, dict):
            continue
        for span in _walk_spans(root):
            kinds[str(span.get("kind"))] += 1
            if span.get("status") == "error" and len(failed_spans) < 5:
                failed_spans.append(
                    {
                        "trace_id": span.get("trace_id"),
                        "kind": span.get("kind"),
                        "name": span.get("name"),
                        "error": _truncate_text(span.get("error")),
                    }
                )
    summary = {
        "traces": len(events),
        "statuses": dict(sorted(statuses.items())),
        "span_kinds": dict(sorted(kinds.items())),
        "mean_duration_ms": round(sum(durations) / len(durations), 3) if durations else None,
        "failed_spans": failed_spans,
    }
    typer.echo(json.dumps(summary, indent=2, ensure_ascii=True))


def main() -> None:
    """Entrypoint for ``python -m turnloop.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
