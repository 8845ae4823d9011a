"""Structured telemetry events emitted by the agent loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, MutableMapping, Protocol


logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    """A destination for telemetry events."""

    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward a telemetry event."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Telemetry:
    """Dispatcher that fans events out to the configured sinks."""

    sinks: Iterable[TelemetrySink] = field(default_factory=tuple)
    context: MutableMapping[str, Any] = field(default_factory=dict)

    def emit(self, event: str, **payload: Any) -> None:
        if not self.sinks:
            return
        base: Dict[str, Any] = {"event": event, "time": _now_iso()}
        if self.context:
            base.update(self.context)
        base.update(payload)
        for sink in self.sinks:
            try:
                sink.write(dict(base))
            except Exception as exc:  # telemetry failures must not break runs
                logger.debug("Telemetry sink %r failed: %s", sink, exc)
                continue

    def bind(self, **context: Any) -> "Telemetry":
        """Return a dispatcher sharing these sinks with extra context fields."""

        merged = dict(self.context)
        merged.update(context)
        return Telemetry(sinks=self.sinks, context=merged)


@dataclass
class InMemorySink:
    """Sink that keeps telemetry in-memory for inspection in tests."""

    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [item for item in self.events if item.get("event") == event]


@dataclass
class JsonLinesSink:
    """Append-only JSONL sink for telemetry events."""

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


@dataclass
class LoggingSink:
    """Sink that forwards each event as one structured log line."""

    logger_name: str = "turnloop.telemetry"
    level: int = logging.INFO

    def write(self, event: Dict[str, Any]) -> None:
        name = event.get("event", "event")
        fields = {key: value for key, value in event.items() if key not in {"event", "time"}}
        logging.getLogger(self.logger_name).log(
            self.level,
            "%s %s",
            name,
            json.dumps(fields, sort_keys=True, default=str),
        )


__all__ = [
    "InMemorySink",
    "JsonLinesSink",
    "LoggingSink",
    "Telemetry",
    "TelemetrySink",
]
