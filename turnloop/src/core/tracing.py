"""Hierarchical execution spans for agent runs.

A :class:`SpanRecorder` hands out one :class:`Trace` per run.  The first span
opened on a trace is its root (the ``agent`` span); later spans nest under the
innermost open span.  Closing the root exports the finished tree.  A disabled
recorder returns a shared null trace that creates no span objects at all.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .telemetry import Telemetry


logger = logging.getLogger(__name__)


class SpanKind:
    AGENT = "agent"
    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    POLICY_CHECK = "policy_check"


STATUS_RUNNING = "running"
STATUS_OK = "ok"
STATUS_ERROR = "error"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class Span:
    """One timed step of a run."""

    span_id: str
    trace_id: str
    name: str
    kind: str
    parent_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_RUNNING
    error: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    duration_ms: Optional[float] = None
    children: List["Span"] = field(default_factory=list)
    _started: float = field(default_factory=perf_counter, init=False, repr=False)

    def finish(self, status: str, error: str | None = None) -> None:
        if self.ended_at is not None:
            return
        self.status = status
        self.error = error or None
        self.ended_at = _now_iso()
        self.duration_ms = round((perf_counter() - self._started) * 1000, 3)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def iter_all(self):
        yield self
        for child in self.children:
            yield from child.iter_all()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "span_id": self.span_id,
            "trace_id": self.trace_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "kind": self.kind,
            "attributes": dict(self.attributes),
            "status": self.status,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "children": [child.to_dict() for child in self.children],
        }


class SpanExporter(Protocol):
    def export(self, span: Span) -> None:
        """Receive a finished root span together with its children."""


class NullSpanExporter:
    def export(self, span: Span) -> None:
        return None


@dataclass
class CallbackSpanExporter:
    fn: Callable[[Span], None]

    def export(self, span: Span) -> None:
        self.fn(span)


@dataclass
class LoggingSpanExporter:
    logger_name: str = "turnloop.trace"
    level: int = logging.INFO

    def export(self, span: Span) -> None:
        log = logging.getLogger(self.logger_name)
        for item in span.iter_all():
            log.log(
                self.level,
                "[trace %s] %s %s | %s | %.1fms",
                item.trace_id,
                item.kind,
                item.name,
                item.status,
                item.duration_ms or 0.0,
            )


@dataclass
class TelemetrySpanExporter:
    """Forward finished traces as ``trace.finished`` telemetry events."""

    telemetry: Telemetry

    def export(self, span: Span) -> None:
        self.telemetry.emit(
            "trace.finished",
            trace_id=span.trace_id,
            status=span.status,
            duration_ms=span.duration_ms,
            span_count=sum(1 for _ in span.iter_all()),
            root=span.to_dict(),
        )


class Trace:
    """Span tree for a single run; not shared between runs."""

    def __init__(self, recorder: "SpanRecorder", trace_id: str) -> None:
        self._recorder = recorder
        self.trace_id = trace_id
        self.root: Optional[Span] = None
        self._stack: List[Span] = []

    @property
    def enabled(self) -> bool:
        return True

    def open_span(
        self,
        kind: str,
        name: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> Optional[Span]:
        parent = self._stack[-1] if self._stack else None
        span = Span(
            span_id=secrets.token_hex(6),
            trace_id=self.trace_id,
            name=name or kind,
            kind=kind,
            parent_id=parent.span_id if parent is not None else None,
            attributes=dict(attributes or {}),
        )
        if parent is not None:
            parent.children.append(span)
        elif self.root is None:
            self.root = span
        self._stack.append(span)
        return span

    def close_span(self, span: Optional[Span], status: str = STATUS_OK, error: str | None = None) -> None:
        if span is None:
            return
        span.finish(status, error)
        if any(item is span for item in self._stack):
            # Closing a span also closes anything still open beneath it.
            while self._stack:
                top = self._stack.pop()
                if top is span:
                    break
                top.finish(STATUS_ERROR, "span left open")
        if span.parent_id is None:
            self._recorder._export(span)


class _NullTrace:
    trace_id = ""
    root = None

    @property
    def enabled(self) -> bool:
        return False

    def open_span(self, kind: str, name: str | None = None, attributes: Mapping[str, Any] | None = None) -> None:
        return None

    def close_span(self, span: Optional[Span], status: str = STATUS_OK, error: str | None = None) -> None:
        return None


NULL_TRACE = _NullTrace()


class SpanRecorder:
    """Factory for per-run traces that share one exporter."""

    def __init__(self, exporter: SpanExporter | None = None, *, enabled: bool = True) -> None:
        self.exporter: SpanExporter = exporter or NullSpanExporter()
        self.enabled = enabled
        self._export_lock = threading.Lock()

    def new_trace(self) -> Trace | _NullTrace:
        if not self.enabled:
            return NULL_TRACE
        return Trace(self, secrets.token_hex(16))

    def _export(self, span: Span) -> None:
        with self._export_lock:
            try:
                self.exporter.export(span)
            except Exception as exc:  # exporter failures must not break runs
                logger.warning("Span exporter %r failed: %s", self.exporter, exc)


__all__ = [
    "CallbackSpanExporter",
    "LoggingSpanExporter",
    "NULL_TRACE",
    "NullSpanExporter",
    "STATUS_ERROR",
    "STATUS_OK",
    "STATUS_RUNNING",
    "Span",
    "SpanExporter",
    "SpanKind",
    "SpanRecorder",
    "TelemetrySpanExporter",
    "Trace",
]
