"""Shared type definitions for the turnloop runtime."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)

UID = str
Message = Dict[str, Any]


class StopReason(str, Enum):
    """Terminal label attached to every :class:`RunResult`."""

    COMPLETED = "completed"
    MAX_TURNS = "max_turns"
    ERROR = "error"
    GUARDRAIL = "guardrail"
    LOOP_DETECTED = "loop_detected"
    CANCELLED = "cancelled"


class RunCancelled(RuntimeError):
    """Raised when work is abandoned because its :class:`CancelToken` tripped."""


class CancelToken:
    """Cooperative cancellation signal shared between a run and its collaborators.

    The token is safe to trip from any thread.  The orchestrator polls it at
    run entry, at the start of every turn and before each tool dispatch; model
    functions and tool handlers receive it so they can abandon long work early.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason or "cancelled"
            self._event.set()

    def cancel_after(self, seconds: float) -> None:
        """Trip the token once ``seconds`` have elapsed."""

        if seconds <= 0:
            self.cancel("timeout")
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(seconds, self.cancel, kwargs={"reason": "timeout"})
            timer.daemon = True
            self._timer = timer
        timer.start()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def _decode_arguments(raw: Any, *, tool: str) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unparseable arguments for tool %s", tool)
            return {}
        if isinstance(decoded, dict):
            return decoded
        logger.warning("Discarding non-object arguments for tool %s", tool)
        return {}
    raise TypeError(f"Unsupported tool arguments for {tool}: {raw!r}")


@dataclass(frozen=True)
class ToolCallRequest:
    """A single tool invocation requested by the model."""

    id: UID
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any]) -> "ToolCallRequest":
        """Build a request from an OpenAI ``tool_calls[]`` entry.

        ``function.arguments`` is a JSON encoded string in that format; values
        that do not decode to an object are replaced with an empty mapping.
        """

        function = payload.get("function") or {}
        if not isinstance(function, Mapping):
            raise TypeError("tool call 'function' must be a mapping")
        name = str(function.get("name") or payload.get("name") or "")
        if not name:
            raise ValueError("tool call is missing a function name")
        raw_args = function.get("arguments", payload.get("arguments"))
        return cls(
            id=str(payload.get("id") or ""),
            name=name,
            arguments=_decode_arguments(raw_args, tool=name),
        )

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False, default=str),
            },
        }


@dataclass(frozen=True)
class ModelResponse:
    """Response returned by the model function for a single turn."""

    content: str = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "content", self.content or "")
        object.__setattr__(self, "tool_calls", tuple(_coerce_tool_call(call) for call in self.tool_calls))

    @classmethod
    def from_openai(cls, message: Mapping[str, Any]) -> "ModelResponse":
        """Normalise an OpenAI assistant message into a :class:`ModelResponse`."""

        raw_calls = message.get("tool_calls") or []
        return cls(
            content=str(message.get("content") or ""),
            tool_calls=tuple(ToolCallRequest.from_openai(call) for call in raw_calls),
        )


def _coerce_tool_call(call: Any) -> ToolCallRequest:
    if isinstance(call, ToolCallRequest):
        return call
    if isinstance(call, Mapping):
        if "function" in call:
            return ToolCallRequest.from_openai(call)
        name = str(call.get("name") or "")
        return ToolCallRequest(
            id=str(call.get("id") or ""),
            name=name,
            arguments=_decode_arguments(call.get("arguments"), tool=name),
        )
    raise TypeError(f"Unsupported tool call type: {call!r}")


@dataclass
class ToolContext:
    """Execution context handed to tool handlers."""

    tool_name: str
    call_id: UID = ""
    cancel: Optional[CancelToken] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return bool(self.cancel is not None and self.cancel.cancelled)


@dataclass(frozen=True)
class ToolCallRecord:
    """Outcome of one executed (or refused) tool call."""

    tool_name: str
    arguments: Dict[str, Any]
    call_id: UID
    result: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TurnRecord:
    """One model call and the tool calls it triggered."""

    turn_number: int
    model_output: str = ""
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    is_final: bool = False


@dataclass(frozen=True)
class RunResult:
    """Terminal result of :meth:`Orchestrator.run`."""

    final_output: str
    turns: Tuple[TurnRecord, ...]
    tool_calls_count: int
    total_turns: int
    stopped_reason: StopReason
    messages: Tuple[Message, ...]
    run_id: UID = ""

    @property
    def completed(self) -> bool:
        return self.stopped_reason is StopReason.COMPLETED

    def iter_tool_calls(self) -> List[ToolCallRecord]:
        return [record for turn in self.turns for record in turn.tool_calls]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "final_output": self.final_output,
            "turns": [asdict(turn) for turn in self.turns],
            "tool_calls_count": self.tool_calls_count,
            "total_turns": self.total_turns,
            "stopped_reason": self.stopped_reason.value,
            "messages": json.loads(json.dumps(list(self.messages), default=str)),
        }


def build_result(
    *,
    run_id: UID,
    final_output: str,
    turns: Sequence[TurnRecord],
    stopped_reason: StopReason,
    messages: Sequence[Message],
) -> RunResult:
    """Assemble a :class:`RunResult`, deriving the counters from ``turns``."""

    frozen_turns = tuple(turns)
    return RunResult(
        final_output=final_output,
        turns=frozen_turns,
        tool_calls_count=sum(len(turn.tool_calls) for turn in frozen_turns),
        total_turns=len(frozen_turns),
        stopped_reason=stopped_reason,
        messages=tuple(dict(message) for message in messages),
        run_id=run_id,
    )


__all__ = [
    "CancelToken",
    "Message",
    "ModelResponse",
    "RunCancelled",
    "RunResult",
    "StopReason",
    "ToolCallRecord",
    "ToolCallRequest",
    "ToolContext",
    "TurnRecord",
    "UID",
    "build_result",
]
