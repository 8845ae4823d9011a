"""Detection of pathological tool-call repetition within a run.

The guard keeps a short sliding window of ``(tool, argument hash)`` signatures
and classifies each candidate call before it executes:

``repeat``
    The same tool was just called with identical arguments
    ``max_repeat_calls`` times in a row.  Fatal: the run stops.

``flood``
    The candidate's tool already fills ``max_same_tool_in_window`` slots of
    the window.  A warning is injected into the transcript.

``ping_pong``
    The last three calls and the candidate alternate strictly between two
    tools (A, B, A, B).  A warning is injected into the transcript.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Deque, List, Mapping, NamedTuple, Optional


REPEAT = "repeat"
FLOOD = "flood"
PING_PONG = "ping_pong"


def _canonicalise(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, bytes):
        return {"__bytes__": sha256(obj).hexdigest()}
    if isinstance(obj, (list, tuple)):
        return [_canonicalise(item) for item in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((_canonicalise(item) for item in obj), key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(obj, Mapping):
        return {str(key): _canonicalise(value) for key, value in obj.items()}
    return str(obj)


def canonicalize_arguments(args: Mapping[str, Any] | None) -> str:
    """Return an order independent JSON rendering of ``args``."""

    return json.dumps(
        _canonicalise(dict(args or {})),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def hash_arguments(args: Mapping[str, Any] | None) -> str:
    if not args:
        return "empty"
    return sha256(canonicalize_arguments(args).encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class RepetitionGuardConfig:
    """Thresholds for :class:`RepetitionGuard`; a zero threshold disables a detector."""

    enabled: bool = True
    max_repeat_calls: int = 3
    max_same_tool_in_window: int = 5
    window_size: int = 10
    detect_ping_pong: bool = True

    def __post_init__(self) -> None:
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.max_repeat_calls < 0 or self.max_same_tool_in_window < 0:
            raise ValueError("thresholds must be non-negative")
        if self.max_repeat_calls > self.window_size:
            raise ValueError("max_repeat_calls must not exceed window_size")


class CallSignature(NamedTuple):
    tool: str
    args_hash: str


@dataclass(frozen=True)
class LoopVerdict:
    """Classification of a candidate call that matched a loop pattern."""

    kind: str
    message: str

    @property
    def fatal(self) -> bool:
        return self.kind == REPEAT


class RepetitionGuard:
    """Sliding-window detector for repeated, flooding and alternating tool calls.

    Instances hold mutable history and are meant to live for a single run.
    """

    def __init__(self, config: RepetitionGuardConfig | None = None) -> None:
        self.config = config or RepetitionGuardConfig()
        self._history: Deque[CallSignature] = deque(maxlen=self.config.window_size)

    @property
    def history(self) -> List[CallSignature]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()

    def check(self, tool: str, args: Mapping[str, Any] | None) -> Optional[LoopVerdict]:
        """Classify a candidate call without recording it."""

        if not self.config.enabled:
            return None
        candidate = CallSignature(tool, hash_arguments(args))
        return (
            self._check_repeat(candidate)
            or self._check_flood(candidate)
            or self._check_ping_pong(candidate)
        )

    def record(self, tool: str, args: Mapping[str, Any] | None) -> None:
        self._history.append(CallSignature(tool, hash_arguments(args)))

    def _check_repeat(self, candidate: CallSignature) -> Optional[LoopVerdict]:
        limit = self.config.max_repeat_calls
        if limit <= 0:
            return None
        streak = 0
        for entry in reversed(self._history):
            if entry != candidate:
                break
            streak += 1
        if streak < limit:
            return None
        return LoopVerdict(
            kind=REPEAT,
            message=f"Tool {candidate.tool!r} called {streak + 1} times with identical arguments",
        )

    def _check_flood(self, candidate: CallSignature) -> Optional[LoopVerdict]:
        limit = self.config.max_same_tool_in_window
        if limit <= 0:
            return None
        count = sum(1 for entry in self._history if entry.tool == candidate.tool)
        if count < limit:
            return None
        return LoopVerdict(
            kind=FLOOD,
            message=(
                f"Tool {candidate.tool!r} called {count + 1} times "
                f"in last {self.config.window_size} calls"
            ),
        )

    def _check_ping_pong(self, candidate: CallSignature) -> Optional[LoopVerdict]:
        if not self.config.detect_ping_pong or len(self._history) < 3:
            return None
        first, second, third = (entry.tool for entry in list(self._history)[-3:])
        if first == second or first != third or second != candidate.tool:
            return None
        return LoopVerdict(
            kind=PING_PONG,
            message=f"Ping-pong pattern detected: {third} / {candidate.tool} alternating",
        )


__all__ = [
    "CallSignature",
    "FLOOD",
    "LoopVerdict",
    "PING_PONG",
    "REPEAT",
    "RepetitionGuard",
    "RepetitionGuardConfig",
    "canonicalize_arguments",
    "hash_arguments",
]
