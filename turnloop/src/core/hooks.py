"""Observer hooks invoked synchronously while a run progresses."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from .types import Message, ModelResponse, TurnRecord


logger = logging.getLogger(__name__)


class AgentHooks:
    """Base observer; every method is a no-op.

    Subclass and override the events of interest.  Hooks are called in-line,
    in order, relative to transcript updates and must not be relied upon to
    change control flow: exceptions they raise are logged and discarded.
    """

    def on_model_call_start(self, turn: int, messages: Sequence[Message]) -> None:
        pass

    def on_model_call_end(self, turn: int, response: ModelResponse) -> None:
        pass

    def on_tool_call_start(self, name: str, args: Dict[str, Any]) -> None:
        pass

    def on_tool_call_end(self, name: str, result: str, error: Optional[str]) -> None:
        pass

    def on_turn_end(self, turn: TurnRecord) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass


class CallbackHooks(AgentHooks):
    """Hooks assembled from plain callables, e.g. ``CallbackHooks(on_turn_end=print)``."""

    _EVENTS = (
        "on_model_call_start",
        "on_model_call_end",
        "on_tool_call_start",
        "on_tool_call_end",
        "on_turn_end",
        "on_error",
    )

    def __init__(self, **callbacks: Callable[..., Any]) -> None:
        unknown = set(callbacks) - set(self._EVENTS)
        if unknown:
            raise TypeError(f"Unknown hook events: {', '.join(sorted(unknown))}")
        self._callbacks = callbacks

    def on_model_call_start(self, turn: int, messages: Sequence[Message]) -> None:
        self._call("on_model_call_start", turn, messages)

    def on_model_call_end(self, turn: int, response: ModelResponse) -> None:
        self._call("on_model_call_end", turn, response)

    def on_tool_call_start(self, name: str, args: Dict[str, Any]) -> None:
        self._call("on_tool_call_start", name, args)

    def on_tool_call_end(self, name: str, result: str, error: Optional[str]) -> None:
        self._call("on_tool_call_end", name, result, error)

    def on_turn_end(self, turn: TurnRecord) -> None:
        self._call("on_turn_end", turn)

    def on_error(self, error: BaseException) -> None:
        self._call("on_error", error)

    def _call(self, event: str, *args: Any) -> None:
        callback = self._callbacks.get(event)
        if callback is not None:
            callback(*args)


def notify(hooks: AgentHooks | None, event: str, *args: Any) -> None:
    """Invoke ``hooks.<event>(*args)``, logging and discarding any failure."""

    if hooks is None:
        return
    try:
        getattr(hooks, event)(*args)
    except Exception as exc:
        logger.warning("Hook %s raised: %s", event, exc)


__all__ = ["AgentHooks", "CallbackHooks", "notify"]
