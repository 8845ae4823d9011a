"""Bridge between :class:`ToolCatalog` and OpenAI style function calling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..types import CancelToken, ToolCallRequest, ToolContext
from . import ToolCatalog, ToolError, render_tool_result


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallOutcome:
    """Result of executing one OpenAI tool call outside the orchestrator."""

    tool_call_id: str
    name: str
    content: str = ""
    error: Optional[str] = None

    def to_message(self) -> Dict[str, str]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "content": self.error if self.error is not None else self.content,
        }


def parse_tool_calls(raw: Iterable[Any]) -> List[ToolCallRequest]:
    """Parse ``tool_calls`` entries from an OpenAI assistant message."""

    calls: List[ToolCallRequest] = []
    for item in raw or ():
        if isinstance(item, ToolCallRequest):
            calls.append(item)
        elif isinstance(item, Mapping):
            calls.append(ToolCallRequest.from_openai(item))
        else:
            raise TypeError(f"Unsupported tool call payload: {item!r}")
    return calls


async def handle_tool_calls(
    catalog: ToolCatalog,
    calls: Sequence[ToolCallRequest | Mapping[str, Any]],
    *,
    extra: Mapping[str, Any] | None = None,
    cancel: CancelToken | None = None,
) -> List[ToolCallOutcome]:
    """Execute ``calls`` sequentially against ``catalog``.

    Failures never raise; they are reported on the returned outcome so the
    caller can feed them back to the model.  Once ``cancel`` trips, the
    remaining calls are skipped and only the finished outcomes are returned.
    """

    outcomes: List[ToolCallOutcome] = []
    for call in parse_tool_calls(calls):
        if cancel is not None and cancel.cancelled:
            logger.info("Tool calls cancelled before %s", call.name)
            break
        ctx = ToolContext(tool_name=call.name, call_id=call.id, cancel=cancel, extra=dict(extra or {}))
        try:
            value = await catalog.dispatch(call.name, call.arguments, ctx)
        except ToolError as exc:
            logger.warning("Tool call failed: %s -> %s", call.name, exc)
            outcomes.append(ToolCallOutcome(tool_call_id=call.id, name=call.name, error=str(exc)))
            continue
        outcomes.append(
            ToolCallOutcome(tool_call_id=call.id, name=call.name, content=render_tool_result(value))
        )
    return outcomes


def outcomes_to_messages(outcomes: Iterable[ToolCallOutcome]) -> List[Dict[str, str]]:
    return [outcome.to_message() for outcome in outcomes]


__all__ = [
    "ToolCallOutcome",
    "handle_tool_calls",
    "outcomes_to_messages",
    "parse_tool_calls",
]
