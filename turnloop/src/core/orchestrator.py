from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .config import AgentSettings
from .hooks import AgentHooks, notify
from .loop_guard import LoopVerdict, RepetitionGuard, RepetitionGuardConfig
from .safety import GuardrailTriggered, PolicyGate
from .telemetry import Telemetry
from .tools import ToolCatalog, ToolError, render_tool_result
from .tracing import (
    NULL_TRACE,
    STATUS_ERROR,
    STATUS_OK,
    LoggingSpanExporter,
    NullSpanExporter,
    SpanKind,
    SpanRecorder,
    TelemetrySpanExporter,
)
from .types import (
    CancelToken,
    Message,
    ModelResponse,
    RunCancelled,
    RunResult,
    StopReason,
    ToolCallRecord,
    ToolCallRequest,
    ToolContext,
    TurnRecord,
    build_result,
)
from ..governance.gatekeeper import CapabilityGate, CapabilitySet


logger = logging.getLogger(__name__)

ModelFunction = Callable[..., Union[ModelResponse, Mapping[str, Any], str, Awaitable[Any]]]

_ERROR_REASONS = {StopReason.ERROR, StopReason.GUARDRAIL, StopReason.LOOP_DETECTED}


def _coerce_response(raw: Any) -> ModelResponse:
    if isinstance(raw, ModelResponse):
        return raw
    if isinstance(raw, Mapping):
        return ModelResponse.from_openai(raw)
    if isinstance(raw, str):
        return ModelResponse(content=raw)
    raise TypeError(f"Model returned unsupported response type {type(raw).__name__}")


def _accepts_cancel(fn: Callable[..., Any]) -> bool:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return False
    for param in signature.parameters.values():
        if param.kind is inspect.Parameter.VAR_KEYWORD or param.name == "cancel":
            return True
    return False


def _warning_text(verdict: LoopVerdict) -> str:
    return f"[Warning] {verdict.message}. Try a different approach."


@dataclass
class _Stop:
    reason: StopReason
    output: str


@dataclass
class _RunState:
    """Mutable bookkeeping private to a single :meth:`Orchestrator.run` call."""

    run_id: str
    messages: List[Message]
    tool_schemas: List[Dict[str, Any]]
    cancel: CancelToken
    guard: Optional[RepetitionGuard]
    trace: Any
    turns: List[TurnRecord] = field(default_factory=list)
    root_span: Any = None


@dataclass
class Orchestrator:
    """Bounded-turn agent loop alternating model calls with tool dispatch.

    The orchestrator owns no per-run state: the transcript, the repetition
    guard and the turn list are created afresh on every :meth:`run`, so one
    instance may serve concurrent runs as long as the shared ``catalog`` and
    ``tracer`` exporter are themselves thread-safe (both built-in ones are).
    """

    model: ModelFunction
    catalog: ToolCatalog | None = None
    system_prompt: str | None = None
    max_turns: int = 10
    hooks: AgentHooks | None = None
    policy: PolicyGate | None = None
    capabilities: CapabilityGate | CapabilitySet | None = None
    loop_guard: RepetitionGuardConfig | None = field(default_factory=RepetitionGuardConfig)
    tracer: SpanRecorder | None = None
    telemetry: Telemetry | None = None

    _gate: CapabilityGate = field(init=False, repr=False)
    _model_takes_cancel: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if not callable(self.model):
            raise TypeError("model must be callable")
        if self.catalog is None:
            self.catalog = ToolCatalog()
        if isinstance(self.capabilities, CapabilityGate):
            self._gate = self.capabilities
        else:
            self._gate = CapabilityGate(self.capabilities)
        self._model_takes_cancel = _accepts_cancel(self.model)

    @classmethod
    def from_settings(
        cls,
        settings: AgentSettings,
        model: ModelFunction,
        catalog: ToolCatalog | None = None,
        *,
        hooks: AgentHooks | None = None,
        policy: PolicyGate | None = None,
        telemetry: Telemetry | None = None,
    ) -> "Orchestrator":
        """Build an orchestrator from declarative :class:`AgentSettings`."""

        tracer: SpanRecorder | None = None
        if settings.tracing.enabled:
            exporter: Any
            if settings.tracing.exporter == "telemetry":
                exporter = TelemetrySpanExporter(telemetry or Telemetry())
            elif settings.tracing.exporter == "logging":
                exporter = LoggingSpanExporter()
            else:
                exporter = NullSpanExporter()
            tracer = SpanRecorder(exporter)
        return cls(
            model=model,
            catalog=catalog,
            system_prompt=settings.system_prompt,
            max_turns=settings.max_turns,
            hooks=hooks,
            policy=policy,
            capabilities=settings.capabilities,
            loop_guard=settings.guard_config(),
            tracer=tracer,
            telemetry=telemetry,
        )

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    def _notify(self, event: str, *args: Any) -> None:
        notify(self.hooks, event, *args)

    def _build_transcript(
        self,
        user_input: str,
        history: Sequence[Message] | None,
        extra_context: str | None,
    ) -> List[Message]:
        messages: List[Message] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        if extra_context:
            messages.append({"role": "system", "content": extra_context})
        for entry in history or ():
            messages.append(dict(entry))
        messages.append({"role": "user", "content": user_input})
        return messages

    async def run(
        self,
        user_input: str,
        history: Sequence[Message] | None = None,
        extra_context: str | None = None,
        cancel: CancelToken | None = None,
    ) -> RunResult:
        """Execute one agent run and return its terminal :class:`RunResult`.

        Only the six :class:`StopReason` outcomes leave this method; tool
        failures, capability denials and loop warnings are rendered into the
        transcript for the model to react to.
        """

        assert self.catalog is not None
        state = _RunState(
            run_id=uuid.uuid4().hex,
            messages=self._build_transcript(user_input, history, extra_context),
            tool_schemas=self.catalog.openai_schemas(),
            cancel=cancel or CancelToken(),
            guard=RepetitionGuard(self.loop_guard) if self.loop_guard is not None else None,
            trace=self.tracer.new_trace() if self.tracer is not None else NULL_TRACE,
        )
        self._emit(
            "orchestrator.run_started",
            run_id=state.run_id,
            max_turns=self.max_turns,
            tools=len(state.tool_schemas),
        )
        state.root_span = state.trace.open_span(
            SpanKind.AGENT,
            attributes={"run_id": state.run_id, "max_turns": self.max_turns},
        )
        stop: _Stop | None = None
        try:
            stop = await self._execute(state, user_input)
        finally:
            if stop is None:
                state.trace.close_span(state.root_span, STATUS_ERROR, "run aborted")
        if state.root_span is not None:
            state.root_span.set_attribute("stopped_reason", stop.reason.value)
            state.root_span.set_attribute("total_turns", len(state.turns))
        if stop.reason in _ERROR_REASONS:
            state.trace.close_span(state.root_span, STATUS_ERROR, stop.output)
        else:
            state.trace.close_span(state.root_span, STATUS_OK)

        result = build_result(
            run_id=state.run_id,
            final_output=stop.output,
            turns=state.turns,
            stopped_reason=stop.reason,
            messages=state.messages,
        )
        logger.info(
            "Run %s finished: %s after %d turn(s), %d tool call(s)",
            state.run_id,
            result.stopped_reason.value,
            result.total_turns,
            result.tool_calls_count,
        )
        self._emit(
            "orchestrator.run_finished",
            run_id=state.run_id,
            stopped_reason=result.stopped_reason.value,
            total_turns=result.total_turns,
            tool_calls=result.tool_calls_count,
        )
        return result

    def run_sync(
        self,
        user_input: str,
        history: Sequence[Message] | None = None,
        extra_context: str | None = None,
        cancel: CancelToken | None = None,
    ) -> RunResult:
        """Blocking wrapper around :meth:`run` for callers without an event loop."""

        return asyncio.run(self.run(user_input, history, extra_context, cancel))

    async def _execute(self, state: _RunState, user_input: str) -> _Stop:
        if state.cancel.cancelled:
            return _Stop(StopReason.CANCELLED, "")

        violation = self._check_policy(state, "input", user_input)
        if violation is not None:
            return _Stop(StopReason.GUARDRAIL, violation)

        for turn_number in range(1, self.max_turns + 1):
            if state.cancel.cancelled:
                return _Stop(StopReason.CANCELLED, "")

            try:
                response = await self._call_model(state, turn_number)
            except Exception as exc:
                if state.cancel.cancelled or isinstance(exc, RunCancelled):
                    logger.info("Model call cancelled at turn %d", turn_number)
                    return _Stop(StopReason.CANCELLED, "")
                logger.warning("Model call failed at turn %d: %s", turn_number, exc)
                self._notify("on_error", exc)
                self._emit("orchestrator.model_failed", run_id=state.run_id, turn=turn_number, error=str(exc))
                return _Stop(StopReason.ERROR, f"Error: {exc}")

            if not response.tool_calls:
                if response.content:
                    violation = self._check_policy(state, "output", response.content)
                    if violation is not None:
                        return _Stop(StopReason.GUARDRAIL, violation)
                state.messages.append({"role": "assistant", "content": response.content})
                self._finish_turn(
                    state,
                    TurnRecord(turn_number=turn_number, model_output=response.content, is_final=True),
                )
                return _Stop(StopReason.COMPLETED, response.content)

            stop = await self._run_tool_calls(state, turn_number, response)
            if stop is not None:
                return stop

        return _Stop(StopReason.MAX_TURNS, self._last_output(state.turns))

    def _check_policy(self, state: _RunState, stage: str, text: str) -> str | None:
        """Return the violation text when the ``stage`` checks reject ``text``."""

        if self.policy is None:
            return None
        count = self.policy.input_count if stage == "input" else self.policy.output_count
        if count == 0:
            return None
        span = state.trace.open_span(SpanKind.POLICY_CHECK, f"{stage}_guardrails")
        try:
            if stage == "input":
                self.policy.check_input(text, state.messages)
            else:
                self.policy.check_output(text, state.messages)
        except GuardrailTriggered as exc:
            state.trace.close_span(span, STATUS_ERROR, str(exc))
            logger.warning("%s", exc)
            self._emit(
                "orchestrator.guardrail_blocked",
                run_id=state.run_id,
                stage=stage,
                check=exc.check_name,
                reason=exc.reason,
            )
            return str(exc)
        state.trace.close_span(span, STATUS_OK)
        return None

    async def _call_model(self, state: _RunState, turn_number: int) -> ModelResponse:
        self._notify("on_model_call_start", turn_number, list(state.messages))
        span = state.trace.open_span(SpanKind.MODEL_CALL, attributes={"turn": turn_number})
        kwargs: Dict[str, Any] = {"cancel": state.cancel} if self._model_takes_cancel else {}
        try:
            raw = self.model(list(state.messages), list(state.tool_schemas), **kwargs)
            if inspect.isawaitable(raw):
                raw = await raw
            response = _coerce_response(raw)
        except Exception as exc:
            state.trace.close_span(span, STATUS_ERROR, str(exc))
            raise
        if span is not None:
            span.set_attribute("tool_calls", len(response.tool_calls))
        state.trace.close_span(span, STATUS_OK)
        self._notify("on_model_call_end", turn_number, response)
        return response

    async def _run_tool_calls(
        self,
        state: _RunState,
        turn_number: int,
        response: ModelResponse,
    ) -> _Stop | None:
        calls: List[ToolCallRequest] = []
        for index, call in enumerate(response.tool_calls):
            if not call.id:
                call = replace(call, id=f"call_{turn_number}_{index}")
            calls.append(call)
        state.messages.append(
            {
                "role": "assistant",
                "content": response.content,
                "tool_calls": [call.to_openai() for call in calls],
            }
        )

        records: List[ToolCallRecord] = []
        stop: _Stop | None = None
        for call in calls:
            if state.cancel.cancelled:
                stop = _Stop(StopReason.CANCELLED, "")
                break
            verdict = await self._run_tool_call(state, turn_number, call, records)
            if verdict is not None:
                stop = _Stop(StopReason.LOOP_DETECTED, verdict.message)
                break

        self._finish_turn(
            state,
            TurnRecord(turn_number=turn_number, model_output=response.content, tool_calls=tuple(records)),
        )
        return stop

    async def _run_tool_call(
        self,
        state: _RunState,
        turn_number: int,
        call: ToolCallRequest,
        records: List[ToolCallRecord],
    ) -> LoopVerdict | None:
        """Process one requested call; returns the verdict when a fatal loop is detected."""

        assert self.catalog is not None
        decision = self._gate.evaluate(call.name)
        if not decision.allowed:
            reason = decision.deny_reason or "tool not permitted"
            logger.warning("Tool %s denied: %s", call.name, reason)
            self._emit("orchestrator.tool_denied", run_id=state.run_id, tool=call.name, reason=reason)
            state.messages.append({"role": "tool", "tool_call_id": call.id, "content": f"Error: {reason}"})
            records.append(
                ToolCallRecord(tool_name=call.name, arguments=dict(call.arguments), call_id=call.id, error=reason)
            )
            return None

        arguments: Dict[str, Any] = dict(call.arguments)
        argument_error: ToolError | None = None
        try:
            arguments = self.catalog.prepare_arguments(call.name, call.arguments)
        except ToolError as exc:
            argument_error = exc

        if state.guard is not None:
            verdict = state.guard.check(call.name, arguments)
            if verdict is not None:
                self._emit(
                    "orchestrator.loop_warning",
                    run_id=state.run_id,
                    tool=call.name,
                    kind=verdict.kind,
                    message=verdict.message,
                    fatal=verdict.fatal,
                )
                if verdict.fatal:
                    logger.warning("Loop detected, aborting run: %s", verdict.message)
                    return verdict
                logger.info("Loop warning: %s", verdict.message)
                state.messages.append({"role": "system", "content": _warning_text(verdict)})

        self._notify("on_tool_call_start", call.name, dict(arguments))
        span = state.trace.open_span(
            SpanKind.TOOL_CALL,
            call.name,
            attributes={"call_id": call.id, "turn": turn_number},
        )
        result_text = ""
        error: ToolError | None = argument_error
        if error is None:
            definition = self.catalog.get(call.name)
            ctx = ToolContext(
                tool_name=call.name,
                call_id=call.id,
                cancel=state.cancel,
                extra={"run_id": state.run_id, "turn": turn_number},
            )
            try:
                if definition is None:
                    # Removed from the shared catalog after arguments were prepared.
                    raise ToolError(call.name, f"tool not found: {call.name!r}")
                result_text = render_tool_result(await self.catalog.invoke(definition, arguments, ctx))
            except ToolError as exc:
                error = exc

        if error is not None:
            state.trace.close_span(span, STATUS_ERROR, str(error))
            logger.warning("Tool %s failed: %s", call.name, error)
            self._notify("on_error", error)
            record = ToolCallRecord(
                tool_name=call.name, arguments=arguments, call_id=call.id, error=str(error)
            )
            content = f"Error: {error}"
        else:
            state.trace.close_span(span, STATUS_OK)
            record = ToolCallRecord(
                tool_name=call.name, arguments=arguments, call_id=call.id, result=result_text
            )
            content = result_text
        self._notify("on_tool_call_end", call.name, record.result, record.error)
        self._emit(
            "orchestrator.tool_completed",
            run_id=state.run_id,
            tool=call.name,
            call_id=call.id,
            ok=record.ok,
            error=record.error,
        )
        records.append(record)
        if state.guard is not None:
            state.guard.record(call.name, arguments)
        state.messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
        return None

    def _finish_turn(self, state: _RunState, turn: TurnRecord) -> None:
        state.turns.append(turn)
        self._notify("on_turn_end", turn)

    @staticmethod
    def _last_output(turns: Sequence[TurnRecord]) -> str:
        if turns and turns[-1].model_output:
            return turns[-1].model_output
        return ""


__all__ = ["ModelFunction", "Orchestrator"]
