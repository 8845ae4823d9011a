from __future__ import annotations

"""Input and output guardrails evaluated around model turns.

The policy gate keeps two ordered lists of checks.  Evaluation is a tripwire:
checks run in registration order and the first failing check decides the
outcome, its reason becoming the violation text reported to the caller.  The
orchestrator consults the gate before the first model call and before
accepting a final answer.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple, Union

from .types import Message


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyContext:
    """Text under review plus auxiliary metadata available to checks."""

    text: str
    messages: Sequence[Message] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a single check or of a whole gate evaluation."""

    passed: bool
    reason: str | None = None
    check_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(passed=True)

    @classmethod
    def deny(cls, reason: str, **metadata: Any) -> "PolicyDecision":
        return cls(passed=False, reason=reason, metadata=dict(metadata))

    def as_dict(self) -> Dict[str, object]:
        return {
            "passed": self.passed,
            "reason": self.reason,
            "check_name": self.check_name,
            "metadata": dict(self.metadata),
        }


PolicyCheck = Callable[[PolicyContext], Union[PolicyDecision, bool, None]]


class GuardrailTriggered(PermissionError):
    """Raised when a guardrail rejects the text under review."""

    stage = "policy"

    def __init__(self, check_name: str, reason: str) -> None:
        self.check_name = check_name
        self.reason = reason
        super().__init__(f"{self.stage.capitalize()} guardrail triggered: {check_name}: {reason}")


class InputGuardrailTriggered(GuardrailTriggered):
    stage = "input"


class OutputGuardrailTriggered(GuardrailTriggered):
    stage = "output"


def _normalise_decision(name: str, raw: Any) -> PolicyDecision:
    if raw is None or raw is True:
        return PolicyDecision(passed=True, check_name=name)
    if raw is False:
        return PolicyDecision(passed=False, reason="rejected", check_name=name)
    if isinstance(raw, PolicyDecision):
        reason = raw.reason if raw.passed or raw.reason else "rejected"
        return PolicyDecision(passed=raw.passed, reason=reason, check_name=name, metadata=raw.metadata)
    raise TypeError(f"Policy check {name} returned unsupported value {raw!r}")


class PolicyGate:
    """Ordered input/output checks with first-failure-wins semantics.

    Checks are pure functions of the :class:`PolicyContext`.  A check that
    raises is treated as a failure rather than propagating, so a broken check
    blocks the run instead of silently letting text through.

    With ``sequential=False`` every check runs concurrently on a thread pool
    and the first failure in registration order is reported.
    """

    def __init__(self, *, sequential: bool = True) -> None:
        self.sequential = sequential
        self._lock = threading.Lock()
        self._input: List[Tuple[str, PolicyCheck]] = []
        self._output: List[Tuple[str, PolicyCheck]] = []

    def add_input(self, name: str, check: PolicyCheck) -> "PolicyGate":
        with self._lock:
            self._input.append((name, check))
        return self

    def add_output(self, name: str, check: PolicyCheck) -> "PolicyGate":
        with self._lock:
            self._output.append((name, check))
        return self

    @property
    def input_count(self) -> int:
        with self._lock:
            return len(self._input)

    @property
    def output_count(self) -> int:
        with self._lock:
            return len(self._output)

    def evaluate_input(
        self,
        text: str,
        messages: Sequence[Message] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> PolicyDecision:
        with self._lock:
            checks = list(self._input)
        return self._run_checks(checks, PolicyContext(text=text, messages=tuple(messages or ()), extra=dict(extra or {})))

    def evaluate_output(
        self,
        text: str,
        messages: Sequence[Message] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> PolicyDecision:
        with self._lock:
            checks = list(self._output)
        return self._run_checks(checks, PolicyContext(text=text, messages=tuple(messages or ()), extra=dict(extra or {})))

    def check_input(
        self,
        text: str,
        messages: Sequence[Message] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Raise :class:`InputGuardrailTriggered` if any input check fails."""

        decision = self.evaluate_input(text, messages, extra)
        if not decision.passed:
            raise InputGuardrailTriggered(decision.check_name or "unknown", decision.reason or "rejected")

    def check_output(
        self,
        text: str,
        messages: Sequence[Message] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Raise :class:`OutputGuardrailTriggered` if any output check fails."""

        decision = self.evaluate_output(text, messages, extra)
        if not decision.passed:
            raise OutputGuardrailTriggered(decision.check_name or "unknown", decision.reason or "rejected")

    def _run_checks(self, checks: Sequence[Tuple[str, PolicyCheck]], ctx: PolicyContext) -> PolicyDecision:
        if self.sequential or len(checks) < 2:
            for name, check in checks:
                decision = _run_check(name, check, ctx)
                if not decision.passed:
                    return decision
            return PolicyDecision.allow()
        with ThreadPoolExecutor(max_workers=len(checks)) as pool:
            decisions = list(pool.map(lambda item: _run_check(item[0], item[1], ctx), checks))
        for decision in decisions:
            if not decision.passed:
                return decision
        return PolicyDecision.allow()


def _run_check(name: str, check: PolicyCheck, ctx: PolicyContext) -> PolicyDecision:
    try:
        return _normalise_decision(name, check(ctx))
    except Exception as exc:
        logger.warning("Policy check %s raised: %s", name, exc)
        return PolicyDecision(passed=False, reason=f"check raised: {exc}", check_name=name)


def blocked_phrases(*phrases: str, case_sensitive: bool = False) -> PolicyCheck:
    """Build a check rejecting text that contains any of ``phrases``."""

    needles = [phrase if case_sensitive else phrase.lower() for phrase in phrases if phrase]

    def check(ctx: PolicyContext) -> PolicyDecision:
        haystack = ctx.text if case_sensitive else ctx.text.lower()
        for needle in needles:
            if needle in haystack:
                return PolicyDecision.deny(f"blocked phrase: {needle}", phrase=needle)
        return PolicyDecision.allow()

    return check


def max_length(limit: int) -> PolicyCheck:
    """Build a check rejecting text longer than ``limit`` characters."""

    if limit < 0:
        raise ValueError("limit must be non-negative")

    def check(ctx: PolicyContext) -> PolicyDecision:
        if len(ctx.text) > limit:
            return PolicyDecision.deny(f"text length {len(ctx.text)} exceeds {limit}", length=len(ctx.text))
        return PolicyDecision.allow()

    return check


__all__ = [
    "GuardrailTriggered",
    "InputGuardrailTriggered",
    "OutputGuardrailTriggered",
    "PolicyCheck",
    "PolicyContext",
    "PolicyDecision",
    "PolicyGate",
    "blocked_phrases",
    "max_length",
]
