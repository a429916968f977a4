"""
Replan policy: pure decisions over plan age, failure history, budget counters
and failure classification.

`should_replan` runs at the top of every think cycle; `should_replan_on_failure`
classifies a single failed step. Both record their cause in plan metadata
before answering True so the reason is visible downstream.
"""
from __future__ import annotations
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Sequence
import logging
import time

from .plan_step import ExecutionPlan, PlanStatus, PlanStep, ReplanCause
from .actions import HistoryEntry, ResultType

logger = logging.getLogger(__name__)


class MissingInputPolicy(str, Enum):
    ASK_USER = "ask-user"
    REPLAN = "replan"


class ToolUnavailablePolicy(str, Enum):
    REPLAN = "replan"
    ASK_USER = "ask-user"
    FAIL = "fail"


TOOL_MISSING_MARKERS = ("tool not found", "unknown tool")
UNRECOVERABLE_MARKERS = ("permission denied", "not found", "invalid credentials", "unauthorized")


def snake_key(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True)
class ReplanBudget:
    """Execution budget; None disables a limit."""
    max_ms: Optional[int] = None
    max_tool_calls: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> ReplanBudget:
        data = {snake_key(k): v for k, v in (data or {}).items()}
        return cls(max_ms=data.get("max_ms"), max_tool_calls=data.get("max_tool_calls"))


@dataclass(frozen=True)
class ReplanPolicyConfig:
    """
    Immutable per-run replan configuration.

    Attributes:
        window_size: How many recent history entries the failure window inspects
        min_failures: Errors within the window that trigger a replan
        plan_ttl_ms: Maximum plan age before it is replaced
        max_replans_per_plan: Cap on consecutive plan replacements
        allow_replan_until_iteration: Opportunistic replans only before this iteration
        missing_input: "ask-user" or "replan" when inputs cannot be resolved
        tool_unavailable: "replan", "ask-user" or "fail" when a tool is absent
        budget: Wall-clock and tool-call budget
        max_step_retries: Retries after which a repeating failure is exhausted
        retry_window_ms: How recent an equivalent failure must be to count as a retry

    Any numeric field set to None disables its rule.
    """
    window_size: Optional[int] = 3
    min_failures: Optional[int] = 2
    plan_ttl_ms: Optional[int] = 300_000
    max_replans_per_plan: int = 5
    allow_replan_until_iteration: Optional[int] = 3
    missing_input: MissingInputPolicy = MissingInputPolicy.ASK_USER
    tool_unavailable: ToolUnavailablePolicy = ToolUnavailablePolicy.REPLAN
    budget: ReplanBudget = field(default_factory=ReplanBudget)
    max_step_retries: Optional[int] = 2
    retry_window_ms: Optional[int] = 60_000

    def __post_init__(self):
        # frozen: coerce through object.__setattr__
        if not isinstance(self.missing_input, MissingInputPolicy):
            object.__setattr__(self, "missing_input", MissingInputPolicy(self.missing_input))
        if not isinstance(self.tool_unavailable, ToolUnavailablePolicy):
            object.__setattr__(self, "tool_unavailable", ToolUnavailablePolicy(self.tool_unavailable))
        if isinstance(self.budget, dict):
            object.__setattr__(self, "budget", ReplanBudget.from_dict(self.budget))
        if self.max_replans_per_plan is None or self.max_replans_per_plan < 0:
            raise ValueError(f"max_replans_per_plan must be >= 0, got {self.max_replans_per_plan}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> ReplanPolicyConfig:
        """Build from snake_case or camelCase keys; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = snake_key(key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class FailureVerdict:
    replan: bool
    cause: Optional[ReplanCause] = None
    definitive: bool = False
    exhausted: bool = False
    reason: str = ""


def _history_since(plan: ExecutionPlan, history: Sequence[HistoryEntry]) -> Sequence[HistoryEntry]:
    offset = max(0, min(plan.metadata.history_offset, len(history)))
    return history[offset:]


def count_tool_calls(history: Sequence[HistoryEntry]) -> int:
    return sum(
        1 for entry in history
        if entry.result.type in (ResultType.TOOL_RESULT, ResultType.TOOL_RESULTS)
    )


def wall_clock_exhausted(
    policy: ReplanPolicyConfig,
    now: float,
    execution_start: Optional[float],
) -> bool:
    """True once the whole execution has run past `budget.max_ms`."""
    if policy.budget.max_ms is None or execution_start is None:
        return False
    return (now - execution_start) * 1000 > policy.budget.max_ms


def should_replan(
    plan: ExecutionPlan,
    history: Sequence[HistoryEntry],
    policy: ReplanPolicyConfig,
    now: Optional[float] = None,
    execution_start: Optional[float] = None,
) -> bool:
    """
    Fixed precedence:
      1. plan already marked replanning
      2. failure window (only entries recorded since the plan was created)
      3. plan TTL
      4. wall-clock budget since execution start
      5. tool-call budget (calls made since the plan was created)
    """
    now = time.time() if now is None else now

    if plan.status == PlanStatus.REPLANNING:
        logger.info(f"Plan {plan.id} is marked replanning (cause={_cause_value(plan)})")
        return True

    if policy.window_size and policy.min_failures:
        window = list(_history_since(plan, history))[-policy.window_size:]
        errors = sum(1 for entry in window if entry.result.is_error)
        if errors >= policy.min_failures:
            return _trigger(plan, ReplanCause.FAIL_WINDOW, f"{errors} errors in last {len(window)} results")

    if policy.plan_ttl_ms is not None:
        age_ms = (now - plan.metadata.start_time) * 1000
        if age_ms > policy.plan_ttl_ms:
            return _trigger(plan, ReplanCause.TTL, f"plan age {age_ms:.0f}ms > {policy.plan_ttl_ms}ms")

    if wall_clock_exhausted(policy, now, execution_start):
        elapsed_ms = (now - execution_start) * 1000
        return _trigger(plan, ReplanCause.BUDGET, f"elapsed {elapsed_ms:.0f}ms > {policy.budget.max_ms}ms")

    if policy.budget.max_tool_calls is not None:
        calls = count_tool_calls(_history_since(plan, history))
        if calls >= policy.budget.max_tool_calls:
            return _trigger(plan, ReplanCause.BUDGET, f"{calls} tool calls >= {policy.budget.max_tool_calls}")

    return False


def _trigger(plan: ExecutionPlan, cause: ReplanCause, detail: str) -> bool:
    plan.metadata.replan_cause = cause
    logger.info(f"Replan triggered for plan {plan.id}: {cause.value} ({detail})")
    return True


def _cause_value(plan: ExecutionPlan) -> Optional[str]:
    return plan.metadata.replan_cause.value if plan.metadata.replan_cause else None


def _matches(message: str, markers: Sequence[str]) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


def classify_failure(
    message: str,
    iterations: int,
    policy: ReplanPolicyConfig,
    step: Optional[PlanStep] = None,
) -> FailureVerdict:
    """Classify one failure message without touching any plan."""
    message = message or ""
    if _matches(message, TOOL_MISSING_MARKERS):
        replan = policy.tool_unavailable == ToolUnavailablePolicy.REPLAN
        return FailureVerdict(replan=replan, cause=ReplanCause.TOOL_MISSING, reason=message)

    if _matches(message, UNRECOVERABLE_MARKERS):
        return FailureVerdict(replan=False, definitive=True, reason=message)

    if step is not None and policy.max_step_retries is not None and step.retry_count >= policy.max_step_retries:
        return FailureVerdict(
            replan=False,
            exhausted=True,
            reason=f"retries exhausted for step {step.id!r} ({step.retry_count})",
        )

    cutoff = policy.allow_replan_until_iteration
    replan = cutoff is not None and iterations < cutoff
    return FailureVerdict(
        replan=replan,
        cause=ReplanCause.FAIL_WINDOW if replan else None,
        reason=message,
    )


def should_replan_on_failure(
    message: str,
    context: Any,
    policy: ReplanPolicyConfig,
    plan: Optional[ExecutionPlan] = None,
    step: Optional[PlanStep] = None,
) -> bool:
    """
    Decide whether a single failed step warrants a replacement plan.

    Definitive failures record `failure_reason` on the plan; replans record
    their cause. The replans cap always wins.
    """
    iterations = getattr(context, "iterations", 0) or 0
    verdict = classify_failure(message, iterations, policy, step)

    if plan is not None:
        if verdict.definitive or verdict.exhausted:
            plan.metadata.failure_reason = verdict.reason
        if verdict.replan and plan.replans_count >= policy.max_replans_per_plan:
            plan.metadata.replan_cause = ReplanCause.MAX_REPLANS_EXCEEDED
            plan.metadata.failure_reason = (
                f"Replan limit reached ({policy.max_replans_per_plan}); last error: {message}"
            )
            logger.warning(f"Plan {plan.id} hit the replan limit after failure: {message}")
            return False
        if verdict.replan:
            plan.metadata.replan_cause = verdict.cause

    logger.info(
        f"Failure classified: replan={verdict.replan} definitive={verdict.definitive} "
        f"exhausted={verdict.exhausted} ({verdict.reason})"
    )
    return verdict.replan


def can_replan(plan: Optional[ExecutionPlan], policy: ReplanPolicyConfig) -> bool:
    return plan is None or plan.replans_count < policy.max_replans_per_plan

