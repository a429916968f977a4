"""
PlanStep and ExecutionPlan: the data model shared by the planning engine.

Steps move forward only (pending -> executing -> completed/failed/skipped).
Replanning never revives a finished step; it replaces the whole plan.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, FrozenSet
import json
import time


class PlanningError(Exception):
    """Base class for planning engine errors."""
    pass


class InvalidTransition(PlanningError, ValueError):
    """Raised when a step or plan status would move backwards."""
    pass


class StepStatus(str, Enum):
    """Lifecycle status of a single step."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepKind(str, Enum):
    ACTION = "action"
    DECISION = "decision"
    VERIFICATION = "verification"


class PlanStatus(str, Enum):
    """Lifecycle status of a plan."""
    PLANNING = "planning"
    EXECUTING = "executing"
    REPLANNING = "replanning"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_INPUT = "waiting-input"


class ReplanCause(str, Enum):
    """Why a plan was (or could not be) replaced."""
    FAIL_WINDOW = "fail-window"
    TTL = "ttl"
    BUDGET = "budget"
    TOOL_MISSING = "tool-missing"
    MISSING_INPUTS = "missing-inputs"
    MAX_REPLANS_EXCEEDED = "max-replans-exceeded"


_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.EXECUTING, StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED},
    StepStatus.EXECUTING: {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}

_PLAN_TRANSITIONS = {
    PlanStatus.PLANNING: {
        PlanStatus.EXECUTING, PlanStatus.REPLANNING, PlanStatus.COMPLETED,
        PlanStatus.FAILED, PlanStatus.WAITING_INPUT,
    },
    PlanStatus.EXECUTING: {
        PlanStatus.REPLANNING, PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.WAITING_INPUT,
    },
    PlanStatus.WAITING_INPUT: {
        PlanStatus.EXECUTING, PlanStatus.REPLANNING, PlanStatus.COMPLETED, PlanStatus.FAILED,
    },
    # a replanning plan is only ever replaced, or failed when the replan cap is hit
    PlanStatus.REPLANNING: {PlanStatus.FAILED},
    PlanStatus.COMPLETED: set(),
    PlanStatus.FAILED: set(),
}

TERMINAL_STEP_STATUSES: FrozenSet[StepStatus] = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)
TERMINAL_PLAN_STATUSES: FrozenSet[PlanStatus] = frozenset(
    {PlanStatus.COMPLETED, PlanStatus.FAILED}
)

NO_TOOL = "none"


@dataclass
class PlanSignals:
    """
    Hints reported by the plan-generating collaborator.

    Attributes:
        needs: Named inputs the planner could not find
        no_discovery_path: Tools the planner wanted but could not discover
        errors: Planner-side error messages
        suggested_next_step: Free-text suggestion for the user
        failure_patterns: Recurring failure descriptions
    """
    needs: List[str] = field(default_factory=list)
    no_discovery_path: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    suggested_next_step: Optional[str] = None
    failure_patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional[PlanSignals]:
        """Build signals from a loose mapping, keeping only string entries."""
        if not isinstance(raw, dict):
            return None

        def _strings(*keys: str) -> List[str]:
            for key in keys:
                value = raw.get(key)
                if isinstance(value, list):
                    return [str(x) for x in value if isinstance(x, str)]
            return []

        suggested = raw.get("suggestedNextStep", raw.get("suggested_next_step"))
        return cls(
            needs=_strings("needs"),
            no_discovery_path=_strings("noDiscoveryPath", "no_discovery_path"),
            errors=_strings("errors"),
            suggested_next_step=suggested if isinstance(suggested, str) else None,
            failure_patterns=_strings("failurePatterns", "failure_patterns"),
        )


@dataclass
class PlanStep:
    """
    A single unit of work in an execution plan.

    Attributes:
        id: Unique identifier within the plan
        description: Human-readable intent, also used as fallback response text
        kind: action, decision or verification
        tool: Name of the external tool to call (None or "none" means no call)
        arguments: Tool arguments; string values may hold template references
        dependencies: Ids of steps that must be completed before this one runs
        status: Current lifecycle status
        result: Value stored on completion (or {"error": ...} on failure)
        retry_count: How many times an equivalent step failed recently
        explicit_parallel: Author hint that this step is meant to fan out
    """
    id: str
    description: str = ""
    kind: StepKind = StepKind.ACTION
    tool: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    retry_count: int = 0
    explicit_parallel: bool = False
    finished_at: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.dependencies, frozenset):
            self.dependencies = frozenset(self.dependencies or ())
        if not isinstance(self.kind, StepKind):
            self.kind = StepKind(self.kind)
        if not isinstance(self.status, StepStatus):
            self.status = StepStatus(self.status)
        if self.arguments is None:
            self.arguments = {}

    @property
    def has_tool(self) -> bool:
        """True when the step targets a real tool."""
        return bool(self.tool) and self.tool.strip().lower() != NO_TOOL

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def transition(self, status: StepStatus) -> None:
        """
        Move the step to a new status.

        Raises InvalidTransition if the move is not forward along
        pending -> executing -> completed/failed/skipped.
        """
        status = StepStatus(status)
        if status == self.status:
            return
        if status not in _STEP_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Step {self.id!r} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status in TERMINAL_STEP_STATUSES:
            self.finished_at = time.time()

    def complete(self, result: Any) -> None:
        self.transition(StepStatus.COMPLETED)
        self.result = result

    def fail(self, error: str) -> None:
        self.transition(StepStatus.FAILED)
        self.result = {"error": error}

    def skip(self, reason: str) -> None:
        self.transition(StepStatus.SKIPPED)
        self.result = {"skipped": reason}

    def signature(self) -> str:
        """Stable key for "the same call" across plans (tool + arguments)."""
        return f"{self.tool}:{json.dumps(self.arguments, sort_keys=True, default=str)}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["dependencies"] = sorted(self.dependencies)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PlanStep:
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            kind=StepKind(data.get("kind", StepKind.ACTION.value)),
            tool=data.get("tool"),
            arguments=data.get("arguments") or {},
            dependencies=frozenset(data.get("dependencies") or ()),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            result=data.get("result"),
            retry_count=int(data.get("retry_count", 0)),
            explicit_parallel=bool(data.get("explicit_parallel", False)),
            finished_at=data.get("finished_at"),
        )

    def __repr__(self) -> str:
        return (
            f"PlanStep(id={self.id!r}, tool={self.tool!r}, "
            f"status={self.status.value}, depends_on={set(self.dependencies)})"
        )


@dataclass
class PlanMetadata:
    """
    Free-form bag of plan bookkeeping.

    `history_offset` is the length of the execution history when the plan was
    created; the failure window only looks at entries recorded after it.
    """
    start_time: float = field(default_factory=time.time)
    replans_count: int = 0
    replan_cause: Optional[ReplanCause] = None
    signals: Optional[PlanSignals] = None
    history_offset: int = 0
    thread: Optional[str] = None
    failure_reason: Optional[str] = None
    pending_batch: Optional[Dict[str, Any]] = None
    missing_inputs: List[str] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["replan_cause"] = self.replan_cause.value if self.replan_cause else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PlanMetadata:
        signals = data.get("signals")
        cause = data.get("replan_cause")
        return cls(
            start_time=data.get("start_time", time.time()),
            replans_count=int(data.get("replans_count", 0)),
            replan_cause=ReplanCause(cause) if cause else None,
            signals=PlanSignals(**signals) if isinstance(signals, dict) else None,
            history_offset=int(data.get("history_offset", 0)),
            thread=data.get("thread"),
            failure_reason=data.get("failure_reason"),
            pending_batch=data.get("pending_batch"),
            missing_inputs=list(data.get("missing_inputs") or []),
            validation_errors=list(data.get("validation_errors") or []),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ExecutionPlan:
    """
    The owning aggregate for a list of steps addressing one goal.

    Attributes:
        id: Plan id; every replan produces a new one
        goal: Original task input
        strategy: Strategy tag (e.g. "plan-execute")
        steps: Ordered steps; order is the default execution sequence
        current_step_index: Cursor into `steps`
        status: Plan lifecycle status
        reasoning: Planner-supplied reasoning text
        metadata: Bookkeeping (start time, replans, cause, signals, ...)
    """
    id: str
    goal: str
    strategy: str = "plan-execute"
    steps: List[PlanStep] = field(default_factory=list)
    current_step_index: int = 0
    status: PlanStatus = PlanStatus.PLANNING
    reasoning: str = ""
    metadata: PlanMetadata = field(default_factory=PlanMetadata)

    @property
    def current_step(self) -> Optional[PlanStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    @property
    def replans_count(self) -> int:
        return self.metadata.replans_count

    def transition(self, status: PlanStatus) -> bool:
        """
        Move the plan to a new status. Returns False when it already had it.

        Raises InvalidTransition for moves out of a terminal status or back
        into planning.
        """
        status = PlanStatus(status)
        if status == self.status:
            return False
        if status not in _PLAN_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Plan {self.id!r} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        return True

    def get_step(self, step_id: str) -> Optional[PlanStep]:
        """Get a step by literal id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def find_step(self, identifier: str) -> Optional[PlanStep]:
        """
        Find a step by literal id, falling back to a positional alias
        ("step-N" is the N-th step, 1-based).
        """
        step = self.get_step(identifier)
        if step is not None:
            return step
        return step_by_alias(self.steps, identifier)

    def sync_cursor(self) -> int:
        """Point the cursor at the first step that has not finished."""
        for index, step in enumerate(self.steps):
            if not step.is_finished:
                self.current_step_index = index
                return index
        self.current_step_index = len(self.steps)
        return self.current_step_index

    def executing_steps(self) -> List[PlanStep]:
        return [s for s in self.steps if s.status == StepStatus.EXECUTING]

    def summary(self) -> str:
        """Short text describing what the plan produced."""
        completed = [s for s in self.steps if s.status == StepStatus.COMPLETED]
        if not completed:
            failed = [s for s in self.steps if s.status == StepStatus.FAILED]
            if failed:
                return "; ".join(
                    f"{s.description or s.id}: {(s.result or {}).get('error', 'failed')}"
                    if isinstance(s.result, dict) else f"{s.description or s.id}: failed"
                    for s in failed
                )
            return self.reasoning or f"No steps completed for: {self.goal}"
        last = completed[-1]
        if last.has_tool and last.result is not None:
            if isinstance(last.result, str):
                return last.result
            return json.dumps(last.result, default=str)
        return last.description

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "strategy": self.strategy,
            "steps": [s.to_dict() for s in self.steps],
            "current_step_index": self.current_step_index,
            "status": self.status.value,
            "reasoning": self.reasoning,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExecutionPlan:
        return cls(
            id=data["id"],
            goal=data.get("goal", ""),
            strategy=data.get("strategy", "plan-execute"),
            steps=[PlanStep.from_dict(s) for s in data.get("steps", [])],
            current_step_index=int(data.get("current_step_index", 0)),
            status=PlanStatus(data.get("status", PlanStatus.PLANNING.value)),
            reasoning=data.get("reasoning", ""),
            metadata=PlanMetadata.from_dict(data.get("metadata") or {}),
        )

    def __repr__(self) -> str:
        return (
            f"ExecutionPlan(id={self.id!r}, steps={len(self.steps)}, "
            f"cursor={self.current_step_index}, status={self.status.value})"
        )


def step_by_alias(steps: List[PlanStep], identifier: str) -> Optional[PlanStep]:
    """Resolve a "step-N" positional alias; None when it is not one or out of range."""
    if not identifier.startswith("step-"):
        return None
    suffix = identifier[len("step-"):]
    if not suffix.isdigit():
        return None
    index = int(suffix) - 1
    if 0 <= index < len(steps):
        return steps[index]
    return None
