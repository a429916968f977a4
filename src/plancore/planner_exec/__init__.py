"""
planner_exec: the plan-and-execute planning engine.

Core Components:
- ExecutionPlan / PlanStep: the plan data model and its lifecycle
- PlanValidator: structural validation and dependency ordering
- ReplanPolicyConfig / should_replan: when a plan gets replaced
- detect_batch / FanOutExpander: parallel batches and array fan-out
- PlanAndExecutePlanner: think / analyze_result over a PlanStore
- ToolExecutor and run_plan(): a reference loop that runs the emitted actions

Example:
    >>> from plancore.planner_exec import PlanAndExecutePlanner, ToolExecutor, tool_spec, run_plan
    >>> from plancore.planner_exec import ExecutionContext
    >>> import asyncio
    >>>
    >>> @tool_spec(idempotent=True, timeout=10.0)
    >>> def list_issues(repo: str) -> list:
    ...     '''List open issues of a repository.'''
    ...     return [{"id": 7, "title": "Crash on start"}]
    >>>
    >>> planner = PlanAndExecutePlanner(create_llm_provider({"provider": "openai"}))
    >>> executor = ToolExecutor([list_issues])
    >>> context = ExecutionContext(input="What is the newest issue in acme/app?", thread_id="t-1")
    >>> outcome = asyncio.run(run_plan(planner, executor, context))
    >>> print(outcome.answer)
"""
# plan_step and actions must load before anything that reaches into resolution
from .plan_step import (
    PlanningError,
    InvalidTransition,
    StepStatus,
    StepKind,
    PlanStatus,
    ReplanCause,
    PlanSignals,
    PlanStep,
    PlanMetadata,
    ExecutionPlan,
    step_by_alias,
)
from .actions import (
    ActionType,
    ResultType,
    FinalAnswerAction,
    ToolCallAction,
    ToolInvocation,
    ParallelToolsAction,
    ExecutePlanAction,
    NeedMoreInfoAction,
    AgentThought,
    ToolCallOutcome,
    ActionResult,
    HistoryEntry,
    ResultAnalysis,
    ExecutionContext,
)
from .tool_spec import ToolSpec, tool_spec
from .plan_schema import PlannerResponse, normalize_plan_payload
from .planner import PlanValidator, ValidationReport, PlanIssue, IssueKind
from .policy import (
    MissingInputPolicy,
    ToolUnavailablePolicy,
    ReplanBudget,
    ReplanPolicyConfig,
    FailureVerdict,
    classify_failure,
    should_replan,
    should_replan_on_failure,
    can_replan,
    wall_clock_exhausted,
)
from .parallel import (
    MAX_CONCURRENCY_CEILING,
    Batch,
    FanOut,
    FanOutExpander,
    detect_batch,
    select_batch,
)
from .store import PlanStore, InMemoryPlanStore, thread_key
from .plan_and_execute import PlanAndExecutePlanner, build_replan_context
from .executor import ToolExecutor, ExecutionError
from .run_plan import RunOutcome, run_plan, run_plan_sync, resume_with_input

__all__ = [
    # Data model
    "PlanningError",
    "InvalidTransition",
    "StepStatus",
    "StepKind",
    "PlanStatus",
    "ReplanCause",
    "PlanSignals",
    "PlanStep",
    "PlanMetadata",
    "ExecutionPlan",
    "step_by_alias",
    # Actions and results
    "ActionType",
    "ResultType",
    "FinalAnswerAction",
    "ToolCallAction",
    "ToolInvocation",
    "ParallelToolsAction",
    "ExecutePlanAction",
    "NeedMoreInfoAction",
    "AgentThought",
    "ToolCallOutcome",
    "ActionResult",
    "HistoryEntry",
    "ResultAnalysis",
    "ExecutionContext",
    # Tools
    "ToolSpec",
    "tool_spec",
    # Planning
    "PlannerResponse",
    "normalize_plan_payload",
    "PlanValidator",
    "ValidationReport",
    "PlanIssue",
    "IssueKind",
    # Policy
    "MissingInputPolicy",
    "ToolUnavailablePolicy",
    "ReplanBudget",
    "ReplanPolicyConfig",
    "FailureVerdict",
    "classify_failure",
    "should_replan",
    "should_replan_on_failure",
    "can_replan",
    "wall_clock_exhausted",
    # Parallelism
    "MAX_CONCURRENCY_CEILING",
    "Batch",
    "FanOut",
    "FanOutExpander",
    "detect_batch",
    "select_batch",
    # Lifecycle
    "PlanStore",
    "InMemoryPlanStore",
    "thread_key",
    "PlanAndExecutePlanner",
    "build_replan_context",
    "ToolExecutor",
    "ExecutionError",
    "RunOutcome",
    "run_plan",
    "run_plan_sync",
    "resume_with_input",
]

__version__ = "0.1.0"
