"""
Values exchanged with the outside world: thoughts and actions emitted by the
planner, results reported back by the tool executor, and the per-call
execution context.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import time


class ActionType(str, Enum):
    FINAL_ANSWER = "final_answer"
    TOOL_CALL = "tool_call"
    PARALLEL_TOOLS = "parallel_tools"
    EXECUTE_PLAN = "execute_plan"
    NEED_MORE_INFO = "need_more_info"


class ResultType(str, Enum):
    FINAL_ANSWER = "final_answer"
    TOOL_RESULT = "tool_result"
    TOOL_RESULTS = "tool_results"
    ERROR = "error"


@dataclass
class FinalAnswerAction:
    content: str
    type: ActionType = field(default=ActionType.FINAL_ANSWER, init=False)


@dataclass
class ToolCallAction:
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None
    type: ActionType = field(default=ActionType.TOOL_CALL, init=False)


@dataclass
class ToolInvocation:
    """One entry of a parallel batch."""
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None


@dataclass
class ParallelToolsAction:
    """
    A set of tool invocations the executor should run concurrently.

    Failures never cancel siblings (fail_fast is always False) and the
    executor reports one aggregated `tool_results` outcome.
    """
    tools: List[ToolInvocation]
    concurrency: int
    fail_fast: bool = False
    aggregate_results: bool = True
    type: ActionType = field(default=ActionType.PARALLEL_TOOLS, init=False)


@dataclass
class ExecutePlanAction:
    plan_id: str
    type: ActionType = field(default=ActionType.EXECUTE_PLAN, init=False)


@dataclass
class NeedMoreInfoAction:
    prompt: str
    missing: List[str] = field(default_factory=list)
    type: ActionType = field(default=ActionType.NEED_MORE_INFO, init=False)


Action = Union[
    FinalAnswerAction,
    ToolCallAction,
    ParallelToolsAction,
    ExecutePlanAction,
    NeedMoreInfoAction,
]


@dataclass
class AgentThought:
    reasoning: str
    action: Action
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallOutcome:
    """One item of an aggregated `tool_results` result."""
    tool_name: str
    result: Any = None
    error: Optional[str] = None
    step_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ActionResult:
    """
    What the tool executor reports back.

    For `tool_results`, `content` is a list of ToolCallOutcome.
    For `error`, `error` holds the message.
    """
    type: ResultType
    content: Any = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type == ResultType.ERROR

    @classmethod
    def final_answer(cls, content: str) -> ActionResult:
        return cls(type=ResultType.FINAL_ANSWER, content=content)

    @classmethod
    def tool_result(cls, content: Any) -> ActionResult:
        return cls(type=ResultType.TOOL_RESULT, content=content)

    @classmethod
    def tool_results(cls, outcomes: List[ToolCallOutcome]) -> ActionResult:
        return cls(type=ResultType.TOOL_RESULTS, content=list(outcomes))

    @classmethod
    def failure(cls, message: str) -> ActionResult:
        return cls(type=ResultType.ERROR, error=message)


@dataclass
class HistoryEntry:
    """One recorded think/act cycle."""
    result: ActionResult
    action: Optional[Action] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ResultAnalysis:
    is_complete: bool
    is_successful: bool
    feedback: str
    should_continue: bool
    suggested_next_action: Optional[str] = None


@dataclass
class ExecutionContext:
    """
    Everything a think/analyze call needs to know about its caller.

    Attributes:
        input: The user goal / task input
        iterations: How many think cycles have run for this execution
        history: Recorded results, oldest first
        thread_id: Execution thread key (owns the plan)
        correlation_id: Fallback key when no thread id is given
        available_tools: Tool metadata the planner may use
        user_context: Caller-supplied context values (CONTEXT.userContext.*)
        planner_metadata: Planner metadata (CONTEXT.plannerMetadata.*)
        agent_identity: Agent identity (CONTEXT.agentIdentity.*)
        start_time: Wall-clock start of the whole execution (seconds)
    """
    input: str
    iterations: int = 0
    history: List[HistoryEntry] = field(default_factory=list)
    thread_id: Optional[str] = None
    correlation_id: Optional[str] = None
    available_tools: List[Any] = field(default_factory=list)
    user_context: Dict[str, Any] = field(default_factory=dict)
    planner_metadata: Dict[str, Any] = field(default_factory=dict)
    agent_identity: Dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.time)

    def tool_names(self) -> List[str]:
        names = []
        for tool in self.available_tools:
            name = tool.get("name") if isinstance(tool, dict) else getattr(tool, "name", None)
            if name:
                names.append(name)
        return names
