"""
High-level driver that alternates planner and executor until the run ends.

The loop is: think -> execute the action -> record history -> analyze.
It stops on a final answer, on a need_more_info request, when the analysis
says not to continue, or after `max_iterations` think cycles.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .actions import (
    ActionType,
    AgentThought,
    ExecutionContext,
    HistoryEntry,
    ResultAnalysis,
)
from .executor import ToolExecutor
from .plan_and_execute import PlanAndExecutePlanner
from .plan_step import ExecutionPlan, PlanStatus

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """
    Attributes:
        answer: Final answer text, or the question for the user when awaiting input
        success: Whether the run ended with a successful answer
        awaiting_input: The run paused on a need_more_info request
        missing: Inputs the planner asked for
        iterations: Think cycles used
        plan: Last plan of the thread
        thoughts: Every thought the planner produced, oldest first
    """
    answer: Optional[str]
    success: bool
    awaiting_input: bool = False
    missing: List[str] = field(default_factory=list)
    iterations: int = 0
    plan: Optional[ExecutionPlan] = None
    thoughts: List[AgentThought] = field(default_factory=list)


async def run_plan(
    planner: PlanAndExecutePlanner,
    executor: ToolExecutor,
    context: ExecutionContext,
    max_iterations: int = 20,
) -> RunOutcome:
    """
    Drive a plan to completion.

    Example:
        >>> planner = PlanAndExecutePlanner(llm)
        >>> executor = ToolExecutor([search])
        >>> context = ExecutionContext(input="Find the newest issue", thread_id="t-1",
        ...                            available_tools=executor.tool_metadata())
        >>> outcome = asyncio.run(run_plan(planner, executor, context))
        >>> print(outcome.answer)
    """
    if not context.available_tools:
        context.available_tools = executor.tool_metadata()

    thoughts: List[AgentThought] = []
    analysis: Optional[ResultAnalysis] = None

    while context.iterations < max_iterations:
        thought = await planner.think(context)
        context.iterations += 1
        thoughts.append(thought)
        action = thought.action
        logger.info(f"Iteration {context.iterations}: {action.type.value} ({thought.reasoning})")

        if action.type == ActionType.NEED_MORE_INFO:
            return RunOutcome(
                answer=action.prompt,
                success=False,
                awaiting_input=True,
                missing=list(action.missing),
                iterations=context.iterations,
                plan=await planner.get_plan_for_context(context),
                thoughts=thoughts,
            )

        if action.type == ActionType.EXECUTE_PLAN:
            continue

        result = await executor.execute(action)
        context.history.append(HistoryEntry(result=result, action=action))
        analysis = await planner.analyze_result(result, context)

        if action.type == ActionType.FINAL_ANSWER:
            return _finish(action.content, analysis, context, thoughts, await planner.get_plan_for_context(context))

        if not analysis.should_continue:
            plan = await planner.get_plan_for_context(context)
            answer = await _closing_answer(planner, context, thoughts, analysis, plan)
            return _finish(answer, analysis, context, thoughts, plan)

    logger.warning(f"Run stopped after {max_iterations} iterations without a final answer")
    return RunOutcome(
        answer=analysis.feedback if analysis else None,
        success=False,
        iterations=context.iterations,
        plan=await planner.get_plan_for_context(context),
        thoughts=thoughts,
    )


async def _closing_answer(
    planner: PlanAndExecutePlanner,
    context: ExecutionContext,
    thoughts: List[AgentThought],
    analysis: ResultAnalysis,
    plan: Optional[ExecutionPlan],
) -> str:
    # a finished plan answers one more think with its summary or failure reason
    if plan is not None and plan.is_finished:
        thought = await planner.think(context)
        thoughts.append(thought)
        if thought.action.type == ActionType.FINAL_ANSWER:
            return thought.action.content
    return analysis.feedback


def _finish(
    answer: Any,
    analysis: ResultAnalysis,
    context: ExecutionContext,
    thoughts: List[AgentThought],
    plan: Optional[ExecutionPlan],
) -> RunOutcome:
    success = analysis.is_successful and (plan is None or plan.status != PlanStatus.FAILED)
    return RunOutcome(
        answer=str(answer) if answer is not None else None,
        success=success,
        iterations=context.iterations,
        plan=plan,
        thoughts=thoughts,
    )


def run_plan_sync(
    planner: PlanAndExecutePlanner,
    executor: ToolExecutor,
    context: ExecutionContext,
    **kwargs,
) -> RunOutcome:
    """Synchronous wrapper for run_plan()."""
    return asyncio.run(run_plan(planner, executor, context, **kwargs))


async def resume_with_input(
    planner: PlanAndExecutePlanner,
    executor: ToolExecutor,
    context: ExecutionContext,
    **user_context: Any,
) -> RunOutcome:
    """Merge user-supplied values into the context and continue a paused run."""
    context.user_context.update(user_context)
    return await run_plan(planner, executor, context)

