"""
Plan-and-execute lifecycle: `think` decides the next action for an execution
thread, `analyze_result` folds the executor's outcome back into the plan.

The planner never runs tools. Every thought it returns is one of
final_answer, tool_call, parallel_tools, execute_plan or need_more_info, and
the plan for the thread is persisted through a PlanStore after each change.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio
import json
import logging
import time
import uuid

from .plan_step import (
    ExecutionPlan,
    PlanMetadata,
    PlanSignals,
    PlanStatus,
    PlanStep,
    ReplanCause,
    StepStatus,
)
from .actions import (
    ActionResult,
    AgentThought,
    ExecutePlanAction,
    ExecutionContext,
    FinalAnswerAction,
    NeedMoreInfoAction,
    ResultAnalysis,
    ResultType,
    ToolCallAction,
    ToolCallOutcome,
)
from .plan_schema import normalize_plan_payload
from .planner import PlanValidator, describe_steps
from .policy import (
    MissingInputPolicy,
    ToolUnavailablePolicy,
    can_replan,
    should_replan,
    should_replan_on_failure,
    wall_clock_exhausted,
)
from .parallel import FanOutExpander, detect_batch
from .store import InMemoryPlanStore, PlanStore, thread_key
from ..config import PlannerConfig
from ..concurrency import run_io
from ..llms import create_llm_provider
from ..resolution.extractor import LLMValueExtractor, NullValueExtractor, ValueExtractor
from ..resolution.resolver import ArgumentResolver, ResolutionResult, supplied_input
from ..telemetry import TelemetrySink, emit_safely, get_global_sink

logger = logging.getLogger(__name__)


PLANNER_SYSTEM_PROMPT = """You are a planning assistant. Break the user's goal into a short list of steps.

Each step has an id, a description, the tool to call ("none" for reasoning-only steps),
its arguments, and the ids of the steps it depends on. Refer to an earlier step's output
with {{<step id>.result}} or a path into it such as {{s1.result[0].id}}, and to caller
context with CONTEXT.userContext.<name>. Use a tool only if it is listed as available.
If a required input cannot be found, list it under signals.needs instead of guessing."""

WAITING_FOR_SIGNALS = "signals"
WAITING_FOR_ARGUMENTS = "arguments"
WAITING_FOR_TOOL = "tool"


def new_plan_id() -> str:
    return f"plan-{uuid.uuid4().hex[:12]}"


def _preview(value: Any, limit: int = 200) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


def build_replan_context(plan: ExecutionPlan) -> Dict[str, Any]:
    """
    What a replacement plan should know about the plan it replaces: which
    tools worked, which failed, which never ran, and the merged signals.
    """
    worked, failed, not_executed = [], [], []
    for step in plan.steps:
        if not step.has_tool:
            continue
        if step.status == StepStatus.COMPLETED:
            worked.append({"step_id": step.id, "tool": step.tool, "result_preview": _preview(step.result)})
        elif step.status == StepStatus.FAILED:
            error = step.result.get("error") if isinstance(step.result, dict) else step.result
            failed.append({"step_id": step.id, "tool": step.tool, "error": str(error)})
        else:
            not_executed.append({"step_id": step.id, "tool": step.tool})

    previous = plan.metadata.signals or PlanSignals()
    signals = PlanSignals(
        needs=list(dict.fromkeys(previous.needs + plan.metadata.missing_inputs)),
        no_discovery_path=list(previous.no_discovery_path),
        errors=list(previous.errors),
        suggested_next_step=previous.suggested_next_step,
        failure_patterns=list(dict.fromkeys(
            previous.failure_patterns + [f"{f['tool']}: {f['error']}" for f in failed]
        )),
    )
    cause = plan.metadata.replan_cause
    return {
        "previous_plan_id": plan.id,
        "replan_cause": cause.value if cause else None,
        "replans_count": plan.replans_count,
        "tools_that_worked": worked,
        "tools_that_failed": failed,
        "tools_not_executed": not_executed,
        "signals": {
            "needs": signals.needs,
            "no_discovery_path": signals.no_discovery_path,
            "errors": signals.errors,
            "suggested_next_step": signals.suggested_next_step,
            "failure_patterns": signals.failure_patterns,
        },
    }


def _tool_metadata(tool: Any) -> Dict[str, Any]:
    if isinstance(tool, dict):
        return tool
    for_llm = getattr(tool, "for_llm", None)
    if callable(for_llm):
        return for_llm()
    return {"name": getattr(tool, "name", str(tool)), "description": getattr(tool, "description", "")}


def _coerce_outcome(item: Any) -> ToolCallOutcome:
    if isinstance(item, ToolCallOutcome):
        return item
    if isinstance(item, dict):
        return ToolCallOutcome(
            tool_name=item.get("tool_name") or item.get("toolName") or item.get("tool") or "",
            result=item.get("result"),
            error=item.get("error"),
            step_id=item.get("step_id") or item.get("stepId"),
        )
    return ToolCallOutcome(tool_name="", result=item)


class PlanAndExecutePlanner:
    """
    Drives one plan per execution thread.

    Example:
        ```python
        planner = PlanAndExecutePlanner(create_llm_provider({"provider": "openai"}))
        context = ExecutionContext(input="Summarize my open issues", thread_id="t-1")
        thought = await planner.think(context)
        ```

    Without an explicit `llm` the provider named by `config.llm` is built.
    The LLM collaborator needs `create_plan(goal, strategy, prompts)` and,
    for value extraction, `call(messages)`. Either may be sync or async.
    """

    def __init__(
        self,
        llm: Any = None,
        *,
        config: Optional[PlannerConfig] = None,
        store: Optional[PlanStore] = None,
        telemetry: Optional[TelemetrySink] = None,
        extractor: Optional[ValueExtractor] = None,
        clock=time.time,
    ):
        self.config = config or PlannerConfig()
        if llm is None:
            llm = create_llm_provider(self.config.llm)
        self.llm = llm
        self.policy = self.config.policy
        self.store = store if store is not None else InMemoryPlanStore()
        self.telemetry = telemetry
        self._clock = clock

        if extractor is None:
            if callable(getattr(llm, "call", None)):
                extractor = LLMValueExtractor(
                    llm,
                    timeout=self.config.extraction_timeout_s,
                    cache_size=self.config.extraction_cache_size,
                )
            else:
                extractor = NullValueExtractor()
        self.resolver = ArgumentResolver(extractor)
        self.validator = PlanValidator()
        self.expander = FanOutExpander(self.resolver, self.config.max_concurrency)

    # ---- public surface ----------------------------------------------------

    async def get_plan_for_context(self, context: ExecutionContext) -> Optional[ExecutionPlan]:
        return await self.store.get(thread_key(context))

    async def resolve_args(
        self,
        arguments: Dict[str, Any],
        steps: List[PlanStep],
        context: Optional[ExecutionContext] = None,
    ) -> ResolutionResult:
        return await self.resolver.resolve(arguments, steps, context)

    async def think(self, context: ExecutionContext) -> AgentThought:
        """
        Decide the next action for the context's thread. Never raises: any
        internal error becomes a final_answer thought describing it.
        """
        try:
            return await self._think(context)
        except Exception as e:
            logger.error(f"Planning failed for thread {thread_key(context)}: {e}", exc_info=True)
            return AgentThought(
                reasoning=f"Planning error: {e}",
                action=FinalAnswerAction(content=f"I encountered an error while planning: {e}"),
                metadata={"error": str(e)},
            )

    async def analyze_result(self, result: ActionResult, context: ExecutionContext) -> ResultAnalysis:
        """Fold an executor outcome into the thread's plan. Never raises."""
        try:
            return await self._analyze(result, context)
        except Exception as e:
            logger.error(f"Result analysis failed for thread {thread_key(context)}: {e}", exc_info=True)
            return ResultAnalysis(
                is_complete=True,
                is_successful=False,
                feedback=f"Result analysis failed: {e}",
                should_continue=False,
            )

    # ---- think ---------------------------------------------------------------

    async def _think(self, context: ExecutionContext) -> AgentThought:
        key = thread_key(context)
        plan = await self.store.get(key)

        if plan is None:
            return await self._create_plan(context, key)

        if plan.is_finished:
            if context.input and context.input != plan.goal:
                logger.info(f"New goal on thread {key}; starting a fresh plan")
                return await self._create_plan(context, key)
            return self._terminal_thought(plan)

        if plan.status == PlanStatus.WAITING_INPUT:
            return await self._resume_waiting(plan, context, key)

        if should_replan(
            plan,
            context.history,
            self.policy,
            now=self._clock(),
            execution_start=context.start_time,
        ):
            return await self._replan(plan, context, key)

        return await self._advance(plan, context, key)

    async def _replan(self, plan: ExecutionPlan, context: ExecutionContext, key: str) -> AgentThought:
        cause = plan.metadata.replan_cause
        if cause == ReplanCause.BUDGET and wall_clock_exhausted(self.policy, self._clock(), context.start_time):
            # a replacement would start over budget too
            message = (
                f"I cannot complete this task within the time budget of "
                f"{self.policy.budget.max_ms}ms."
            )
            return await self._fail(plan, key, message)

        if not can_replan(plan, self.policy):
            logger.warning(
                f"Plan {plan.id} needs a replan ({cause.value if cause else 'unknown'}) "
                f"but the limit of {self.policy.max_replans_per_plan} is reached"
            )
            plan.metadata.replan_cause = ReplanCause.MAX_REPLANS_EXCEEDED
            return await self._fail(plan, key, self._replan_limit_message(plan))

        self._emit("planner.replan.started", {
            "plan_id": plan.id,
            "thread": key,
            "cause": cause.value if cause else None,
            "replans_count": plan.replans_count,
        })
        thought = await self._create_plan(context, key, previous=plan)
        self._emit("planner.replan.completed", {
            "previous_plan_id": plan.id,
            "plan_id": thought.metadata.get("planId"),
            "thread": key,
            "cause": cause.value if cause else None,
            "replans_count": plan.replans_count + 1,
        })
        return thought

    def _build_prompts(self, context: ExecutionContext, previous: Optional[ExecutionPlan]) -> Dict[str, Any]:
        user_prompt = f"Goal: {context.input}"
        if context.user_context:
            user_prompt += f"\n\nUSER CONTEXT KEYS: {sorted(context.user_context)}"
        if previous is not None:
            user_prompt += (
                "\n\nA previous plan for this goal did not work out. Avoid repeating what failed.\n"
                f"PREVIOUS ATTEMPT:\n{json.dumps(build_replan_context(previous), indent=2, default=str)}"
            )
        return {
            "system_prompt": PLANNER_SYSTEM_PROMPT,
            "user_prompt": user_prompt,
            "available_tools": [_tool_metadata(t) for t in context.available_tools],
        }

    async def _generate(self, context: ExecutionContext, prompts: Dict[str, Any]) -> Any:
        create_plan = self.llm.create_plan
        if asyncio.iscoroutinefunction(create_plan):
            return await create_plan(context.input, self.config.strategy, prompts)
        raw = await run_io(create_plan, context.input, self.config.strategy, prompts)
        if asyncio.iscoroutine(raw):
            raw = await raw
        return raw

    async def _create_plan(
        self,
        context: ExecutionContext,
        key: str,
        previous: Optional[ExecutionPlan] = None,
    ) -> AgentThought:
        replans_count = previous.replans_count + 1 if previous is not None else 0
        raw = await self._generate(context, self._build_prompts(context, previous))
        steps, reasoning, signals = normalize_plan_payload(raw)

        now = self._clock()
        plan = ExecutionPlan(
            id=new_plan_id(),
            goal=context.input,
            strategy=self.config.strategy,
            steps=steps,
            reasoning=reasoning,
            metadata=PlanMetadata(
                start_time=now,
                replans_count=replans_count,
                replan_cause=previous.metadata.replan_cause if previous is not None else None,
                signals=signals,
                history_offset=len(context.history),
            ),
        )

        report = self.validator.validate(steps)
        for warning in report.warnings:
            logger.warning(f"Plan {plan.id}: {warning.message}")
        if not report.is_valid:
            plan.steps = self.validator.diagnostic_steps(report)
            plan.metadata.validation_errors = report.messages()
            self._emit_created(plan, key)
            return await self._fail(plan, key, plan.steps[0].description)

        if not steps:
            plan.transition(PlanStatus.COMPLETED)
            await self._save(key, plan)
            self._emit_created(plan, key)
            self._emit("plan.completed", {"plan_id": plan.id, "thread": key, "steps": 0})
            return AgentThought(
                reasoning="The planner produced no steps",
                action=FinalAnswerAction(content=reasoning or f"Nothing to do for: {context.input}"),
                metadata={"planId": plan.id, "totalSteps": 0},
            )

        plan.steps = self.validator.order_steps(steps)
        if previous is not None:
            self._carry_retry_counts(plan, previous, now)
        logger.info(
            f"Created plan {plan.id} with {len(plan.steps)} steps "
            f"(replans={replans_count}):\n{describe_steps(plan.steps)}"
        )
        self._emit_created(plan, key)

        if signals is not None and signals.needs:
            unmet = [need for need in signals.needs if supplied_input(context, need) is None]
            if unmet:
                return await self._handle_planner_needs(plan, key, unmet, signals.suggested_next_step)

        self._set_status(plan, key, PlanStatus.EXECUTING)
        await self._save(key, plan)
        return AgentThought(
            reasoning=f"Plan created. Ready to execute. {reasoning}".strip(),
            action=ExecutePlanAction(plan_id=plan.id),
            metadata={"planId": plan.id, "totalSteps": len(plan.steps)},
        )

    async def _handle_planner_needs(
        self,
        plan: ExecutionPlan,
        key: str,
        needs: List[str],
        suggestion: Optional[str] = None,
    ) -> AgentThought:
        plan.metadata.missing_inputs = list(needs)
        if self.policy.missing_input == MissingInputPolicy.ASK_USER:
            plan.metadata.extra["waiting_for"] = WAITING_FOR_SIGNALS
            return await self._wait_for_input(plan, key, needs, suggestion)

        if not can_replan(plan, self.policy):
            plan.metadata.replan_cause = ReplanCause.MAX_REPLANS_EXCEEDED
            return await self._fail(plan, key, self._missing_inputs_message(needs))
        return await self._mark_replanning(plan, key, ReplanCause.MISSING_INPUTS)

    def _carry_retry_counts(self, plan: ExecutionPlan, previous: ExecutionPlan, now: float) -> None:
        window_ms = self.policy.retry_window_ms
        failed = {}
        for step in previous.steps:
            if step.status != StepStatus.FAILED or not step.has_tool:
                continue
            if window_ms is not None and step.finished_at is not None:
                if (now - step.finished_at) * 1000 > window_ms:
                    continue
            failed[step.signature()] = step
        for step in plan.steps:
            match = failed.get(step.signature())
            if match is not None:
                step.retry_count = match.retry_count + 1
                logger.debug(f"Step {step.id} repeats failed step {match.id} (retry {step.retry_count})")

    # ---- waiting for input -------------------------------------------------

    async def _resume_waiting(self, plan: ExecutionPlan, context: ExecutionContext, key: str) -> AgentThought:
        if context.input and context.input != plan.goal:
            logger.info(f"Plan {plan.id} was waiting for input; new input starts a fresh plan")
            return await self._create_plan(context, key, previous=None)

        still_missing = await self._still_missing(plan, context)
        if still_missing:
            return await self._wait_for_input(plan, key, still_missing)

        reason = plan.metadata.extra.pop("waiting_for", None)
        plan.metadata.missing_inputs = []
        if reason == WAITING_FOR_SIGNALS:
            # the plan was written without these inputs; build one that uses them
            logger.info(f"Inputs requested by plan {plan.id} are now available; replanning")
            plan.metadata.replan_cause = ReplanCause.MISSING_INPUTS
            self._set_status(plan, key, PlanStatus.REPLANNING)
            return await self._replan(plan, context, key)

        logger.info(f"Inputs for plan {plan.id} are now available; resuming")
        self._set_status(plan, key, PlanStatus.EXECUTING)
        return await self._advance(plan, context, key)

    async def _still_missing(self, plan: ExecutionPlan, context: ExecutionContext) -> List[str]:
        reason = plan.metadata.extra.get("waiting_for")
        if reason == WAITING_FOR_SIGNALS:
            return [
                need for need in plan.metadata.missing_inputs
                if supplied_input(context, need) is None
            ]
        plan.sync_cursor()
        step = plan.current_step
        if step is None:
            return []
        if reason == WAITING_FOR_TOOL:
            names = context.tool_names()
            return [step.tool] if names and step.tool not in names else []
        resolution = await self.resolver.resolve(step.arguments, plan.steps, context)
        return resolution.missing

    async def _wait_for_input(
        self,
        plan: ExecutionPlan,
        key: str,
        missing: List[str],
        suggestion: Optional[str] = None,
    ) -> AgentThought:
        plan.metadata.missing_inputs = list(missing)
        self._set_status(plan, key, PlanStatus.WAITING_INPUT)
        await self._save(key, plan)
        prompt = self._missing_inputs_message(missing)
        if suggestion:
            prompt += f"\n{suggestion}"
        return AgentThought(
            reasoning=f"Waiting for user input: {', '.join(missing)}",
            action=NeedMoreInfoAction(prompt=prompt, missing=list(missing)),
            metadata={"planId": plan.id, "missing": list(missing)},
        )

    # ---- advancing -----------------------------------------------------------

    async def _advance(self, plan: ExecutionPlan, context: ExecutionContext, key: str) -> AgentThought:
        if plan.status == PlanStatus.PLANNING:
            self._set_status(plan, key, PlanStatus.EXECUTING)

        executing = plan.executing_steps()
        if executing:
            return AgentThought(
                reasoning=f"Waiting for results of {[s.id for s in executing]}",
                action=ExecutePlanAction(plan_id=plan.id),
                metadata={"planId": plan.id, "stepIds": [s.id for s in executing]},
            )

        names = context.tool_names()
        available = set(names) if names else None

        while True:
            plan.sync_cursor()
            step = plan.current_step
            if step is None:
                return await self._complete(plan, key)

            blocker = self._failed_dependency(step, plan)
            if blocker is not None:
                logger.info(f"Skipping step {step.id}: dependency {blocker} did not complete")
                step.skip(f"dependency {blocker} did not complete")
                continue

            batch = await detect_batch(
                plan,
                self.resolver,
                context,
                lookahead=self.config.lookahead,
                max_concurrency=self.config.max_concurrency,
                available_tools=available,
                expander=self.expander,
            )
            if batch is not None:
                await self._save(key, plan)
                ids = [s.id for s in batch.steps]
                return AgentThought(
                    reasoning=f"Executing {len(ids)} independent steps in parallel",
                    action=batch.action,
                    metadata={"planId": plan.id, "stepIds": ids, "batch": True},
                )

            if not step.has_tool:
                step.complete(step.description)
                logger.debug(f"Step {step.id} has no tool; completed with its description")
                continue

            if available is not None and step.tool not in available:
                return await self._tool_unavailable(plan, step, key)

            fan_out = await self.expander.expand(step, plan, context)
            if fan_out is not None:
                await self._save(key, plan)
                return AgentThought(
                    reasoning=f"Executing {step.tool} for each of {len(fan_out.items)} items",
                    action=fan_out.action,
                    metadata={"planId": plan.id, "stepId": step.id, "fanOut": len(fan_out.items)},
                )

            resolution = await self.resolver.resolve(step.arguments, plan.steps, context)
            if resolution.missing:
                return await self._missing_inputs(plan, step, key, resolution.missing)

            step.transition(StepStatus.EXECUTING)
            await self._save(key, plan)
            return AgentThought(
                reasoning=f"Executing step {step.id}: {step.description}",
                action=ToolCallAction(tool_name=step.tool, arguments=resolution.arguments, step_id=step.id),
                metadata={
                    "planId": plan.id,
                    "stepId": step.id,
                    "stepIndex": plan.current_step_index,
                    "totalSteps": len(plan.steps),
                },
            )

    def _failed_dependency(self, step: PlanStep, plan: ExecutionPlan) -> Optional[str]:
        # template references count as dependencies, as in validation
        for dep_id in self.validator.edges(plan.steps).get(step.id, []):
            dep = plan.get_step(dep_id)
            if dep is not None and dep.status in (StepStatus.FAILED, StepStatus.SKIPPED):
                return dep_id
        return None

    async def _missing_inputs(self, plan: ExecutionPlan, step: PlanStep, key: str, missing: List[str]) -> AgentThought:
        logger.info(f"Step {step.id} of plan {plan.id} is missing inputs: {missing}")
        if self.policy.missing_input == MissingInputPolicy.ASK_USER:
            plan.metadata.extra["waiting_for"] = WAITING_FOR_ARGUMENTS
            return await self._wait_for_input(plan, key, missing)

        plan.metadata.missing_inputs = list(missing)
        if not can_replan(plan, self.policy):
            plan.metadata.replan_cause = ReplanCause.MAX_REPLANS_EXCEEDED
            return await self._fail(plan, key, self._missing_inputs_message(missing))
        return await self._mark_replanning(plan, key, ReplanCause.MISSING_INPUTS)

    async def _tool_unavailable(self, plan: ExecutionPlan, step: PlanStep, key: str) -> AgentThought:
        message = f"Tool not found: {step.tool}"
        mode = self.policy.tool_unavailable
        logger.warning(f"Step {step.id} of plan {plan.id}: {message} (policy={mode.value})")

        if mode == ToolUnavailablePolicy.REPLAN:
            if not can_replan(plan, self.policy):
                plan.metadata.replan_cause = ReplanCause.MAX_REPLANS_EXCEEDED
                step.fail(message)
                return await self._fail(plan, key, self._replan_limit_message(plan, message))
            return await self._mark_replanning(plan, key, ReplanCause.TOOL_MISSING)

        if mode == ToolUnavailablePolicy.ASK_USER:
            plan.metadata.extra["waiting_for"] = WAITING_FOR_TOOL
            return await self._wait_for_input(
                plan, key, [step.tool],
                suggestion=f"The tool {step.tool!r} is not available. Enable it or describe another way to proceed.",
            )

        step.fail(message)
        return await self._fail(plan, key, f"I cannot complete this task: {message}")

    async def _mark_replanning(self, plan: ExecutionPlan, key: str, cause: ReplanCause) -> AgentThought:
        plan.metadata.replan_cause = cause
        self._set_status(plan, key, PlanStatus.REPLANNING)
        await self._save(key, plan)
        return AgentThought(
            reasoning=f"Plan {plan.id} will be replaced ({cause.value})",
            action=ExecutePlanAction(plan_id=plan.id),
            metadata={"planId": plan.id, "replanCause": cause.value},
        )

    # ---- terminal states -----------------------------------------------------

    async def _complete(self, plan: ExecutionPlan, key: str) -> AgentThought:
        self._set_status(plan, key, PlanStatus.COMPLETED)
        await self._save(key, plan)
        self._emit("plan.completed", {
            "plan_id": plan.id,
            "thread": key,
            "steps": len(plan.steps),
            "failed_steps": [s.id for s in plan.steps if s.status == StepStatus.FAILED],
        })
        logger.info(f"Plan {plan.id} completed")
        return self._terminal_thought(plan)

    async def _fail(self, plan: ExecutionPlan, key: str, message: str) -> AgentThought:
        if not plan.metadata.failure_reason:
            plan.metadata.failure_reason = message
        self._set_status(plan, key, PlanStatus.FAILED)
        await self._save(key, plan)
        cause = plan.metadata.replan_cause
        self._emit("plan.failed", {
            "plan_id": plan.id,
            "thread": key,
            "reason": plan.metadata.failure_reason,
            "cause": cause.value if cause else None,
        })
        logger.warning(f"Plan {plan.id} failed: {plan.metadata.failure_reason}")
        return AgentThought(
            reasoning=f"Plan {plan.id} failed",
            action=FinalAnswerAction(content=message),
            metadata={"planId": plan.id, "failed": True},
        )

    def _terminal_thought(self, plan: ExecutionPlan) -> AgentThought:
        if plan.status == PlanStatus.FAILED:
            content = plan.metadata.failure_reason or plan.summary()
        else:
            content = plan.summary()
        return AgentThought(
            reasoning=f"Plan {plan.id} is {plan.status.value}",
            action=FinalAnswerAction(content=content),
            metadata={"planId": plan.id, "status": plan.status.value},
        )

    def _replan_limit_message(self, plan: ExecutionPlan, detail: Optional[str] = None) -> str:
        message = (
            f"I cannot complete this task because the plan had to be revised more than "
            f"{self.policy.max_replans_per_plan} times."
        )
        reason = detail or plan.metadata.failure_reason
        if reason:
            message += f" Last problem: {reason}"
        return message

    @staticmethod
    def _missing_inputs_message(missing: List[str]) -> str:
        lines = "\n".join(f"- {name}" for name in missing)
        return f"I cannot complete this task because I need additional information:\n{lines}"

    # ---- analyze -------------------------------------------------------------

    async def _analyze(self, result: ActionResult, context: ExecutionContext) -> ResultAnalysis:
        key = thread_key(context)
        plan = await self.store.get(key)

        if plan is None:
            return ResultAnalysis(
                is_complete=False,
                is_successful=False,
                feedback="No plan available, need to create one",
                should_continue=True,
            )

        if plan.status == PlanStatus.WAITING_INPUT:
            return ResultAnalysis(
                is_complete=True,
                is_successful=True,
                feedback="Awaiting user input",
                should_continue=False,
                suggested_next_action="Provide: " + ", ".join(plan.metadata.missing_inputs),
            )

        if plan.is_finished:
            successful = plan.status == PlanStatus.COMPLETED
            return ResultAnalysis(
                is_complete=True,
                is_successful=successful,
                feedback=plan.summary() if successful else (plan.metadata.failure_reason or "Plan failed"),
                should_continue=False,
            )

        if result.type == ResultType.FINAL_ANSWER:
            plan.metadata.pending_batch = None
            self._set_status(plan, key, PlanStatus.COMPLETED)
            await self._save(key, plan)
            self._emit("plan.completed", {"plan_id": plan.id, "thread": key, "steps": len(plan.steps)})
            return ResultAnalysis(
                is_complete=True,
                is_successful=True,
                feedback=str(result.content),
                should_continue=False,
            )

        if plan.status == PlanStatus.REPLANNING:
            return ResultAnalysis(
                is_complete=False,
                is_successful=False,
                feedback="Plan is being replaced",
                should_continue=True,
                suggested_next_action="Replan execution strategy",
            )

        if result.is_error:
            return await self._analyze_failure(plan, result, context, key)

        if result.type == ResultType.TOOL_RESULTS:
            self._reconcile_outcomes(plan, result.content)
        else:
            executing = plan.executing_steps()
            step = executing[0] if executing else plan.current_step
            if step is not None and not step.is_finished:
                step.complete(result.content)
            plan.metadata.pending_batch = None

        plan.sync_cursor()
        if plan.current_step is None:
            await self._complete(plan, key)
            failed = [s.id for s in plan.steps if s.status == StepStatus.FAILED]
            return ResultAnalysis(
                is_complete=True,
                is_successful=not failed,
                feedback=plan.summary(),
                should_continue=False,
            )

        await self._save(key, plan)
        remaining = sum(1 for s in plan.steps if not s.is_finished)
        return ResultAnalysis(
            is_complete=False,
            is_successful=True,
            feedback=f"Step completed; {remaining} remaining",
            should_continue=True,
            suggested_next_action=f"Continue with step {plan.current_step.id}",
        )

    async def _analyze_failure(
        self,
        plan: ExecutionPlan,
        result: ActionResult,
        context: ExecutionContext,
        key: str,
    ) -> ResultAnalysis:
        message = result.error or "Unknown error"
        failed = plan.executing_steps()
        if not failed and plan.current_step is not None:
            failed = [plan.current_step]
        for step in failed:
            if not step.is_finished:
                step.fail(message)
        plan.metadata.pending_batch = None

        step = failed[0] if failed else None
        if should_replan_on_failure(message, context, self.policy, plan, step):
            self._set_status(plan, key, PlanStatus.REPLANNING)
            await self._save(key, plan)
            return ResultAnalysis(
                is_complete=False,
                is_successful=False,
                feedback=f"Step failed: {message}. Will replan.",
                should_continue=True,
                suggested_next_action="Replan execution strategy",
            )

        if plan.metadata.replan_cause == ReplanCause.MAX_REPLANS_EXCEEDED:
            await self._fail(plan, key, self._replan_limit_message(plan, message))
        else:
            await self._fail(plan, key, f"Task failed: {plan.metadata.failure_reason or message}")
        return ResultAnalysis(
            is_complete=True,
            is_successful=False,
            feedback=f"Task failed: {plan.metadata.failure_reason or message}",
            should_continue=False,
        )

    def _reconcile_outcomes(self, plan: ExecutionPlan, content: Any) -> None:
        outcomes = [_coerce_outcome(item) for item in (content or [])]
        pending = plan.metadata.pending_batch or {}

        if pending.get("kind") == "fan-out":
            step = plan.get_step(pending["step_ids"][0])
            if step is not None and not step.is_finished:
                if outcomes and all(not o.success for o in outcomes):
                    step.fail("; ".join(str(o.error) for o in outcomes))
                else:
                    step.complete([o.result if o.success else {"error": o.error} for o in outcomes])
        else:
            used = set()
            for step in plan.executing_steps():
                index = self._match_outcome(step, outcomes, used)
                if index is None:
                    step.fail("No result reported for step")
                    continue
                used.add(index)
                outcome = outcomes[index]
                if outcome.success:
                    step.complete(outcome.result)
                else:
                    step.fail(str(outcome.error))
            if len(used) < len(outcomes):
                logger.warning(f"{len(outcomes) - len(used)} tool results did not match any step of plan {plan.id}")

        plan.metadata.pending_batch = None

    @staticmethod
    def _match_outcome(step: PlanStep, outcomes: List[ToolCallOutcome], used: set) -> Optional[int]:
        for index, outcome in enumerate(outcomes):
            if index not in used and outcome.step_id == step.id:
                return index
        for index, outcome in enumerate(outcomes):
            if index not in used and outcome.step_id is None and outcome.tool_name == step.tool:
                return index
        return None

    # ---- side channels -------------------------------------------------------

    def _set_status(self, plan: ExecutionPlan, key: str, status: PlanStatus) -> None:
        previous = plan.status
        if plan.transition(status):
            self._emit("plan.status.changed", {
                "plan_id": plan.id,
                "thread": key,
                "from": previous.value,
                "to": status.value,
            })

    def _emit_created(self, plan: ExecutionPlan, key: str) -> None:
        self._emit("plan.created", {
            "plan_id": plan.id,
            "thread": key,
            "goal": plan.goal,
            "strategy": plan.strategy,
            "steps": len(plan.steps),
            "replans_count": plan.replans_count,
        })

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        emit_safely(self.telemetry or get_global_sink(), event, payload)

    async def _save(self, key: str, plan: ExecutionPlan) -> None:
        try:
            await self.store.save(key, plan)
        except Exception as e:
            logger.warning(f"Failed to persist plan {plan.id} for thread {key}: {e}")
