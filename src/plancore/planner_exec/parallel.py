"""
Parallel execution: batch detection across independent steps and array
fan-out of a single step.

Neither mechanism runs anything. Both describe a set of tool invocations
for the external executor and mark the involved steps `executing`; the
planner reconciles the aggregated outcome later.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Optional, Tuple
import json
import logging

from .plan_step import ExecutionPlan, PlanStep, StepStatus
from .actions import ParallelToolsAction, ToolInvocation
from ..resolution.resolver import ArgumentResolver, TemplateRef, find_template_references
from ..resolution.path_search import evaluate_path, parse_structured_strings, unwrap_envelope

logger = logging.getLogger(__name__)

MAX_CONCURRENCY_CEILING = 5
DEFAULT_LOOKAHEAD = 5


def clamp_concurrency(requested: int) -> int:
    return max(1, min(int(requested), MAX_CONCURRENCY_CEILING))


def dependencies_satisfied(step: PlanStep, plan: ExecutionPlan) -> bool:
    for dep_id in step.dependencies:
        dep = plan.get_step(dep_id)
        if dep is None or dep.status != StepStatus.COMPLETED:
            return False
    return True


def select_batch(plan: ExecutionPlan, lookahead: int = DEFAULT_LOOKAHEAD) -> List[PlanStep]:
    """
    Structural batch candidates in the look-ahead window starting at the cursor:
    pending, tool-backed, explicit dependencies completed, and not referencing
    another candidate's result. Empty unless the cursor step itself qualifies
    and at least two steps do.
    """
    start = plan.current_step_index
    window = plan.steps[start:start + max(lookahead, 0)]
    candidates = [
        step for step in window
        if step.status == StepStatus.PENDING
        and step.has_tool
        and dependencies_satisfied(step, plan)
    ]

    candidate_ids = {c.id for c in candidates}
    independent = []
    for step in candidates:
        referenced = set()
        for ref in find_template_references(step.arguments):
            target = plan.find_step(ref.step_ref)
            if target is not None:
                referenced.add(target.id)
        # lightweight textual check for "<id>.result" in case the template is malformed
        serialized = json.dumps(step.arguments, default=str)
        referenced.update(
            other for other in candidate_ids
            if other != step.id and f"{other}.result" in serialized
        )
        if referenced & (candidate_ids - {step.id}):
            continue
        independent.append(step)

    current = plan.current_step
    if current is None or current not in independent or len(independent) < 2:
        return []
    return independent


@dataclass
class Batch:
    """A set of steps dispatched together, one invocation each."""
    steps: List[PlanStep]
    action: ParallelToolsAction


async def detect_batch(
    plan: ExecutionPlan,
    resolver: ArgumentResolver,
    context: Any,
    lookahead: int = DEFAULT_LOOKAHEAD,
    max_concurrency: int = 3,
    available_tools: Optional[Collection[str]] = None,
    expander: Optional[FanOutExpander] = None,
) -> Optional[Batch]:
    """
    Select, resolve and claim a batch. Steps whose arguments do not fully
    resolve, whose tool is unavailable, or which would fan out are left to
    the sequential path. Returns None when fewer than two steps remain or the
    cursor step dropped out.
    """
    candidates = select_batch(plan, lookahead)
    if not candidates:
        return None

    cursor_step = plan.current_step
    ready: List[Tuple[PlanStep, Dict[str, Any]]] = []
    for step in candidates:
        if available_tools is not None and step.tool not in available_tools:
            continue
        if expander is not None and expander.find_source(step, plan) is not None:
            continue
        resolution = await resolver.resolve(step.arguments, plan.steps, context)
        if resolution.missing:
            continue
        ready.append((step, resolution.arguments))

    if len(ready) < 2 or ready[0][0] is not cursor_step:
        return None

    for step, _ in ready:
        step.transition(StepStatus.EXECUTING)

    concurrency = min(clamp_concurrency(max_concurrency), len(ready))
    action = ParallelToolsAction(
        tools=[ToolInvocation(tool_name=s.tool, arguments=args, step_id=s.id) for s, args in ready],
        concurrency=concurrency,
    )
    plan.metadata.pending_batch = {
        "kind": "batch",
        "step_ids": [s.id for s, _ in ready],
        "start_index": plan.current_step_index,
    }
    logger.info(
        f"Parallel batch of {len(ready)} steps {[s.id for s, _ in ready]} "
        f"(concurrency={concurrency})"
    )
    return Batch(steps=[s for s, _ in ready], action=action)


@dataclass
class FanOut:
    """One step expanded into an invocation per element of an upstream array."""
    step: PlanStep
    template: TemplateRef
    items: List[Any]
    action: ParallelToolsAction = field(repr=False)


def substitute_item(value: Any, template: str, item: Any) -> Any:
    """
    Replace `template` with `item`. An argument that is exactly the template
    receives the element itself; an embedded template receives its text form.
    """
    if isinstance(value, str):
        if value.strip() == template:
            return item
        if template in value:
            text = item if isinstance(item, str) else json.dumps(item, default=str)
            return value.replace(template, text)
        return value
    if isinstance(value, dict):
        return {k: substitute_item(v, template, item) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_item(v, template, item) for v in value]
    return value


class FanOutExpander:
    """
    Expands a step whose arguments hold exactly one whole-result reference
    (`{{X.result}}`) to a completed step whose result is an array with more
    than one element. Steps flagged `explicit_parallel` may also fan out over
    a sub-path reference that yields such an array.
    """

    def __init__(self, resolver: ArgumentResolver, max_concurrency: int = 3):
        self.resolver = resolver
        self.max_concurrency = clamp_concurrency(max_concurrency)

    def find_source(self, step: PlanStep, plan: ExecutionPlan) -> Optional[Tuple[TemplateRef, List[Any]]]:
        if not step.has_tool:
            return None
        refs: Dict[str, TemplateRef] = {}
        for ref in find_template_references(step.arguments):
            if ref.is_whole_result or step.explicit_parallel:
                refs.setdefault(ref.raw, ref)
        whole = [r for r in refs.values() if r.is_whole_result]
        if len(whole) > 1:
            return None

        sources = []
        for ref in refs.values():
            items = self._array_for(ref, plan)
            if items is not None:
                sources.append((ref, items))
        if len(sources) != 1:
            return None
        return sources[0]

    def _array_for(self, ref: TemplateRef, plan: ExecutionPlan) -> Optional[List[Any]]:
        source = plan.find_step(ref.step_ref)
        if source is None or source.status != StepStatus.COMPLETED:
            return None
        if ref.is_whole_result:
            value = parse_structured_strings(unwrap_envelope(source.result))
        else:
            match = evaluate_path(source.result, ref.path)
            value = match.value if match is not None else None
        if isinstance(value, list) and len(value) > 1:
            return value
        return None

    async def expand(self, step: PlanStep, plan: ExecutionPlan, context: Any) -> Optional[FanOut]:
        """
        Build the fan-out for `step`, or None when it does not qualify or its
        other arguments are unresolved. Marks the step executing on success.
        """
        source = self.find_source(step, plan)
        if source is None:
            return None
        template, items = source

        resolution = await self.resolver.resolve(step.arguments, plan.steps, context, skip={template.raw})
        if resolution.missing:
            logger.info(f"Fan-out of {step.id} blocked by missing inputs {resolution.missing}")
            return None

        invocations = [
            ToolInvocation(
                tool_name=step.tool,
                arguments=substitute_item(resolution.arguments, template.raw, item),
                step_id=step.id,
            )
            for item in items
        ]
        concurrency = min(self.max_concurrency, len(invocations))
        step.transition(StepStatus.EXECUTING)
        plan.metadata.pending_batch = {
            "kind": "fan-out",
            "step_ids": [step.id],
            "start_index": plan.current_step_index,
            "count": len(invocations),
        }
        logger.info(f"Fan-out of step {step.id} over {len(items)} items from {template.raw} (concurrency={concurrency})")
        return FanOut(
            step=step,
            template=template,
            items=list(items),
            action=ParallelToolsAction(tools=invocations, concurrency=concurrency),
        )
