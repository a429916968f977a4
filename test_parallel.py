"""
Parallel batch detection and array fan-out.
"""
import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from plancore.planner_exec.actions import ExecutionContext
from plancore.planner_exec.parallel import (
    MAX_CONCURRENCY_CEILING,
    FanOutExpander,
    clamp_concurrency,
    detect_batch,
    select_batch,
    substitute_item,
)
from plancore.planner_exec.plan_step import ExecutionPlan, PlanStatus, PlanStep, StepStatus
from plancore.resolution.resolver import ArgumentResolver


def _plan(*steps):
    return ExecutionPlan(id="p1", goal="g", steps=list(steps), status=PlanStatus.EXECUTING)


def _step(step_id, tool="search", arguments=None, dependencies=(), parallel=False):
    return PlanStep(id=step_id, description=step_id, tool=tool, arguments=arguments or {},
                    dependencies=frozenset(dependencies), explicit_parallel=parallel)


def _context():
    return ExecutionContext(input="g", thread_id="t1")


# ---- batch selection ------------------------------------------------------------

def test_independent_steps_form_a_batch():
    plan = _plan(
        _step("a", arguments={"q": "x"}),
        _step("b", arguments={"q": "y"}),
        _step("c", arguments={"data": "{{a.result}}"}),
    )
    assert [s.id for s in select_batch(plan)] == ["a", "b"]


def test_dependent_steps_are_left_out():
    plan = _plan(
        _step("a"),
        _step("b", dependencies=["a"]),
        _step("c", arguments={"x": "see a.result for details"}),
    )
    assert select_batch(plan) == []


def test_cursor_step_must_qualify():
    plan = _plan(
        _step("think", tool=None),
        _step("a"),
        _step("b"),
    )
    assert select_batch(plan) == []


def test_lookahead_limits_window():
    plan = _plan(_step("a"), _step("b"), _step("c"))
    assert [s.id for s in select_batch(plan, lookahead=2)] == ["a", "b"]


def test_detect_batch_claims_steps():
    plan = _plan(_step("a", arguments={"q": "x"}), _step("b", arguments={"q": "y"}), _step("c"))
    batch = asyncio.run(detect_batch(plan, ArgumentResolver(), _context(), max_concurrency=2))

    assert [s.id for s in batch.steps] == ["a", "b", "c"]
    assert batch.action.concurrency == 2
    assert batch.action.fail_fast is False
    assert [t.step_id for t in batch.action.tools] == ["a", "b", "c"]
    assert all(s.status == StepStatus.EXECUTING for s in plan.steps)
    assert plan.metadata.pending_batch["kind"] == "batch"


def test_detect_batch_skips_unavailable_and_unresolved():
    plan = _plan(
        _step("a"),
        _step("b", tool="crm"),
        _step("c", arguments={"repo": "MISSING:repo"}),
        _step("d"),
    )
    batch = asyncio.run(detect_batch(plan, ArgumentResolver(), _context(), available_tools={"search"}))
    assert [s.id for s in batch.steps] == ["a", "d"]
    assert plan.get_step("b").status == StepStatus.PENDING
    assert plan.get_step("c").status == StepStatus.PENDING


def test_detect_batch_needs_two_ready_steps():
    plan = _plan(_step("a"), _step("b", tool="crm"))
    assert asyncio.run(detect_batch(plan, ArgumentResolver(), _context(), available_tools={"search"})) is None
    assert plan.steps[0].status == StepStatus.PENDING


def test_concurrency_is_clamped():
    assert clamp_concurrency(50) == MAX_CONCURRENCY_CEILING
    assert clamp_concurrency(0) == 1


# ---- fan-out -------------------------------------------------------------------------

def test_fan_out_over_array_result():
    source = _step("list", tool="list_repos")
    source.complete(["alpha", "beta", "gamma"])
    target = _step("details", tool="get_repo", arguments={"name": "{{list.result}}", "verbose": True})
    plan = _plan(source, target)
    plan.sync_cursor()

    expander = FanOutExpander(ArgumentResolver(), max_concurrency=2)
    fan_out = asyncio.run(expander.expand(target, plan, _context()))

    assert len(fan_out.action.tools) == 3
    assert fan_out.action.concurrency == 2
    assert [t.arguments for t in fan_out.action.tools] == [
        {"name": "alpha", "verbose": True},
        {"name": "beta", "verbose": True},
        {"name": "gamma", "verbose": True},
    ]
    assert target.status == StepStatus.EXECUTING
    assert plan.metadata.pending_batch == {
        "kind": "fan-out", "step_ids": ["details"], "start_index": 1, "count": 3,
    }


def test_fan_out_never_exceeds_ceiling():
    source = _step("list")
    source.complete([{"id": i} for i in range(12)])
    target = _step("each", arguments={"item": "{{list.result}}"})
    plan = _plan(source, target)
    fan_out = asyncio.run(FanOutExpander(ArgumentResolver(), max_concurrency=99).expand(target, plan, _context()))
    assert len(fan_out.action.tools) == 12
    assert fan_out.action.concurrency == MAX_CONCURRENCY_CEILING
    assert fan_out.action.tools[3].arguments == {"item": {"id": 3}}


def test_single_element_or_two_sources_do_not_fan_out():
    one = _step("one")
    one.complete(["only"])
    two = _step("two")
    two.complete(["x", "y"])
    three = _step("three")
    three.complete(["p", "q"])
    plan = _plan(one, two, three)
    expander = FanOutExpander(ArgumentResolver())

    assert expander.find_source(_step("t1", arguments={"v": "{{one.result}}"}), plan) is None
    assert expander.find_source(
        _step("t2", arguments={"a": "{{two.result}}", "b": "{{three.result}}"}), plan
    ) is None


def test_explicit_parallel_fans_out_over_sub_path():
    source = _step("search")
    source.complete({"items": [{"id": 1}, {"id": 2}]})
    target = _step("fetch", arguments={"item": "{{search.result.items}}"}, parallel=True)
    plan = _plan(source, target)

    ref, items = FanOutExpander(ArgumentResolver()).find_source(target, plan)
    assert ref.raw == "{{search.result.items}}"
    assert items == [{"id": 1}, {"id": 2}]

    implicit = _step("fetch2", arguments={"item": "{{search.result.items}}"})
    assert FanOutExpander(ArgumentResolver()).find_source(implicit, plan) is None


def test_fan_out_waits_for_other_inputs():
    source = _step("list")
    source.complete(["a", "b"])
    target = _step("each", arguments={"name": "{{list.result}}", "token": "MISSING:token"})
    plan = _plan(source, target)
    assert asyncio.run(FanOutExpander(ArgumentResolver()).expand(target, plan, _context())) is None
    assert target.status == StepStatus.PENDING


def test_substitute_item():
    assert substitute_item("{{s.result}}", "{{s.result}}", {"id": 1}) == {"id": 1}
    assert substitute_item("repo {{s.result}}", "{{s.result}}", "x") == "repo x"
    assert substitute_item("ids {{s.result}}", "{{s.result}}", [1, 2]) == "ids [1, 2]"
    assert substitute_item(["{{s.result}}", 3], "{{s.result}}", 7) == [7, 3]
