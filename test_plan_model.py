"""
Plan data model, planner output normalization and plan validation.
"""
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from plancore.planner_exec.plan_step import (
    ExecutionPlan,
    InvalidTransition,
    PlanMetadata,
    PlanSignals,
    PlanStatus,
    PlanStep,
    ReplanCause,
    StepKind,
    StepStatus,
)
from plancore.planner_exec.plan_schema import normalize_plan_payload
from plancore.planner_exec.planner import IssueKind, PlanValidator


def _step(step_id, tool="search", arguments=None, dependencies=()):
    return PlanStep(id=step_id, description=f"do {step_id}", tool=tool,
                    arguments=arguments or {}, dependencies=frozenset(dependencies))


# ---- steps and plans ----------------------------------------------------------

def test_step_moves_forward_only():
    step = _step("s1")
    step.transition(StepStatus.EXECUTING)
    step.complete({"ok": True})
    assert step.status == StepStatus.COMPLETED
    assert step.finished_at is not None

    with pytest.raises(InvalidTransition):
        step.transition(StepStatus.PENDING)
    with pytest.raises(InvalidTransition):
        step.fail("late error")


def test_fail_and_skip_store_reason():
    failed = _step("s1")
    failed.fail("boom")
    assert failed.result == {"error": "boom"}

    skipped = _step("s2")
    skipped.skip("dependency s1 did not complete")
    assert skipped.status == StepStatus.SKIPPED
    assert skipped.is_finished


def test_has_tool_treats_none_literal_as_no_tool():
    assert _step("s1", tool="search").has_tool
    assert not _step("s2", tool="none").has_tool
    assert not _step("s3", tool=None).has_tool


def test_plan_status_transitions():
    plan = ExecutionPlan(id="p1", goal="g", steps=[_step("s1")])
    assert plan.transition(PlanStatus.EXECUTING)
    assert not plan.transition(PlanStatus.EXECUTING)
    plan.transition(PlanStatus.REPLANNING)

    # a replanning plan is replaced, never resumed
    with pytest.raises(InvalidTransition):
        plan.transition(PlanStatus.EXECUTING)
    plan.transition(PlanStatus.FAILED)
    with pytest.raises(InvalidTransition):
        plan.transition(PlanStatus.COMPLETED)


def test_find_step_by_alias_and_cursor():
    plan = ExecutionPlan(id="p1", goal="g", steps=[_step("a"), _step("b"), _step("c")])
    assert plan.find_step("b").id == "b"
    assert plan.find_step("step-3").id == "c"
    assert plan.find_step("step-9") is None

    plan.steps[0].complete(1)
    plan.steps[1].skip("n/a")
    assert plan.sync_cursor() == 2
    assert plan.current_step.id == "c"
    plan.steps[2].complete(3)
    assert plan.sync_cursor() == 3
    assert plan.current_step is None


def test_plan_round_trips_through_dict():
    plan = ExecutionPlan(
        id="p1",
        goal="find issues",
        steps=[_step("s1", arguments={"q": "x"}), _step("s2", dependencies=["s1"])],
        status=PlanStatus.EXECUTING,
        metadata=PlanMetadata(
            replans_count=2,
            replan_cause=ReplanCause.TTL,
            signals=PlanSignals(needs=["repo"]),
        ),
    )
    plan.steps[0].complete([{"id": "abc"}])

    restored = ExecutionPlan.from_dict(json.loads(json.dumps(plan.to_dict())))
    assert restored.status == PlanStatus.EXECUTING
    assert restored.replans_count == 2
    assert restored.metadata.replan_cause == ReplanCause.TTL
    assert restored.metadata.signals.needs == ["repo"]
    assert restored.steps[1].dependencies == frozenset({"s1"})
    assert restored.steps[0].result == [{"id": "abc"}]


# ---- planner output normalization ---------------------------------------------

def test_normalize_accepts_aliases_and_defaults_ids():
    steps, reasoning, signals = normalize_plan_payload({
        "thought": "two lookups",
        "plan": [
            {"content": "search", "tool_name": "search", "args": '{"q": "bugs"}'},
            {"text": "fetch", "toolName": "fetch", "parameters": {"id": "{{step-1.result[0].id}}"},
             "dependsOn": "step-1", "parallel": "true"},
            {"description": "answer", "tool": "none"},
        ],
        "signals": {"needs": ["repo", 3], "noDiscoveryPath": ["crm"]},
    })

    assert [s.id for s in steps] == ["step-1", "step-2", "step-3"]
    assert reasoning == "two lookups"
    assert steps[0].arguments == {"q": "bugs"}
    assert steps[0].kind == StepKind.ACTION
    assert steps[1].dependencies == frozenset({"step-1"})
    assert steps[1].explicit_parallel is True
    assert steps[2].tool is None
    assert steps[2].kind == StepKind.DECISION
    assert signals.needs == ["repo"]
    assert signals.no_discovery_path == ["crm"]


def test_normalize_plain_string_and_json_text():
    steps, _, signals = normalize_plan_payload("Just answer the question directly.")
    assert len(steps) == 1
    assert steps[0].description == "Just answer the question directly."
    assert not steps[0].has_tool
    assert signals is None

    steps, _, _ = normalize_plan_payload('[{"id": 1, "tool": "search", "arguments": "not json"}]')
    assert steps[0].id == "1"
    assert steps[0].arguments == {"input": "not json"}


def test_normalize_empty_payload():
    steps, reasoning, signals = normalize_plan_payload(None)
    assert steps == [] and reasoning == "" and signals is None


# ---- validation ------------------------------------------------------------------

def test_valid_plan_passes():
    report = PlanValidator().validate([
        _step("s1"),
        _step("s2", arguments={"id": "{{s1.result[0].id}}"}, dependencies=["s1"]),
    ])
    assert report.is_valid
    assert report.errors == []


def test_cycle_through_explicit_dependencies():
    report = PlanValidator().validate([
        _step("a", dependencies=["b"]),
        _step("b", dependencies=["a"]),
    ])
    assert not report.is_valid
    cycles = [i for i in report.errors if i.kind == IssueKind.CYCLE]
    assert len(cycles) == 1
    assert "Circular dependency detected" in cycles[0].message


def test_cycle_through_template_references():
    report = PlanValidator().validate([
        _step("a", arguments={"x": "{{b.result}}"}),
        _step("b", arguments={"y": "{{a.result.id}}"}),
    ])
    assert [i.kind for i in report.errors] == [IssueKind.CYCLE]


def test_dangling_references_and_duplicates():
    report = PlanValidator().validate([
        _step("s1", arguments={"id": "{{ghost.result.id}}"}, dependencies=["nope"]),
        _step("s1"),
    ])
    kinds = {i.kind for i in report.errors}
    assert kinds == {IssueKind.DUPLICATE_ID, IssueKind.MISSING_REFERENCE, IssueKind.MISSING_DEPENDENCY}


def test_placeholder_text_is_only_a_warning():
    report = PlanValidator().validate([_step("s1", arguments={"repo": "<your repo here>"})])
    assert report.is_valid
    assert all(i.kind == IssueKind.PLACEHOLDER for i in report.warnings)


def test_diagnostic_step_lists_every_problem():
    validator = PlanValidator()
    report = validator.validate([_step("a", dependencies=["b"]), _step("b", dependencies=["a"])])
    steps = validator.diagnostic_steps(report)
    assert len(steps) == 1
    assert steps[0].kind == StepKind.VERIFICATION
    assert not steps[0].has_tool
    assert "Circular dependency detected" in steps[0].description


def test_order_steps_puts_dependencies_first():
    validator = PlanValidator()
    steps = [
        _step("report", arguments={"data": "{{fetch.result}}"}),
        _step("search"),
        _step("fetch", arguments={"id": "{{search.result[0].id}}"}),
    ]
    ordered = validator.order_steps(steps)
    assert [s.id for s in ordered] == ["search", "fetch", "report"]


def test_order_steps_pins_positional_aliases():
    validator = PlanValidator()
    steps = [
        _step("b", arguments={"x": "{{step-2.result}}"}),
        _step("a"),
    ]
    ordered = validator.order_steps(steps)
    assert [s.id for s in ordered] == ["a", "b"]
    # step-2 meant "a" in the original order
    assert ordered[1].arguments == {"x": "{{a.result}}"}
