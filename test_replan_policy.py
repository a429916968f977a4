"""
Replan policy: failure window, plan TTL, budgets and failure classification.
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from plancore.planner_exec.actions import ActionResult, ExecutionContext, HistoryEntry
from plancore.planner_exec.plan_step import (
    ExecutionPlan,
    PlanMetadata,
    PlanStatus,
    PlanStep,
    ReplanCause,
)
from plancore.planner_exec.policy import (
    MissingInputPolicy,
    ReplanBudget,
    ReplanPolicyConfig,
    ToolUnavailablePolicy,
    can_replan,
    classify_failure,
    should_replan,
    should_replan_on_failure,
    wall_clock_exhausted,
)

NOW = 1_000_000.0


def _plan(start=NOW, replans=0, offset=0, status=PlanStatus.EXECUTING):
    return ExecutionPlan(
        id="p1",
        goal="g",
        steps=[PlanStep(id="s1", tool="search")],
        status=status,
        metadata=PlanMetadata(start_time=start, replans_count=replans, history_offset=offset),
    )


def _history(*kinds):
    entries = []
    for kind in kinds:
        result = ActionResult.failure("boom") if kind == "error" else ActionResult.tool_result({"ok": True})
        entries.append(HistoryEntry(result=result))
    return entries


# ---- config ---------------------------------------------------------------------

def test_defaults():
    policy = ReplanPolicyConfig()
    assert policy.window_size == 3
    assert policy.min_failures == 2
    assert policy.plan_ttl_ms == 300_000
    assert policy.max_replans_per_plan == 5
    assert policy.allow_replan_until_iteration == 3
    assert policy.missing_input == MissingInputPolicy.ASK_USER
    assert policy.tool_unavailable == ToolUnavailablePolicy.REPLAN


def test_from_dict_accepts_camel_case():
    policy = ReplanPolicyConfig.from_dict({
        "windowSize": 5,
        "maxReplansPerPlan": 1,
        "missingInput": "replan",
        "budget": {"maxToolCalls": 10},
        "unknownKey": True,
    })
    assert policy.window_size == 5
    assert policy.max_replans_per_plan == 1
    assert policy.missing_input == MissingInputPolicy.REPLAN
    assert policy.budget == ReplanBudget(max_tool_calls=10)


def test_rejects_negative_replan_cap():
    with pytest.raises(ValueError):
        ReplanPolicyConfig(max_replans_per_plan=-1)
    with pytest.raises(ValueError):
        ReplanPolicyConfig(missing_input="shrug")


# ---- should_replan ----------------------------------------------------------------

def test_failure_window_triggers():
    plan = _plan()
    assert should_replan(plan, _history("ok", "error", "error"), ReplanPolicyConfig(), now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.FAIL_WINDOW


def test_old_failures_outside_window_do_not_trigger():
    plan = _plan()
    assert not should_replan(plan, _history("error", "ok", "ok"), ReplanPolicyConfig(), now=NOW)
    assert plan.metadata.replan_cause is None


def test_window_ignores_history_before_plan_creation():
    plan = _plan(offset=2)
    history = _history("error", "error", "ok")
    assert not should_replan(plan, history, ReplanPolicyConfig(), now=NOW)


def test_ttl_triggers():
    plan = _plan(start=NOW - 301)
    assert should_replan(plan, [], ReplanPolicyConfig(), now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.TTL

    fresh = _plan(start=NOW - 10)
    assert not should_replan(fresh, [], ReplanPolicyConfig(), now=NOW)


def test_disabled_rules():
    policy = ReplanPolicyConfig(window_size=None, plan_ttl_ms=None)
    plan = _plan(start=NOW - 10_000)
    assert not should_replan(plan, _history("error", "error", "error"), policy, now=NOW)


def test_wall_clock_budget():
    policy = ReplanPolicyConfig(budget=ReplanBudget(max_ms=5_000))
    plan = _plan()
    assert should_replan(plan, [], policy, now=NOW, execution_start=NOW - 6)
    assert plan.metadata.replan_cause == ReplanCause.BUDGET


def test_tool_call_budget():
    policy = ReplanPolicyConfig(budget={"max_tool_calls": 2})
    plan = _plan()
    assert not should_replan(plan, _history("ok"), policy, now=NOW)
    assert should_replan(plan, _history("ok", "ok"), policy, now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.BUDGET


def test_tool_call_budget_ignores_calls_before_the_plan():
    policy = ReplanPolicyConfig(budget={"max_tool_calls": 1})
    plan = _plan(offset=2)
    assert not should_replan(plan, _history("ok", "ok"), policy, now=NOW)
    assert should_replan(plan, _history("ok", "ok", "ok"), policy, now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.BUDGET


def test_wall_clock_exhausted_and_replan_cap():
    policy = ReplanPolicyConfig(budget=ReplanBudget(max_ms=5_000), max_replans_per_plan=1)
    assert wall_clock_exhausted(policy, NOW, NOW - 6)
    assert not wall_clock_exhausted(policy, NOW, NOW - 4)
    assert not wall_clock_exhausted(ReplanPolicyConfig(), NOW, NOW - 1_000)
    assert can_replan(None, policy)
    assert can_replan(_plan(replans=0), policy)
    assert not can_replan(_plan(replans=1), policy)


def test_replanning_status_wins():
    plan = _plan(status=PlanStatus.REPLANNING)
    plan.metadata.replan_cause = ReplanCause.TOOL_MISSING
    assert should_replan(plan, [], ReplanPolicyConfig(), now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.TOOL_MISSING


def test_window_precedes_ttl():
    plan = _plan(start=NOW - 1_000)
    assert should_replan(plan, _history("error", "error"), ReplanPolicyConfig(), now=NOW)
    assert plan.metadata.replan_cause == ReplanCause.FAIL_WINDOW


# ---- failure classification ----------------------------------------------------------

def test_tool_missing_follows_policy():
    verdict = classify_failure("Tool not found: crm_lookup", 1, ReplanPolicyConfig())
    assert verdict.replan and verdict.cause == ReplanCause.TOOL_MISSING

    verdict = classify_failure("unknown tool crm", 1, ReplanPolicyConfig(tool_unavailable="fail"))
    assert not verdict.replan


def test_unrecoverable_errors_are_definitive():
    for message in ("Permission denied", "resource not found", "Invalid credentials", "401 Unauthorized"):
        verdict = classify_failure(message, 0, ReplanPolicyConfig())
        assert verdict.definitive and not verdict.replan


def test_opportunistic_replan_only_early():
    assert classify_failure("connection reset", 2, ReplanPolicyConfig()).replan
    assert not classify_failure("connection reset", 3, ReplanPolicyConfig()).replan


def test_retries_exhausted():
    step = PlanStep(id="s1", tool="search", retry_count=2)
    verdict = classify_failure("connection reset", 0, ReplanPolicyConfig(), step)
    assert verdict.exhausted and not verdict.replan


def test_should_replan_on_failure_records_outcome():
    context = ExecutionContext(input="g", iterations=1)

    plan = _plan()
    assert should_replan_on_failure("timeout talking to api", context, ReplanPolicyConfig(), plan)
    assert plan.metadata.replan_cause == ReplanCause.FAIL_WINDOW

    plan = _plan()
    assert not should_replan_on_failure("permission denied", context, ReplanPolicyConfig(), plan)
    assert plan.metadata.failure_reason == "permission denied"


def test_should_replan_on_failure_respects_cap():
    context = ExecutionContext(input="g", iterations=0)
    plan = _plan(replans=2)
    policy = ReplanPolicyConfig(max_replans_per_plan=2)
    assert not should_replan_on_failure("connection reset", context, policy, plan)
    assert plan.metadata.replan_cause == ReplanCause.MAX_REPLANS_EXCEEDED
    assert "Replan limit reached" in plan.metadata.failure_reason
