"""
plancore: plan-and-execute planning for tool-using agents.
"""
# planner_exec first: resolution depends on its data model
from .planner_exec import (
    PlanAndExecutePlanner,
    ToolExecutor,
    ExecutionContext,
    ExecutionPlan,
    PlanStep,
    ReplanPolicyConfig,
    ToolSpec,
    tool_spec,
    run_plan,
    run_plan_sync,
)
from .config import PlannerConfig
from .llms import create_llm_provider

__version__ = "0.1.0"

__all__ = [
    "PlanAndExecutePlanner",
    "ToolExecutor",
    "ExecutionContext",
    "ExecutionPlan",
    "PlanStep",
    "ReplanPolicyConfig",
    "ToolSpec",
    "tool_spec",
    "run_plan",
    "run_plan_sync",
    "PlannerConfig",
    "create_llm_provider",
]
