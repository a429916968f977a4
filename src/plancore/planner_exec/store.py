"""
Plan ownership: one plan per execution thread key.

The planner never keeps plans in module state; it is handed a PlanStore.
Callers serialize think/analyze calls per key.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Protocol

from .plan_step import ExecutionPlan


DEFAULT_THREAD_KEY = "default-thread"


def thread_key(context: Any) -> str:
    """Thread id, else correlation id, else a shared default key."""
    for attr in ("thread_id", "correlation_id"):
        value = getattr(context, attr, None)
        if value:
            return str(value)
    return DEFAULT_THREAD_KEY


class PlanStore(Protocol):
    async def get(self, key: str) -> Optional[ExecutionPlan]: ...
    async def save(self, key: str, plan: ExecutionPlan) -> None: ...
    async def delete(self, key: str) -> None: ...


class InMemoryPlanStore:
    """
    Process-local store. Plans are kept by reference so the planner mutates
    the stored object directly.
    """

    def __init__(self):
        self._plans: Dict[str, ExecutionPlan] = {}

    async def get(self, key: str) -> Optional[ExecutionPlan]:
        return self._plans.get(key)

    async def save(self, key: str, plan: ExecutionPlan) -> None:
        plan.metadata.thread = key
        self._plans[key] = plan

    async def delete(self, key: str) -> None:
        self._plans.pop(key, None)

    def __len__(self) -> int:
        return len(self._plans)
