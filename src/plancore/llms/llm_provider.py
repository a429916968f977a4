# src/plancore/llms/llm_provider.py
from __future__ import annotations
from typing import Protocol, Any, Dict, List


class ProviderError(Exception):
    """Raised for provider misconfiguration or payloads the planner cannot use."""
    pass


class LLMProvider(Protocol):
    """
    What the planning engine needs from a language model.
    Implementations may be sync or async; the engine awaits coroutines and
    runs plain callables on the shared I/O pool.
    """

    def get_config(self) -> Dict[str, Any]: ...

    # ---- Plan generation ---------------------------------------------------------
    def create_plan(self, goal: str, strategy: str, prompts: Dict[str, Any]) -> Dict[str, Any]: ...
    # Returns a loose payload: {"steps": [...], "reasoning": str, "signals": {...}?}
    # prompts carries system_prompt, user_prompt and available_tools.

    # ---- Free-text call (used by value extraction) -------------------------------
    def call(self, messages: List[Dict[str, str]]) -> str: ...
