"""
Planner configuration.

Credentials are not part of this config: providers read their own
environment variables (e.g. OPENAI_API_KEY).
"""
from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional
import json
import os

from .planner_exec.policy import ReplanPolicyConfig, snake_key
from .planner_exec.parallel import MAX_CONCURRENCY_CEILING, DEFAULT_LOOKAHEAD

ENV_PREFIX = "PLANCORE_"


def _default_llm() -> Dict[str, Any]:
    return {"provider": "openai", "model": "gpt-4o"}


@dataclass(frozen=True)
class PlannerConfig:
    """
    Attributes:
        strategy: Strategy tag stamped on every plan
        max_concurrency: Concurrency width for batches and fan-outs (ceiling 5)
        lookahead: Steps ahead of the cursor considered for batching
        extraction_timeout_s: Timeout for one LLM value extraction
        extraction_cache_size: Cached extraction answers
        llm: Provider config for `create_llm_provider`
        policy: Replan policy
    """
    strategy: str = "plan-execute"
    max_concurrency: int = 3
    lookahead: int = DEFAULT_LOOKAHEAD
    extraction_timeout_s: float = 15.0
    extraction_cache_size: int = 256
    llm: Dict[str, Any] = field(default_factory=_default_llm)
    policy: ReplanPolicyConfig = field(default_factory=ReplanPolicyConfig)

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.max_concurrency > MAX_CONCURRENCY_CEILING:
            object.__setattr__(self, "max_concurrency", MAX_CONCURRENCY_CEILING)
        if self.lookahead < 1:
            raise ValueError(f"lookahead must be >= 1, got {self.lookahead}")
        if self.extraction_timeout_s <= 0:
            raise ValueError(f"extraction_timeout_s must be > 0, got {self.extraction_timeout_s}")
        if isinstance(self.policy, dict):
            object.__setattr__(self, "policy", ReplanPolicyConfig.from_dict(self.policy))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> PlannerConfig:
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = snake_key(key)
            if name not in known:
                continue
            if name == "policy" and not isinstance(value, ReplanPolicyConfig):
                value = ReplanPolicyConfig.from_dict(value)
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> PlannerConfig:
        """
        Read PLANCORE_* variables:

            PLANCORE_STRATEGY, PLANCORE_MAX_CONCURRENCY, PLANCORE_LOOKAHEAD,
            PLANCORE_EXTRACTION_TIMEOUT_S, PLANCORE_EXTRACTION_CACHE_SIZE,
            PLANCORE_LLM_PROVIDER, PLANCORE_LLM_MODEL,
            PLANCORE_POLICY (JSON object of policy fields)
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        if _get("STRATEGY"):
            data["strategy"] = _get("STRATEGY")
        if _get("MAX_CONCURRENCY"):
            data["max_concurrency"] = int(_get("MAX_CONCURRENCY"))
        if _get("LOOKAHEAD"):
            data["lookahead"] = int(_get("LOOKAHEAD"))
        if _get("EXTRACTION_TIMEOUT_S"):
            data["extraction_timeout_s"] = float(_get("EXTRACTION_TIMEOUT_S"))
        if _get("EXTRACTION_CACHE_SIZE"):
            data["extraction_cache_size"] = int(_get("EXTRACTION_CACHE_SIZE"))

        llm = _default_llm()
        if _get("LLM_PROVIDER"):
            llm["provider"] = _get("LLM_PROVIDER")
        if _get("LLM_MODEL"):
            llm["model"] = _get("LLM_MODEL")
        data["llm"] = llm

        if _get("POLICY"):
            data["policy"] = json.loads(_get("POLICY"))
        return cls.from_dict(data)
