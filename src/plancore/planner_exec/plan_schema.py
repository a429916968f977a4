from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import json
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .plan_step import PlanStep, PlanSignals, StepKind, NO_TOOL

# ---- Authoring aliases accepted from the plan-generating LLM ----
_ARGUMENT_KEYS = ("arguments", "args", "parameters", "argsTemplate", "args_template")
_DESCRIPTION_KEYS = ("description", "content", "text")
_DEPENDENCY_KEYS = ("dependencies", "dependsOn", "depends_on")
_PARALLEL_KEYS = ("explicit_parallel", "parallel", "explicitParallel")
_KIND_KEYS = ("kind", "type")


def _first_present(data: dict, keys: Tuple[str, ...]):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


class PlannerStepModel(BaseModel):
    """
    One loosely typed step as returned by the planner LLM.
    Aliases are folded into canonical fields BEFORE validation; the id is
    optional here and defaulted positionally by `to_step`.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    description: str = ""
    kind: Optional[StepKind] = None
    tool: Optional[str] = None
    arguments: Dict[str, Any] = {}
    dependencies: List[str] = []
    explicit_parallel: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data):
        if isinstance(data, str):
            return {"description": data}
        if not isinstance(data, dict):
            return {"description": str(data)}
        return {
            "id": data.get("id"),
            "description": _first_present(data, _DESCRIPTION_KEYS) or "",
            "kind": _first_present(data, _KIND_KEYS),
            "tool": data.get("tool") or data.get("tool_name") or data.get("toolName"),
            "arguments": _first_present(data, _ARGUMENT_KEYS),
            "dependencies": _first_present(data, _DEPENDENCY_KEYS),
            "explicit_parallel": _first_present(data, _PARALLEL_KEYS),
        }

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("description", mode="before")
    @classmethod
    def _stringify_description(cls, v):
        return "" if v is None else str(v)

    # Unknown kinds (e.g. "tool_call") are dropped and defaulted afterwards
    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v):
        if v is None:
            return None
        s = str(v).strip().lower()
        return s if s in {k.value for k in StepKind} else None

    @field_validator("tool", mode="before")
    @classmethod
    def _normalize_tool(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        if not s or s.lower() in {NO_TOOL, "null"}:
            return None
        return s

    # The structured-output envelope carries arguments as a JSON string
    @field_validator("arguments", mode="before")
    @classmethod
    def _parse_arguments(cls, v):
        if v is None:
            return {}
        if isinstance(v, str):
            text = v.strip()
            if not text:
                return {}
            try:
                parsed = json.loads(text)
            except ValueError:
                return {"input": v}
            return parsed if isinstance(parsed, dict) else {"input": parsed}
        if isinstance(v, dict):
            return v
        return {"input": v}

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, v):
        if v is None:
            return []
        if isinstance(v, (str, int)):
            v = [v]
        return [str(d).strip() for d in v if d is not None and str(d).strip()]

    @field_validator("explicit_parallel", mode="before")
    @classmethod
    def _coerce_parallel(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in {"true", "yes", "1"}
        return bool(v)

    @model_validator(mode="after")
    def _default_kind(self):
        if self.kind is None:
            self.kind = StepKind.ACTION if self.tool else StepKind.DECISION
        return self

    def to_step(self, position: int) -> PlanStep:
        """Build a PlanStep; `position` is 1-based and used for the default id."""
        return PlanStep(
            id=self.id or f"step-{position}",
            description=self.description,
            kind=self.kind,
            tool=self.tool,
            arguments=dict(self.arguments),
            dependencies=frozenset(self.dependencies),
            explicit_parallel=self.explicit_parallel,
        )


class PlannerResponse(BaseModel):
    """Normalized planner output: steps, reasoning and optional signals."""
    model_config = ConfigDict(extra="ignore")

    steps: List[PlannerStepModel] = []
    reasoning: str = ""
    signals: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_payload_shapes(cls, data):
        return _fold_payload(data)

    def to_steps(self) -> List[PlanStep]:
        return [model.to_step(i + 1) for i, model in enumerate(self.steps)]


def _fold_payload(data) -> dict:
    if data is None:
        return {}
    if isinstance(data, str):
        text = data.strip()
        if text.startswith(("{", "[")):
            try:
                return _fold_payload(json.loads(text))
            except ValueError:
                pass
        return {"steps": [{"description": data}] if text else []}
    if isinstance(data, list):
        return {"steps": data}
    if not isinstance(data, dict):
        return {"steps": [{"description": str(data)}]}

    steps = data.get("steps")
    if steps is None:
        plan = data.get("plan")
        if isinstance(plan, dict):
            steps = plan.get("steps")
        elif isinstance(plan, list):
            steps = plan
        elif isinstance(plan, str):
            steps = [{"description": plan}]
    reasoning = data.get("reasoning") or data.get("thought") or ""
    signals = data.get("signals")
    return {
        "steps": steps if isinstance(steps, list) else [],
        "reasoning": str(reasoning),
        "signals": signals if isinstance(signals, dict) else None,
    }


def normalize_plan_payload(raw: Any) -> Tuple[List[PlanStep], str, Optional[PlanSignals]]:
    """
    Turn whatever the planner collaborator returned into PlanSteps.

    Accepts `{steps: [...]}`, `{plan: [...]}`, a bare list of steps, or a bare
    string (which becomes a single conversational step).
    """
    response = PlannerResponse.model_validate(raw)
    signals = PlanSignals.from_raw(response.signals) if response.signals else None
    return response.to_steps(), response.reasoning, signals
