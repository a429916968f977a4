"""
ArgumentResolver: substitutes references to earlier step results into a
step's arguments right before it is dispatched.

For every string in the argument tree, in order:

1. sentinel tokens (NOT_FOUND, MISSING:<name>, NEEDS-INPUT:<name>, ...) are
   left as they are and reported missing, except a NEEDS-INPUT:<name> the
   caller has since supplied in its user context
2. `CONTEXT.<root>.<path>` is looked up in the caller's context
3. `{{<step>.result<path>}}` references are evaluated against the referenced
   step's result and spliced into the string

Misses never raise: the caller gets the partially resolved arguments plus
the list of identifiers that are still missing.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import asyncio
import json
import logging
import re

from ..planner_exec.plan_step import PlanStep, StepStatus, step_by_alias
from .extractor import ValueExtractor, NullValueExtractor
from .path_search import evaluate_path, is_empty_result, unwrap_envelope

logger = logging.getLogger(__name__)

TEMPLATE_RE = re.compile(r"\{\{([^.}]+)\.result([\w\[\]\.]*)\}\}")
_SENTINEL_RE = re.compile(r"^(NOT_FOUND|MISSING|INVALID|ERROR|NULL|UNDEFINED)(?::(.*))?$")
_NEEDS_INPUT_RE = re.compile(r"^NEEDS-INPUT(?::(.*))?$")
_NO_DISCOVERY_RE = re.compile(r"^NO-DISCOVERY-PATH(?::(.*))?$")
_CONTEXT_RE = re.compile(r"^CONTEXT\.(.+)$")
_CONTEXT_SEGMENT_RE = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


@dataclass(frozen=True)
class TemplateRef:
    """One `{{<step>.result<path>}}` occurrence."""
    raw: str
    step_ref: str
    path: str

    @property
    def is_whole_result(self) -> bool:
        return self.path == ""


def find_template_references(value: Any) -> List[TemplateRef]:
    """All template references inside a (nested) argument value, in order."""
    refs: List[TemplateRef] = []
    if isinstance(value, str):
        for match in TEMPLATE_RE.finditer(value):
            refs.append(TemplateRef(match.group(0), match.group(1).strip(), match.group(2)))
    elif isinstance(value, dict):
        for child in value.values():
            refs.extend(find_template_references(child))
    elif isinstance(value, (list, tuple)):
        for child in value:
            refs.extend(find_template_references(child))
    return refs


@dataclass
class ResolutionResult:
    arguments: Dict[str, Any]
    missing: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _child_path(parent: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{parent}[{key}]"
    return f"{parent}.{key}" if parent else str(key)


def lookup_context_path(context: Any, path: str) -> Any:
    """
    Resolve `userContext.x.y`, `plannerMetadata.x` or `agentIdentity.x`
    against an ExecutionContext-like object; None when unresolvable.
    """
    if context is None:
        return None
    segments = [int(i) if i else n for i, n in _CONTEXT_SEGMENT_RE.findall(path)]
    if not segments:
        return None
    roots = {
        "userContext": getattr(context, "user_context", None),
        "plannerMetadata": getattr(context, "planner_metadata", None),
        "agentIdentity": getattr(context, "agent_identity", None),
    }
    root = segments.pop(0)
    current = roots.get(root) if isinstance(root, str) else None
    for seg in segments:
        if isinstance(seg, int) and isinstance(current, list) and 0 <= seg < len(current):
            current = current[seg]
        elif isinstance(seg, str) and isinstance(current, dict) and seg in current:
            current = current[seg]
        else:
            return None
    return current


def supplied_input(context: Any, name: str) -> Any:
    """A named input from the caller's user context, by key or CONTEXT-style path."""
    if context is None:
        return None
    user_context = getattr(context, "user_context", None) or {}
    value = user_context.get(name)
    if value is not None:
        return value
    return lookup_context_path(context, name)


class ArgumentResolver:
    """
    Resolves template references, context tokens and sentinels in step arguments.

    Args:
        extractor: Last-resort value extractor used when no structural path
            strategy matches (defaults to one that never finds anything)
    """

    def __init__(self, extractor: Optional[ValueExtractor] = None):
        self.extractor = extractor or NullValueExtractor()

    async def resolve(
        self,
        arguments: Dict[str, Any],
        steps: Sequence[PlanStep],
        context: Any = None,
        skip: Iterable[str] = (),
    ) -> ResolutionResult:
        """
        Resolve every value in `arguments`.

        `skip` holds raw template strings to leave untouched without counting
        them as missing (used by fan-out, which substitutes those itself).
        """
        skip_set = frozenset(skip)
        resolved, missing = await self._resolve_value(arguments or {}, "", list(steps), context, skip_set)
        missing = _dedupe(missing)
        if missing:
            logger.warning(f"Unresolved inputs after resolution: {missing}")
        return ResolutionResult(arguments=resolved, missing=missing)

    async def _resolve_value(
        self,
        value: Any,
        key_path: str,
        steps: List[PlanStep],
        context: Any,
        skip: frozenset,
    ) -> Tuple[Any, List[str]]:
        if isinstance(value, str):
            return await self._resolve_string(value, key_path, steps, context, skip)

        if isinstance(value, dict):
            keys = list(value.keys())
            outcomes = await asyncio.gather(*(
                self._resolve_value(value[k], _child_path(key_path, k), steps, context, skip)
                for k in keys
            ))
            missing: List[str] = []
            for _, m in outcomes:
                missing.extend(m)
            return {k: v for k, (v, _) in zip(keys, outcomes)}, missing

        if isinstance(value, (list, tuple)):
            outcomes = await asyncio.gather(*(
                self._resolve_value(item, _child_path(key_path, i), steps, context, skip)
                for i, item in enumerate(value)
            ))
            missing = []
            for _, m in outcomes:
                missing.extend(m)
            return [v for v, _ in outcomes], missing

        return value, []

    async def _resolve_string(
        self,
        text: str,
        key_path: str,
        steps: List[PlanStep],
        context: Any,
        skip: frozenset,
    ) -> Tuple[Any, List[str]]:
        stripped = text.strip()
        fallback_name = key_path or "input"

        sentinel = _SENTINEL_RE.match(stripped)
        if sentinel:
            name = (sentinel.group(2) or "").strip() or fallback_name
            logger.warning(f"Sentinel value {stripped!r} marks {name!r} as missing")
            return text, [name]

        needs = _NEEDS_INPUT_RE.match(stripped)
        if needs:
            name = (needs.group(1) or "").strip()
            supplied = supplied_input(context, name) if name else None
            if supplied is not None:
                logger.debug(f"Input {name!r} was supplied by the caller")
                return supplied, []
            return text, [name or fallback_name]

        no_path = _NO_DISCOVERY_RE.match(stripped)
        if no_path:
            return text, [(no_path.group(1) or "").strip() or fallback_name]

        ctx = _CONTEXT_RE.match(stripped)
        if ctx:
            value = lookup_context_path(context, ctx.group(1))
            if value is None:
                logger.warning(f"Context path {stripped!r} is not available")
                return text, [stripped]
            return value, []

        refs = find_template_references(text)
        if not refs:
            return text, []

        unique: Dict[str, TemplateRef] = {}
        for ref in refs:
            if ref.raw not in skip:
                unique.setdefault(ref.raw, ref)
        if not unique:
            return text, []

        replacements = await asyncio.gather(*(
            self._resolve_reference(ref, steps) for ref in unique.values()
        ))

        resolved = text
        missing: List[str] = []
        for ref, (replacement, is_missing) in zip(unique.values(), replacements):
            if replacement is not None:
                resolved = resolved.replace(ref.raw, replacement)
            elif is_missing:
                missing.append(ref.raw)
        return resolved, missing

    async def _resolve_reference(self, ref: TemplateRef, steps: List[PlanStep]) -> Tuple[Optional[str], bool]:
        """
        Returns (replacement text, is_missing). A None replacement with
        is_missing False means the reference is skipped silently.
        """
        step = next((s for s in steps if s.id == ref.step_ref), None)
        if step is None:
            step = step_by_alias(steps, ref.step_ref)
            if step is None and ref.step_ref.startswith("step-") and ref.step_ref[5:].isdigit():
                logger.debug(f"Positional reference {ref.raw} is out of range; leaving it")
                return None, False
        if step is None:
            logger.warning(f"Reference {ref.raw} names an unknown step")
            return None, True
        if step.status != StepStatus.COMPLETED:
            logger.warning(f"Reference {ref.raw} points at step {step.id!r} which is {step.status.value}")
            return None, True
        if is_empty_result(step.result):
            logger.warning(f"Reference {ref.raw} points at step {step.id!r} with an empty result")
            return None, True

        match = evaluate_path(step.result, ref.path)
        if match is not None:
            logger.debug(f"Resolved {ref.raw} via {match.strategy}")
            return _as_text(match.value), False

        logger.warning(f"Structural search failed for {ref.raw}; asking extractor")
        extracted = await self.extractor.extract(ref.raw, ref.path, unwrap_envelope(step.result))
        if extracted.ok:
            return extracted.value, False
        logger.warning(f"Extractor could not resolve {ref.raw}: {extracted.error}")
        return None, True


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
