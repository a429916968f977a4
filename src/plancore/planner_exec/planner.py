"""
PlanValidator: one validation pass over a freshly generated step graph.

The validator:
1. Rejects duplicate step ids
2. Checks every template reference and explicit dependency names a real step
3. Detects cycles over explicit and template-implied edges (first cycle only)
4. Lints arguments for placeholder text (warnings only)

Problems are returned as a ValidationReport, never raised. A failed report
is turned into a single diagnostic step so a broken graph is never executed.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set
import heapq
import json
import logging
import re

from .plan_step import PlanStep, StepKind, step_by_alias
from ..resolution.resolver import TEMPLATE_RE, find_template_references

logger = logging.getLogger(__name__)


class IssueKind(str, Enum):
    DUPLICATE_ID = "duplicate-id"
    MISSING_REFERENCE = "missing-reference"
    MISSING_DEPENDENCY = "missing-dependency"
    CYCLE = "cycle"
    PLACEHOLDER = "placeholder"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class PlanIssue:
    kind: IssueKind
    message: str
    step_id: Optional[str] = None
    severity: Severity = Severity.ERROR


@dataclass
class ValidationReport:
    issues: List[PlanIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[PlanIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[PlanIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def messages(self) -> List[str]:
        return [i.message for i in self.errors]


# Placeholder text an LLM sometimes writes instead of a real value or reference
_PLACEHOLDER_RE = re.compile(
    r"^\s*(<[^<>]+>|\[[A-Z_ ]+\]|TBD|TODO|\.\.\.|PLACEHOLDER|YOUR[_ ][A-Z_]+|"
    r"example\.com|xxx+)\s*$",
    re.IGNORECASE,
)


class PlanValidator:
    """Validates, diagnoses and orders planner-generated steps."""

    def validate(self, steps: List[PlanStep]) -> ValidationReport:
        report = ValidationReport()
        if not steps:
            return report

        self._check_unique_ids(steps, report)
        self._check_references(steps, report)
        self._check_cycles(steps, report)
        self._lint_placeholders(steps, report)

        if report.is_valid:
            logger.debug(f"Validated {len(steps)} steps ({len(report.warnings)} warnings)")
        else:
            logger.warning(f"Plan validation failed: {report.messages()}")
        return report

    def _check_unique_ids(self, steps: List[PlanStep], report: ValidationReport) -> None:
        seen: Set[str] = set()
        for step in steps:
            if step.id in seen:
                report.issues.append(PlanIssue(
                    IssueKind.DUPLICATE_ID, f"Duplicate step id {step.id!r}", step.id
                ))
            seen.add(step.id)

    def _check_references(self, steps: List[PlanStep], report: ValidationReport) -> None:
        ids = {s.id for s in steps}
        for step in steps:
            for ref in find_template_references(step.arguments):
                if self._lookup(steps, ref.step_ref) is None:
                    report.issues.append(PlanIssue(
                        IssueKind.MISSING_REFERENCE,
                        f"Step {step.id!r} references non-existent step {ref.step_ref!r} ({ref.raw})",
                        step.id,
                    ))
            for dep in sorted(step.dependencies):
                if dep not in ids:
                    report.issues.append(PlanIssue(
                        IssueKind.MISSING_DEPENDENCY,
                        f"Step {step.id!r} depends on non-existent step {dep!r}",
                        step.id,
                    ))

    def _check_cycles(self, steps: List[PlanStep], report: ValidationReport) -> None:
        """DFS with a recursion stack; stops at the first back-edge."""
        edges = self.edges(steps)
        visited: Set[str] = set()
        on_stack: List[str] = []

        def _visit(node: str) -> Optional[List[str]]:
            if node in on_stack:
                return on_stack[on_stack.index(node):] + [node]
            if node in visited:
                return None
            visited.add(node)
            on_stack.append(node)
            for target in edges.get(node, ()):
                cycle = _visit(target)
                if cycle:
                    return cycle
            on_stack.pop()
            return None

        for step in steps:
            cycle = _visit(step.id)
            if cycle:
                report.issues.append(PlanIssue(
                    IssueKind.CYCLE,
                    f"Circular dependency detected: {' -> '.join(cycle)}",
                    cycle[0],
                ))
                return

    def _lint_placeholders(self, steps: List[PlanStep], report: ValidationReport) -> None:
        for step in steps:
            for key, value in _iter_strings(step.arguments, ""):
                if _PLACEHOLDER_RE.match(value):
                    report.issues.append(PlanIssue(
                        IssueKind.PLACEHOLDER,
                        f"Step {step.id!r} argument {key!r} looks like placeholder text: {value!r}",
                        step.id,
                        Severity.WARNING,
                    ))

    @staticmethod
    def _lookup(steps: List[PlanStep], identifier: str) -> Optional[PlanStep]:
        for step in steps:
            if step.id == identifier:
                return step
        return step_by_alias(steps, identifier)

    def edges(self, steps: List[PlanStep]) -> Dict[str, List[str]]:
        """step id -> ids it depends on (explicit plus template-implied)."""
        out: Dict[str, List[str]] = {}
        for step in steps:
            targets = list(sorted(step.dependencies))
            for ref in find_template_references(step.arguments):
                target = self._lookup(steps, ref.step_ref)
                if target is not None and target.id not in targets:
                    targets.append(target.id)
            out[step.id] = targets
        return out

    def diagnostic_steps(self, report: ValidationReport) -> List[PlanStep]:
        """Single conversational step listing every problem found."""
        lines = "\n".join(f"- {message}" for message in report.messages())
        return [PlanStep(
            id="plan-validation",
            description=f"The generated plan could not be executed:\n{lines}",
            kind=StepKind.VERIFICATION,
            tool=None,
        )]

    def order_steps(self, steps: List[PlanStep]) -> List[PlanStep]:
        """
        Stable topological order: dependencies first, original position as
        the tie-breaker. Assumes the graph already validated acyclic; any
        leftover nodes keep their original order at the end.
        """
        index = {s.id: i for i, s in enumerate(steps)}
        edges = self.edges(steps)
        indegree = {s.id: 0 for s in steps}
        dependents: Dict[str, List[str]] = {s.id: [] for s in steps}
        for node, targets in edges.items():
            for target in targets:
                if target in indegree and target != node:
                    indegree[node] += 1
                    dependents[target].append(node)

        ready = [(index[n], n) for n, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        ordered: List[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            ordered.append(node)
            for dependent in dependents[node]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (index[dependent], dependent))

        leftovers = [s.id for s in steps if s.id not in set(ordered)]
        by_id = {s.id: s for s in steps}
        result = [by_id[n] for n in ordered + leftovers]
        if [s.id for s in result] != [s.id for s in steps]:
            # positional aliases must keep pointing at the step they meant
            for step in result:
                step.arguments = _pin_aliases(step.arguments, steps)
            logger.info(f"Reordered steps for dependencies: {[s.id for s in result]}")
        return result


def _pin_aliases(value, steps: List[PlanStep]):
    """Rewrite `{{step-N.result...}}` aliases to the literal id of the N-th step."""
    ids = {s.id for s in steps}

    def _swap(match):
        ref = match.group(1).strip()
        if ref in ids:
            return match.group(0)
        target = step_by_alias(steps, ref)
        if target is None:
            return match.group(0)
        return "{{" + target.id + ".result" + match.group(2) + "}}"

    if isinstance(value, str):
        return TEMPLATE_RE.sub(_swap, value)
    if isinstance(value, dict):
        return {k: _pin_aliases(v, steps) for k, v in value.items()}
    if isinstance(value, list):
        return [_pin_aliases(v, steps) for v in value]
    return value


def _iter_strings(value, path: str):
    if isinstance(value, str):
        yield path or "input", value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from _iter_strings(v, f"{path}.{k}" if path else str(k))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            yield from _iter_strings(v, f"{path}[{i}]")


def describe_steps(steps: List[PlanStep]) -> str:
    """Compact JSON listing of steps for logs and prompts."""
    return json.dumps(
        [{"id": s.id, "tool": s.tool, "status": s.status.value} for s in steps],
        default=str,
    )
