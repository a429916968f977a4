"""
Layered path evaluation over step results.

`evaluate_path(result, ".items[0].id")` tries, in order:

    (a) unwrap tool envelopes and parse structured strings
    (b) direct path match, starting at the root or any nested object
    (c) smart field: the path's final field name anywhere in the tree
    (d) pattern discovery: arrays whose elements carry that field
    (e) first array anywhere, first element's id-like field
    (f) any field literally named "id"

and returns the first hit, or None when every structural strategy misses.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union
import json
import logging
import re

from .tree import Node, Array, Object, from_python, to_python, children

logger = logging.getLogger(__name__)

Segment = Union[str, int]

MAX_DIRECT_DEPTH = 10
MAX_FIELD_DEPTH = 10
MAX_PATTERN_DEPTH = 8
ID_LIKE_FIELDS = ("id", "_id", "uuid", "identifier")

_SEGMENT_RE = re.compile(r"\[(\d+)\]|([^.\[\]]+)")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w-]*)\s*:")


@dataclass(frozen=True)
class PathMatch:
    """A successful evaluation and the strategy that produced it."""
    value: Any
    strategy: str


def parse_path(path: str) -> List[Segment]:
    """'.items[0].id' -> ['items', 0, 'id']"""
    segments: List[Segment] = []
    for index, name in _SEGMENT_RE.findall(path or ""):
        if index:
            segments.append(int(index))
        elif name:
            segments.append(name)
    return segments


# ---- (a) structured-string handling -------------------------------------------

def unwrap_envelope(value: Any) -> Any:
    """
    Unwrap tool-result envelopes shaped {result: {content: [{text: "..."}]}}
    (or {content: [{text: "..."}]}), parsing the text when it holds JSON.
    """
    body = value
    if isinstance(body, dict) and isinstance(body.get("result"), dict):
        body = body["result"]
    if not isinstance(body, dict):
        return value
    content = body.get("content")
    if not isinstance(content, list) or not content:
        return value
    first = content[0]
    if not isinstance(first, dict) or not isinstance(first.get("text"), str):
        return value
    parsed = try_parse_structured(first["text"])
    if parsed is None:
        logger.debug("Envelope text is not structured data; using it verbatim")
        return first["text"]
    return parsed


def try_parse_structured(text: str) -> Any:
    """
    Parse a string that looks like an object or array.

    Strict JSON first, then relaxed quoting (single quotes, bare keys,
    Python literals). Returns None when the text is not structured.
    """
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        pass
    relaxed = stripped.replace("'", '"')
    relaxed = _BARE_KEY_RE.sub(r'\1"\2":', relaxed)
    relaxed = re.sub(r"\bTrue\b", "true", relaxed)
    relaxed = re.sub(r"\bFalse\b", "false", relaxed)
    relaxed = re.sub(r"\bNone\b", "null", relaxed)
    try:
        return json.loads(relaxed)
    except ValueError:
        return None


def parse_structured_strings(value: Any) -> Any:
    """Recursively replace structured string values with their parsed form."""
    if isinstance(value, str):
        parsed = try_parse_structured(value)
        return value if parsed is None else parse_structured_strings(parsed)
    if isinstance(value, dict):
        return {k: parse_structured_strings(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_structured_strings(v) for v in value]
    return value


def materialize(value: Any) -> Node:
    """Envelope unwrapping + structured-string parsing, then tree conversion."""
    return from_python(parse_structured_strings(unwrap_envelope(value)))


# ---- (b) direct path ------------------------------------------------------------

def follow(node: Node, segments: List[Segment]) -> Optional[Node]:
    current = node
    for seg in segments:
        if isinstance(seg, int):
            if not isinstance(current, Array):
                return None
            current = current.at(seg)
        else:
            if isinstance(current, Object):
                current = current.get(seg)
            elif isinstance(current, Array) and seg.isdigit():
                current = current.at(int(seg))
            else:
                return None
        if current is None:
            return None
    return current


def direct_search(node: Node, segments: List[Segment], depth: int = 0) -> Optional[Node]:
    """The exact path, tried at the root and then inside each nested object value."""
    if depth > MAX_DIRECT_DEPTH:
        return None
    hit = follow(node, segments)
    if hit is not None:
        return hit
    if isinstance(node, Object):
        for child in node.values():
            hit = direct_search(child, segments, depth + 1)
            if hit is not None:
                return hit
    return None


# ---- (c) smart field ------------------------------------------------------------

def find_field(node: Node, field: str, depth: int = 0) -> Optional[Node]:
    """First value of `field` in pre-order (a level's own fields before nested ones)."""
    if depth > MAX_FIELD_DEPTH:
        return None
    if isinstance(node, Object) and node.has(field):
        return node.get(field)
    for child in children(node):
        hit = find_field(child, field, depth + 1)
        if hit is not None:
            return hit
    return None


def _split_final_field(segments: List[Segment]) -> Tuple[Optional[str], Optional[int], List[str]]:
    """
    Returns (final field name, index immediately before it, earlier names).
    The final field is None when the path does not end in a name.
    """
    if not segments or not isinstance(segments[-1], str):
        return None, None, []
    final = segments[-1]
    index = segments[-2] if len(segments) > 1 and isinstance(segments[-2], int) else None
    earlier = [s for s in segments[:-1] if isinstance(s, str)]
    return final, index, earlier


def smart_field_search(node: Node, segments: List[Segment]) -> Optional[Node]:
    final, index, _ = _split_final_field(segments)
    if final is None or len(segments) < 2:
        return None
    hit = find_field(node, final)
    if hit is None:
        return None
    if index is not None and isinstance(hit, Array):
        indexed = hit.at(index)
        if indexed is not None:
            return indexed
    return hit


# ---- (d) pattern discovery --------------------------------------------------------

def arrays_with_field(node: Node, field: str) -> List[List[str]]:
    """Paths (object keys from the root) of arrays whose first element has `field`."""
    found: List[List[str]] = []

    def _search(current: Node, path: List[str], depth: int) -> None:
        if depth > MAX_PATTERN_DEPTH:
            return
        if isinstance(current, Array):
            first = current.at(0)
            if isinstance(first, Object) and first.has(field):
                found.append(path)
        elif isinstance(current, Object):
            for name, child in current.fields:
                _search(child, path + [name], depth + 1)

    _search(node, [], 0)
    return found


def pattern_discovery(node: Node, segments: List[Segment]) -> Optional[Node]:
    final, index, earlier = _split_final_field(segments)
    if final is None:
        return None
    candidates = arrays_with_field(node, final)
    if not candidates:
        return None
    chosen = candidates[0]
    for path in candidates:
        container = path[-1] if path else "root"
        if container in earlier:
            chosen = path
            break
    return follow(node, list(chosen) + [index or 0, final])


# ---- (e) / (f) id fallbacks -------------------------------------------------------

def first_array(node: Node) -> Optional[Array]:
    if isinstance(node, Array):
        return node
    if isinstance(node, Object):
        for child in node.values():
            if isinstance(child, Array):
                return child
        for child in node.values():
            nested = first_array(child)
            if nested is not None:
                return nested
    return None


def array_id_fallback(node: Node) -> Optional[Node]:
    array = first_array(node)
    first = array.at(0) if array is not None else None
    if not isinstance(first, Object):
        return None
    for name in ID_LIKE_FIELDS:
        if first.has(name):
            return first.get(name)
    return None


def find_id(node: Node) -> Optional[Node]:
    if isinstance(node, Object) and node.has("id"):
        return node.get("id")
    for child in children(node):
        hit = find_id(child)
        if hit is not None:
            return hit
    return None


def evaluate_path(value: Any, path: str) -> Optional[PathMatch]:
    """Evaluate `path` against a raw step result; None when nothing structural matches."""
    root = materialize(value)
    segments = parse_path(path)
    if not segments:
        return PathMatch(to_python(root), "whole")

    strategies = (
        ("direct", lambda: direct_search(root, segments)),
        ("smart-field", lambda: smart_field_search(root, segments)),
        ("pattern", lambda: pattern_discovery(root, segments)),
        ("array-id", lambda: array_id_fallback(root)),
        ("recursive-id", lambda: find_id(root)),
    )
    for name, strategy in strategies:
        hit = strategy()
        if hit is not None:
            logger.debug(f"Path {path!r} resolved by {name} strategy")
            return PathMatch(to_python(hit), name)

    logger.debug(f"Path {path!r} missed every structural strategy")
    return None


def is_empty_result(value: Any) -> bool:
    """None, empty containers and blank strings count as "no result"."""
    if value is None:
        return True
    if isinstance(value, (list, dict, tuple)) and not value:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


__all__ = [
    "PathMatch",
    "parse_path",
    "unwrap_envelope",
    "try_parse_structured",
    "parse_structured_strings",
    "materialize",
    "evaluate_path",
    "is_empty_result",
]
