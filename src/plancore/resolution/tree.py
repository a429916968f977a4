"""
A small algebraic type for JSON-like values.

Step results are arbitrary nested dicts/lists/scalars. Path search runs over
this tree so every strategy matches on an explicit node kind instead of
probing Python types.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Tuple, Union


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Bool:
    value: bool


@dataclass(frozen=True)
class Number:
    value: Union[int, float]


@dataclass(frozen=True)
class String:
    value: str


@dataclass(frozen=True)
class Array:
    items: Tuple["Node", ...]

    def at(self, index: int) -> Optional["Node"]:
        if 0 <= index < len(self.items):
            return self.items[index]
        return None


@dataclass(frozen=True)
class Object:
    fields: Tuple[Tuple[str, "Node"], ...]

    def get(self, key: str) -> Optional["Node"]:
        for name, node in self.fields:
            if name == key:
                return node
        return None

    def has(self, key: str) -> bool:
        return any(name == key for name, _ in self.fields)

    def values(self) -> Iterator["Node"]:
        for _, node in self.fields:
            yield node


Node = Union[Null, Bool, Number, String, Array, Object]

NULL = Null()


def from_python(value: Any) -> Node:
    """Convert plain Python data into a tree; unknown objects become strings."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return Bool(value)
    if isinstance(value, (int, float)):
        return Number(value)
    if isinstance(value, str):
        return String(value)
    if isinstance(value, dict):
        return Object(tuple((str(k), from_python(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return Array(tuple(from_python(v) for v in value))
    return String(str(value))


def to_python(node: Node) -> Any:
    if isinstance(node, Null):
        return None
    if isinstance(node, (Bool, Number, String)):
        return node.value
    if isinstance(node, Array):
        return [to_python(item) for item in node.items]
    if isinstance(node, Object):
        return {name: to_python(child) for name, child in node.fields}
    raise TypeError(f"Not a tree node: {node!r}")


def children(node: Node) -> Iterator[Node]:
    if isinstance(node, Array):
        yield from node.items
    elif isinstance(node, Object):
        yield from node.values()
