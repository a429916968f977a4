"""
ToolSpec: what the planner knows about a callable tool.

The planner only needs the name, description and schemas; the reference
executor additionally uses the callable, its timeout and whether it is
safe to retry.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Any, Optional, Dict, List
import inspect


_EMPTY_OBJECT_SCHEMA = {"type": "object", "properties": {}, "required": []}


def _default_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


@dataclass
class ToolSpec:
    """
    Declarative description of a tool.

    Attributes:
        name: Unique identifier for the tool
        description: Human-readable description shown to the planner
        input_schema: JSON-Schema of the arguments
        output_schema: JSON-Schema of the result, when known
        func: The callable (sync or async); None for metadata-only tools
        idempotent: Whether the executor may retry the call on failure
        timeout: Maximum execution time in seconds (None = no timeout)
        is_async: Whether the function is async (auto-detected if None)
    """
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=_default_schema)
    output_schema: Dict[str, Any] = field(default_factory=_default_schema)
    func: Optional[Callable[..., Any]] = None
    idempotent: bool = False
    timeout: Optional[float] = None
    is_async: Optional[bool] = None

    def __post_init__(self):
        if self.is_async is None:
            self.is_async = self.func is not None and inspect.iscoroutinefunction(self.func)

        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")

        if not self.description:
            if self.func is not None and self.func.__doc__:
                self.description = self.func.__doc__.strip().split('\n')[0]
            else:
                self.description = f"Tool: {self.name}"

    def for_llm(self) -> Dict[str, Any]:
        """Metadata passed to the plan-generating LLM."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema or dict(_EMPTY_OBJECT_SCHEMA),
            "outputSchema": self.output_schema or dict(_EMPTY_OBJECT_SCHEMA),
        }

    @classmethod
    def from_function(
        cls,
        func: Callable[..., Any],
        *,
        name: Optional[str] = None,
        description: str = "",
        output_schema: Optional[Dict[str, Any]] = None,
        idempotent: bool = False,
        timeout: Optional[float] = None,
    ) -> ToolSpec:
        """Create a ToolSpec, deriving the input schema from the signature."""
        return cls(
            name=name or func.__name__,
            description=description,
            input_schema=schema_from_signature(func),
            output_schema=output_schema or _default_schema(),
            func=func,
            idempotent=idempotent,
            timeout=timeout,
        )

    def __repr__(self) -> str:
        return f"ToolSpec(name={self.name!r}, idempotent={self.idempotent}, async={self.is_async})"


_PY_TO_JSON = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def schema_from_signature(func: Callable[..., Any]) -> Dict[str, Any]:
    """Best-effort JSON-Schema for a function's keyword parameters."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in inspect.signature(func).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        json_type = _PY_TO_JSON.get(param.annotation, "string")
        if isinstance(param.annotation, str):
            json_type = _PY_TO_JSON.get(
                {"str": str, "int": int, "float": float, "bool": bool,
                 "list": list, "dict": dict}.get(param.annotation, str),
                "string",
            )
        properties[param.name] = {"type": json_type}
        if param.default is param.empty:
            required.append(param.name)
    return {"type": "object", "properties": properties, "required": required}


def tool_spec(
    *,
    name: Optional[str] = None,
    description: str = "",
    output_schema: Optional[Dict[str, Any]] = None,
    idempotent: bool = False,
    timeout: Optional[float] = None,
) -> Callable[[Callable], ToolSpec]:
    """
    Decorator to create a ToolSpec from a function.

    Example:
        @tool_spec(idempotent=True, timeout=5.0)
        def search(query: str) -> list:
            '''Search the catalogue.'''
            ...
    """
    def decorator(func: Callable) -> ToolSpec:
        return ToolSpec.from_function(
            func,
            name=name,
            description=description,
            output_schema=output_schema,
            idempotent=idempotent,
            timeout=timeout,
        )
    return decorator
