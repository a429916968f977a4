"""
LLM-assisted value extraction, the last resort of template resolution.

The extractor is injected into the resolver so the deterministic search
never depends on a network call; a miss is a structured ExtractionResult,
not a magic string.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Protocol
import asyncio
import inspect
import json
import logging
import re

from ..concurrency.executors import run_io
from ..utils.lru import LRU

logger = logging.getLogger(__name__)

NOT_FOUND_TOKEN = "NOT_FOUND"
MAX_STRUCTURE_CHARS = 4000

_FENCE_RE = re.compile(r"^```[\w-]*\s*|\s*```$")
_SINGLE_FIELD_RE = re.compile(r"""^\{\s*["']?[\w-]+["']?\s*:\s*["']?([^"'{}]+?)["']?\s*\}$""")


@dataclass(frozen=True)
class ExtractionResult:
    ok: bool
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, value: str) -> ExtractionResult:
        return cls(ok=True, value=value)

    @classmethod
    def miss(cls, error: str) -> ExtractionResult:
        return cls(ok=False, error=error)


class ValueExtractor(Protocol):
    async def extract(self, template: str, path: str, structure: Any) -> ExtractionResult: ...


class NullValueExtractor:
    """Extractor that never finds anything (no LLM configured)."""

    async def extract(self, template: str, path: str, structure: Any) -> ExtractionResult:
        return ExtractionResult.miss("no extractor configured")


_PROMPT = """You extract one value from a JSON structure.

Template: {template}
Attempted path: {path}
JSON structure:
```json
{structure}
```

Return ONLY the raw value as plain text: no quotes, no markdown, no explanation.
Property names vary (id, uuid, identifier, key, name, title, ...); pick the one
the template asks for. Arrays and objects may be returned as compact JSON.
If the value is missing, null or empty, return {not_found}."""


def build_extraction_prompt(template: str, path: str, structure: Any) -> str:
    serialized = json.dumps(structure, indent=2, default=str)
    if len(serialized) > MAX_STRUCTURE_CHARS:
        serialized = serialized[:MAX_STRUCTURE_CHARS] + "\n... (truncated)"
    return _PROMPT.format(
        template=template,
        path=path or "(whole result)",
        structure=serialized,
        not_found=NOT_FOUND_TOKEN,
    )


def clean_extracted_value(text: Optional[str]) -> Optional[str]:
    """Strip fences, quotes and single-field JSON wrappers; None for a miss."""
    if text is None:
        return None
    value = _FENCE_RE.sub("", text.strip()).strip()
    if not value or value.upper().startswith(NOT_FOUND_TOKEN):
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1].strip()
    match = _SINGLE_FIELD_RE.match(value)
    if match:
        value = match.group(1).strip()
    return value or None


class LLMValueExtractor:
    """
    Asks an LLM provider to pull a value out of a result the structural
    strategies could not navigate.

    The provider must expose `call(messages) -> str`, sync or async. Sync
    providers run on the shared I/O pool. Answers are cached by
    (template, path, serialized structure).
    """

    def __init__(self, llm: Any, timeout: float = 15.0, cache_size: int = 256):
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        self.llm = llm
        self.timeout = timeout
        self._cache = LRU(capacity=cache_size)

    async def extract(self, template: str, path: str, structure: Any) -> ExtractionResult:
        key = (template, path, json.dumps(structure, sort_keys=True, default=str))
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Extraction cache hit for {template}")
            return cached

        prompt = build_extraction_prompt(template, path, structure)
        messages = [{"role": "user", "content": prompt}]
        try:
            raw = await asyncio.wait_for(self._call(messages), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"LLM extraction for {template} timed out after {self.timeout}s")
            return ExtractionResult.miss(f"timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"LLM extraction for {template} failed: {e}")
            return ExtractionResult.miss(str(e))

        value = clean_extracted_value(raw)
        result = ExtractionResult.found(value) if value is not None else ExtractionResult.miss("not found")
        self._cache.set(key, result)
        return result

    async def _call(self, messages) -> str:
        call = self.llm.call
        if inspect.iscoroutinefunction(call):
            return await call(messages)
        return await run_io(call, messages)
