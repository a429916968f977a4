"""Argument resolution: template references, structural path search and LLM extraction."""
from .path_search import PathMatch, evaluate_path, is_empty_result, unwrap_envelope
from .extractor import (
    ExtractionResult,
    ValueExtractor,
    NullValueExtractor,
    LLMValueExtractor,
)
from .resolver import (
    TEMPLATE_RE,
    TemplateRef,
    ResolutionResult,
    ArgumentResolver,
    find_template_references,
    lookup_context_path,
    supplied_input,
)

__all__ = [
    "PathMatch",
    "evaluate_path",
    "is_empty_result",
    "unwrap_envelope",
    "ExtractionResult",
    "ValueExtractor",
    "NullValueExtractor",
    "LLMValueExtractor",
    "TEMPLATE_RE",
    "TemplateRef",
    "ResolutionResult",
    "ArgumentResolver",
    "find_template_references",
    "lookup_context_path",
    "supplied_input",
]
