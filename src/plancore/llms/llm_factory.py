"""
Provider lookup for `PlannerConfig.llm`.

Providers are keyed by name; identical configs share one instance so
planners built from the same config reuse one client.
"""
import logging
from typing import Any, Callable, Dict, Tuple

from .llm_provider import LLMProvider
from .openai import OpenAI

logger = logging.getLogger(__name__)

_BUILDERS: Dict[str, Callable[..., LLMProvider]] = {
    "openai": OpenAI,
}

_INSTANCES: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], LLMProvider] = {}


def _cache_key(name: str, options: Dict[str, Any]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return name, tuple(sorted((k, str(v)) for k, v in options.items()))


def create_llm_provider(config: Dict[str, Any]) -> LLMProvider:
    """
    Build (or reuse) the plan-generating provider named in `config`.

    Parameters:
    -----------
    config : Dict[str, Any]
        {"provider": "openai", "model": "gpt-4o", ...}; every key other than
        `provider` is passed to the provider's constructor.

    Raises:
    -------
    ValueError
        If no provider is registered under that name.
    """
    options = dict(config)
    name = str(options.pop("provider", "openai")).lower()
    key = _cache_key(name, options)

    provider = _INSTANCES.get(key)
    if provider is not None:
        return provider

    builder = _BUILDERS.get(name)
    if builder is None:
        raise ValueError(f"Unknown LLM provider: '{name}' (known: {sorted(_BUILDERS)})")

    provider = builder(**options)
    _INSTANCES[key] = provider
    logger.info(f"Created {name} provider ({options.get('model', 'default model')})")
    return provider


def clear_provider_cache() -> None:
    _INSTANCES.clear()
