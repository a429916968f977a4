from .llm_provider import LLMProvider, ProviderError
from .llm_factory import create_llm_provider

__all__ = ["LLMProvider", "ProviderError", "create_llm_provider"]
