"""
Provider adapters for the supported AI platforms.
"""

from .base import (
    ProviderAdapter,
    ProviderError,
    ProviderResult,
    RawLLMResult,
)
from .openai_adapter import OpenAIAdapter
from .gemini_adapter import GeminiAdapter
from .stub_adapter import StubAdapter

# Provider type name -> adapter class
ADAPTER_TYPES: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
    "stub": StubAdapter,
}

__all__ = [
    "ADAPTER_TYPES",
    "ProviderAdapter",
    "ProviderError",
    "ProviderResult",
    "RawLLMResult",
    "OpenAIAdapter",
    "GeminiAdapter",
    "StubAdapter",
]
