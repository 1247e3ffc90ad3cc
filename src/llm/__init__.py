"""Provider adapters for the generation pipeline.

Provides a single ProviderAdapter interface over heterogeneous backends
(Gemini, OpenAI, Anthropic, Perplexity), the mode -> provider priority
table, pricing, and output parsing helpers.
"""

from src.llm.backends import (
    RETRYABLE_ERROR_KINDS,
    AnthropicBackend,
    ErrorKind,
    GeminiBackend,
    OpenAIBackend,
    PerplexityBackend,
    ProviderAdapter,
    ProviderResult,
    classify_error,
)
from src.llm.client import parse_llm_json_response, parse_stage_output, summarize_task
from src.llm.costs import calculate_cost
from src.llm.factory import (
    MODE_ROUTING,
    ExecutionMode,
    build_default_adapters,
    get_backend,
    get_provider_priority,
)

__all__ = [
    "RETRYABLE_ERROR_KINDS",
    "AnthropicBackend",
    "ErrorKind",
    "GeminiBackend",
    "OpenAIBackend",
    "PerplexityBackend",
    "ProviderAdapter",
    "ProviderResult",
    "classify_error",
    "parse_llm_json_response",
    "parse_stage_output",
    "summarize_task",
    "calculate_cost",
    "MODE_ROUTING",
    "ExecutionMode",
    "build_default_adapters",
    "get_backend",
    "get_provider_priority",
]
