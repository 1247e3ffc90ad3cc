"""Provider backend factory and mode routing.

Resolves provider names to backend implementations and execution modes
to a deterministic provider priority order.
"""

import logging
from enum import Enum
from typing import Optional

from src.llm.backends import (
    AnthropicBackend,
    BaseBackend,
    GeminiBackend,
    OpenAIBackend,
    PerplexityBackend,
    ProviderAdapter,
)

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    """Execution modes selectable per run."""
    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"


_BACKEND_CLASSES: dict[str, type[BaseBackend]] = {
    "gemini": GeminiBackend,
    "openai": OpenAIBackend,
    "anthropic": AnthropicBackend,
    "perplexity": PerplexityBackend,
}

# Mode -> provider priority. Configuration, never reordered at runtime.
MODE_ROUTING: dict[ExecutionMode, list[str]] = {
    # Speed and cost first
    ExecutionMode.FAST: ["gemini", "openai", "anthropic"],
    # Best cost/performance (default)
    ExecutionMode.BALANCED: ["openai", "gemini", "anthropic"],
    # Output quality first
    ExecutionMode.QUALITY: ["anthropic", "openai", "gemini"],
}


def get_backend(provider: str, model_id: Optional[str] = None) -> BaseBackend:
    """Get the backend for a provider name.

    Args:
        provider: One of 'gemini', 'openai', 'anthropic', 'perplexity'
        model_id: Optional model override for this backend instance

    Raises:
        ValueError: If the provider is not recognized
    """
    backend_cls = _BACKEND_CLASSES.get(provider)
    if backend_cls is None:
        raise ValueError(
            f"Unknown provider: '{provider}'. "
            f"Expected one of: {', '.join(sorted(_BACKEND_CLASSES))}."
        )
    return backend_cls(model_id=model_id)


def build_default_adapters() -> dict[str, ProviderAdapter]:
    """Instantiate one adapter per known provider, keyed by name."""
    return {name: get_backend(name) for name in _BACKEND_CLASSES}


def get_provider_priority(mode: ExecutionMode | str = ExecutionMode.BALANCED) -> list[str]:
    """Provider order for a mode. Unknown modes fall back to balanced."""
    try:
        mode = ExecutionMode(mode)
    except ValueError:
        logger.warning(f"Unknown execution mode '{mode}', using balanced routing")
        mode = ExecutionMode.BALANCED
    return list(MODE_ROUTING[mode])
