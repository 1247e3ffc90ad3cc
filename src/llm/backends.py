"""Provider backend abstraction for the generation pipeline.

Provides a uniform interface for calling different generation providers
(Google Gemini, OpenAI, Anthropic Claude, Perplexity) with a consistent
result shape.

Each backend handles provider-specific concerns:
- Client creation and credential lookup
- Request shaping and response parsing
- Token counting

The shared base class handles provider-agnostic concerns:
- Availability checks (credential present, no network)
- Enforcing the per-call timeout
- Normalizing every low-level fault into an ErrorKind

Backends never raise for provider faults. A failed call comes back as a
ProviderResult with success=False so the fallback dispatcher and the
retrier can reason about it without knowing the provider.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Normalized error taxonomy shared by adapters, dispatcher and runner."""
    AUTH_ERROR = "AuthError"
    RATE_LIMIT_ERROR = "RateLimitError"
    NETWORK_ERROR = "NetworkError"
    TIMEOUT_ERROR = "TimeoutError"
    MODEL_ERROR = "ModelError"
    UNKNOWN_ERROR = "UnknownError"


# Kinds worth another attempt with backoff
RETRYABLE_ERROR_KINDS = frozenset({
    ErrorKind.TIMEOUT_ERROR,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.RATE_LIMIT_ERROR,
})


@dataclass
class ProviderResult:
    """Normalized response from any provider backend."""

    success: bool
    provider: str
    content: str = ""
    error_kind: Optional[ErrorKind] = None
    error_detail: str = ""
    model_used: str = ""
    latency_ms: int = 0
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    tokens_used: Optional[int] = None

    @classmethod
    def failure(
        cls,
        provider: str,
        kind: ErrorKind,
        detail: str,
        *,
        model_used: str = "",
        latency_ms: int = 0,
    ) -> "ProviderResult":
        return cls(
            success=False,
            provider=provider,
            error_kind=kind,
            error_detail=detail,
            model_used=model_used,
            latency_ms=latency_ms,
        )


@dataclass
class _Completion:
    """Raw completion produced by a backend's network call."""

    text: str
    model: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


# --- Provider configurations ---

PROVIDER_CONFIGS = {
    "gemini": {
        "model": os.environ.get("GEMINI_MODEL", "gemini-2.5-flash"),
        "max_tokens": 8192,
        "temperature": 0.7,
        "api_key_env": "GEMINI_API_KEY",
    },
    "openai": {
        "model": os.environ.get("OPENAI_MODEL", "gpt-4o"),
        "max_tokens": 4096,
        "temperature": 0.7,
        "api_key_env": "OPENAI_API_KEY",
        "base_url": "https://api.openai.com/v1",
    },
    "anthropic": {
        "model": os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
        "max_tokens": 4096,
        "temperature": 0.7,
        "api_key_env": "ANTHROPIC_API_KEY",
    },
    "perplexity": {
        "model": os.environ.get("PERPLEXITY_MODEL", "sonar-pro"),
        "max_tokens": 4096,
        "temperature": 0.7,
        "api_key_env": "PERPLEXITY_API_KEY",
        "base_url": "https://api.perplexity.ai",
    },
}


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol for provider backend implementations."""

    @property
    def name(self) -> str: ...

    def is_available(self) -> bool:
        """True iff the credential this backend needs is present. No network."""
        ...

    async def execute(self, task: str, timeout: float) -> ProviderResult: ...


# --- Error classification ---

_AUTH_MARKERS = ("api key", "api_key", "unauthorized", "authentication", "permission denied")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "quota", "too many requests", "429", "resource_exhausted")
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline")
_NETWORK_MARKERS = ("network", "econnrefused", "econnreset", "connection", "dns", "name resolution")


def _status_code_of(error: BaseException) -> Optional[int]:
    """Pull an HTTP status out of SDK and httpx exceptions when present."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    return None


def classify_status(status: int) -> ErrorKind:
    if status in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status == 429:
        return ErrorKind.RATE_LIMIT_ERROR
    if status in (408, 504):
        return ErrorKind.TIMEOUT_ERROR
    if status >= 500:
        return ErrorKind.NETWORK_ERROR
    if status in (400, 404, 409, 413, 422):
        return ErrorKind.MODEL_ERROR
    return ErrorKind.UNKNOWN_ERROR


def classify_error(error: BaseException) -> ErrorKind:
    """Map any low-level fault onto the fixed ErrorKind taxonomy.

    Order: transport exception types, then HTTP status, then a
    message-substring fallback for SDKs that only give us text.
    """
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT_ERROR
    if isinstance(error, (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return ErrorKind.NETWORK_ERROR

    status = _status_code_of(error)
    if status is not None:
        return classify_status(status)

    error_str = f"{type(error).__name__} {error}".lower()
    if any(marker in error_str for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH_ERROR
    if any(marker in error_str for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT_ERROR
    if any(marker in error_str for marker in _TIMEOUT_MARKERS):
        return ErrorKind.TIMEOUT_ERROR
    if any(marker in error_str for marker in _NETWORK_MARKERS):
        return ErrorKind.NETWORK_ERROR
    if "model" in error_str:
        return ErrorKind.MODEL_ERROR
    return ErrorKind.UNKNOWN_ERROR


class BaseBackend:
    """Shared execute() skeleton: credential check, timer, timeout, normalization.

    Subclasses implement `_call()` with the provider-specific request and
    let any exception escape; this class turns it into a ProviderResult.
    """

    provider_name = ""

    def __init__(self, model_id: Optional[str] = None):
        config = PROVIDER_CONFIGS[self.provider_name]
        self._config = config
        self._model_id = model_id or config["model"]

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def model_id(self) -> str:
        return self._model_id

    def _api_key(self) -> Optional[str]:
        return os.environ.get(self._config["api_key_env"]) or None

    def is_available(self) -> bool:
        return self._api_key() is not None

    async def _call(self, task: str, api_key: str, timeout: float) -> _Completion:
        raise NotImplementedError

    async def execute(self, task: str, timeout: float) -> ProviderResult:
        """Execute a single call, abandoning it once `timeout` seconds pass.

        The in-flight request is cancelled on timeout. The caller never
        waits longer than `timeout`, even if the socket takes longer to close.
        """
        api_key = self._api_key()
        if not api_key:
            return ProviderResult.failure(
                self.name, ErrorKind.AUTH_ERROR, "API key not configured",
                model_used=self._model_id,
            )

        label = f"[{self.name}]"
        start_time = time.monotonic()
        logger.info(f"{label} Executing request: model={self._model_id}, timeout={timeout:.0f}s")

        try:
            completion = await asyncio.wait_for(
                self._call(task, api_key, timeout), timeout=timeout,
            )
        except asyncio.TimeoutError:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            logger.error(f"{label} Request timed out after {latency_ms}ms")
            return ProviderResult.failure(
                self.name, ErrorKind.TIMEOUT_ERROR, f"Request timeout after {timeout:.0f}s",
                model_used=self._model_id, latency_ms=latency_ms,
            )
        except Exception as e:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            kind = classify_error(e)
            logger.error(f"{label} Request failed: kind={kind.value}, error={e}")
            return ProviderResult.failure(
                self.name, kind, str(e) or type(e).__name__,
                model_used=self._model_id, latency_ms=latency_ms,
            )

        latency_ms = int((time.monotonic() - start_time) * 1000)
        if not completion.text.strip():
            logger.error(f"{label} Empty response from {completion.model}")
            return ProviderResult.failure(
                self.name, ErrorKind.MODEL_ERROR, f"Empty response from {completion.model}",
                model_used=completion.model, latency_ms=latency_ms,
            )

        tokens_used = completion.total_tokens
        if tokens_used is None and completion.input_tokens is not None and completion.output_tokens is not None:
            tokens_used = completion.input_tokens + completion.output_tokens

        logger.info(
            f"{label} Request successful: {tokens_used or 0} tokens, "
            f"{latency_ms}ms, {len(completion.text):,} chars"
        )

        return ProviderResult(
            success=True,
            provider=self.name,
            content=completion.text.strip(),
            model_used=completion.model,
            latency_ms=latency_ms,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            tokens_used=tokens_used,
        )


class GeminiBackend(BaseBackend):
    """Google Gemini backend.

    Requires GEMINI_API_KEY environment variable.
    Uses the async surface of the google-genai package (`client.aio`).
    """

    provider_name = "gemini"

    async def _call(self, task: str, api_key: str, timeout: float) -> _Completion:
        from google import genai

        client = genai.Client(api_key=api_key)
        config = genai.types.GenerateContentConfig(
            max_output_tokens=self._config["max_tokens"],
            temperature=self._config["temperature"],
        )
        response = await client.aio.models.generate_content(
            model=self._model_id,
            contents=task,
            config=config,
        )

        raw_text = ""
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts or []:
                if getattr(part, "thought", False):
                    continue
                raw_text += getattr(part, "text", "") or ""

        usage = getattr(response, "usage_metadata", None)
        return _Completion(
            text=raw_text,
            model=self._model_id,
            input_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
            output_tokens=getattr(usage, "candidates_token_count", None) if usage else None,
            total_tokens=getattr(usage, "total_token_count", None) if usage else None,
        )


class AnthropicBackend(BaseBackend):
    """Anthropic Claude backend.

    SDK-level retries are disabled: retry policy belongs to the dispatcher.
    """

    provider_name = "anthropic"

    async def _call(self, task: str, api_key: str, timeout: float) -> _Completion:
        from anthropic import AsyncAnthropic

        client = AsyncAnthropic(
            api_key=api_key,
            max_retries=0,
            timeout=httpx.Timeout(connect=30.0, read=timeout, write=60.0, pool=30.0),
        )
        try:
            message = await client.messages.create(
                model=self._model_id,
                max_tokens=self._config["max_tokens"],
                temperature=self._config["temperature"],
                messages=[{"role": "user", "content": task}],
            )
        finally:
            await client.close()

        raw_text = ""
        for block in message.content:
            if hasattr(block, "text"):
                raw_text += block.text

        return _Completion(
            text=raw_text,
            model=self._model_id,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )


class ChatCompletionsBackend(BaseBackend):
    """Backend for OpenAI-compatible `/chat/completions` endpoints over httpx."""

    async def _call(self, task: str, api_key: str, timeout: float) -> _Completion:
        async with httpx.AsyncClient(
            base_url=self._config["base_url"],
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(connect=30.0, read=timeout, write=60.0, pool=30.0),
        ) as client:
            response = await client.post(
                "/chat/completions",
                json={
                    "model": self._model_id,
                    "messages": [{"role": "user", "content": task}],
                    "max_tokens": self._config["max_tokens"],
                    "temperature": self._config["temperature"],
                },
            )
            response.raise_for_status()
            body = response.json()

        choices = body.get("choices") or []
        raw_text = ""
        if choices:
            raw_text = (choices[0].get("message") or {}).get("content") or ""

        usage = body.get("usage") or {}
        return _Completion(
            text=raw_text,
            model=body.get("model") or self._model_id,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )


class OpenAIBackend(ChatCompletionsBackend):
    """OpenAI chat completions backend. Requires OPENAI_API_KEY."""

    provider_name = "openai"


class PerplexityBackend(ChatCompletionsBackend):
    """Perplexity (web-grounded) backend. Requires PERPLEXITY_API_KEY."""

    provider_name = "perplexity"
