"""Tests for provider adapters: availability, timeouts, error normalization."""

import asyncio

import httpx
import pytest

from src.llm.backends import (
    AnthropicBackend,
    ErrorKind,
    GeminiBackend,
    OpenAIBackend,
    ProviderAdapter,
    _Completion,
    classify_error,
    classify_status,
)
from src.llm.factory import (
    MODE_ROUTING,
    ExecutionMode,
    build_default_adapters,
    get_backend,
    get_provider_priority,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/chat/completions")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class ScriptedBackend(OpenAIBackend):
    """OpenAI backend whose network call is replaced by a script."""

    def __init__(self, script):
        super().__init__()
        self._script = script

    async def _call(self, task, api_key, timeout):
        return await self._script()


@pytest.fixture
def openai_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (asyncio.TimeoutError(), ErrorKind.TIMEOUT_ERROR),
            (httpx.ReadTimeout("read timed out"), ErrorKind.TIMEOUT_ERROR),
            (httpx.ConnectError("connection refused"), ErrorKind.NETWORK_ERROR),
            (ConnectionResetError("reset by peer"), ErrorKind.NETWORK_ERROR),
            (_status_error(401), ErrorKind.AUTH_ERROR),
            (_status_error(403), ErrorKind.AUTH_ERROR),
            (_status_error(429), ErrorKind.RATE_LIMIT_ERROR),
            (_status_error(503), ErrorKind.NETWORK_ERROR),
            (_status_error(400), ErrorKind.MODEL_ERROR),
            (RuntimeError("Invalid API key provided"), ErrorKind.AUTH_ERROR),
            (RuntimeError("Quota exceeded for this project"), ErrorKind.RATE_LIMIT_ERROR),
            (RuntimeError("ECONNREFUSED 127.0.0.1:443"), ErrorKind.NETWORK_ERROR),
            (RuntimeError("model overloaded and returned garbage"), ErrorKind.MODEL_ERROR),
            (RuntimeError("something odd"), ErrorKind.UNKNOWN_ERROR),
        ],
    )
    def test_classification(self, error, expected):
        assert classify_error(error) == expected

    def test_status_attribute_on_sdk_errors(self):
        class SdkError(Exception):
            status_code = 429

        assert classify_error(SdkError("slow down")) == ErrorKind.RATE_LIMIT_ERROR

    def test_gateway_timeout_status(self):
        assert classify_status(504) == ErrorKind.TIMEOUT_ERROR


class TestAvailability:
    def test_missing_key_is_unavailable(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert not AnthropicBackend().is_available()

    def test_present_key_is_available(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-test")
        assert GeminiBackend().is_available()

    def test_backends_satisfy_protocol(self):
        for adapter in build_default_adapters().values():
            assert isinstance(adapter, ProviderAdapter)

    @pytest.mark.asyncio
    async def test_execute_without_key_is_auth_error(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        result = await OpenAIBackend().execute("task", timeout=5)
        assert not result.success
        assert result.error_kind == ErrorKind.AUTH_ERROR


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_sums_tokens(self, openai_key):
        async def script():
            return _Completion(text="  hello  ", model="gpt-4o", input_tokens=10, output_tokens=5)

        result = await ScriptedBackend(script).execute("task", timeout=5)

        assert result.success
        assert result.content == "hello"
        assert result.provider == "openai"
        assert result.tokens_used == 15

    @pytest.mark.asyncio
    async def test_timeout_abandons_call(self, openai_key):
        async def script():
            await asyncio.sleep(3600)

        result = await ScriptedBackend(script).execute("task", timeout=0.05)

        assert not result.success
        assert result.error_kind == ErrorKind.TIMEOUT_ERROR
        assert result.latency_ms < 5000

    @pytest.mark.asyncio
    async def test_transport_fault_is_normalized(self, openai_key):
        async def script():
            raise httpx.ConnectError("dns failure")

        result = await ScriptedBackend(script).execute("task", timeout=5)

        assert result.error_kind == ErrorKind.NETWORK_ERROR
        assert "dns failure" in result.error_detail

    @pytest.mark.asyncio
    async def test_http_status_is_normalized(self, openai_key):
        async def script():
            raise _status_error(429)

        result = await ScriptedBackend(script).execute("task", timeout=5)

        assert result.error_kind == ErrorKind.RATE_LIMIT_ERROR

    @pytest.mark.asyncio
    async def test_empty_text_is_model_error(self, openai_key):
        async def script():
            return _Completion(text="   ", model="gpt-4o")

        result = await ScriptedBackend(script).execute("task", timeout=5)

        assert result.error_kind == ErrorKind.MODEL_ERROR


class TestRouting:
    def test_mode_table(self):
        assert MODE_ROUTING[ExecutionMode.FAST] == ["gemini", "openai", "anthropic"]
        assert MODE_ROUTING[ExecutionMode.BALANCED] == ["openai", "gemini", "anthropic"]
        assert MODE_ROUTING[ExecutionMode.QUALITY] == ["anthropic", "openai", "gemini"]

    def test_priority_accepts_strings(self):
        assert get_provider_priority("quality") == ["anthropic", "openai", "gemini"]

    def test_unknown_mode_falls_back_to_balanced(self):
        assert get_provider_priority("turbo") == MODE_ROUTING[ExecutionMode.BALANCED]

    def test_priority_is_a_copy(self):
        order = get_provider_priority(ExecutionMode.FAST)
        order.reverse()
        assert MODE_ROUTING[ExecutionMode.FAST][0] == "gemini"

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            get_backend("mystery")

    def test_model_override(self):
        assert get_backend("anthropic", model_id="claude-test").model_id == "claude-test"
