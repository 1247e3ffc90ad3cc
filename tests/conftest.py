"""Shared fixtures: in-process provider fakes and a no-wait sleep.

FakeAdapter implements the ProviderAdapter protocol without network.
Responses come from a `responder(task)` callable returning either the
content string (success) or an ErrorKind (failure).
"""

import asyncio
import json
from typing import Callable, Optional, Union

import pytest

from src.llm.backends import ErrorKind, ProviderResult

STAGE_MARKERS = {
    1: "market intelligence analyst",
    2: "outbound appointment setter",
    3: "sales engineer",
    4: "systems delivery lead",
    5: "client success manager",
}

LEADS = "Jane Doe, VP Ops, Acme Logistics\nJohn Roe, COO, Beta Freight"


def stage_of(task: str) -> Optional[int]:
    """Which pipeline stage produced a task, by its role line."""
    head = task[:120].lower()
    for number, marker in STAGE_MARKERS.items():
        if marker in head:
            return number
    return None


Response = Union[str, ErrorKind]


class FakeAdapter:
    def __init__(
        self,
        name: str,
        responder: Optional[Callable[[str], Response]] = None,
        *,
        available: bool = True,
        hang_calls: int = 0,
    ):
        self._name = name
        self._responder = responder or (lambda task: json.dumps({"provider": name}))
        self.available = available
        self.hang_calls = hang_calls
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self.available

    def stage_calls(self, stage_number: int) -> int:
        return sum(1 for task in self.calls if stage_of(task) == stage_number)

    async def execute(self, task: str, timeout: float) -> ProviderResult:
        self.calls.append(task)
        if self.hang_calls > 0:
            self.hang_calls -= 1
            await asyncio.sleep(3600)

        response = self._responder(task)
        if isinstance(response, ErrorKind):
            return ProviderResult.failure(self._name, response, f"{response.value} from {self._name}")
        return ProviderResult(
            success=True,
            provider=self._name,
            content=response,
            model_used=f"{self._name}-test",
            latency_ms=5,
            input_tokens=1000,
            output_tokens=500,
            tokens_used=1500,
        )


class RecordingSleep:
    """Stands in for asyncio.sleep in retriers; records delays, never waits."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_adapters() -> dict[str, FakeAdapter]:
    """Routing for the default mode with only gemini configured."""
    return {
        "gemini": FakeAdapter("gemini"),
        "openai": FakeAdapter("openai", available=False),
        "anthropic": FakeAdapter("anthropic", available=False),
    }
