"""Waterfall fallback across providers.

Tries each available provider in the caller-supplied priority order,
retrying each one with backoff on transient errors, until one succeeds.
The order is never changed at runtime.

Each call is bounded by `timeout` even if the adapter ignores it. An
optional `provider_budget` caps the time one provider may spend across
its retries, so a hanging provider hands over to the next one instead of
consuming the caller's whole deadline.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from src.executor.retry import (
    DEFAULT_RETRY_POLICY,
    RetryDecision,
    RetryPolicy,
    retry_with_backoff,
)
from src.llm.backends import RETRYABLE_ERROR_KINDS, ErrorKind, ProviderAdapter, ProviderResult
from src.llm.client import summarize_task

logger = logging.getLogger(__name__)


@dataclass
class FallbackAttempt:
    """Diagnostics for one provider tried during a dispatch."""

    provider: str
    success: bool
    error_kind: Optional[ErrorKind] = None
    error_detail: str = ""
    retries: int = 0

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "success": self.success,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
            "retries": self.retries,
        }


@dataclass
class FallbackResult:
    """Outcome of a dispatch: the winning provider's result plus attempts."""

    success: bool
    result: Optional[ProviderResult] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: str = ""
    attempts: list[FallbackAttempt] = field(default_factory=list)

    @property
    def payload(self) -> str:
        return self.result.content if self.result else ""


def _retry_transient(response: ProviderResult) -> RetryDecision:
    if response.success:
        return RetryDecision(retry=False)
    return RetryDecision(
        retry=response.error_kind in RETRYABLE_ERROR_KINDS,
        error_kind=response.error_kind,
    )


class FallbackDispatcher:
    """Dispatch a task to the first provider that succeeds.

    Adapters are injected by name; the priority order is supplied per call.
    """

    def __init__(self, adapters: Mapping[str, ProviderAdapter], *, sleep=None):
        self._adapters = dict(adapters)
        self._sleep = sleep

    @property
    def adapters(self) -> dict[str, ProviderAdapter]:
        return dict(self._adapters)

    def resolve(self, priority_order: Sequence[str]) -> list[ProviderAdapter]:
        """Concrete adapters for `priority_order`, keeping only available ones."""
        resolved = []
        for name in priority_order:
            adapter = self._adapters.get(name)
            if adapter is None:
                logger.warning(f"Unknown provider '{name}' in priority order, skipping")
                continue
            if adapter.is_available():
                resolved.append(adapter)
        return resolved

    async def dispatch(
        self,
        task: str,
        priority_order: Sequence[str],
        timeout: float,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        *,
        provider_budget: Optional[float] = None,
    ) -> FallbackResult:
        """Try providers in order until one succeeds.

        Args:
            task: Prompt text sent to each provider
            priority_order: Provider names, most preferred first
            timeout: Upper bound for a single provider call
            retry_policy: Per-provider backoff on transient errors
            provider_budget: Seconds one provider may spend across all of
                its calls and backoff; once spent, move to the next provider

        Returns:
            FallbackResult with the winner's ProviderResult, or failure with
            AuthError (nothing available) or UnknownError (all exhausted).
            `attempts` holds one entry per provider actually tried.
        """
        task_summary = summarize_task(task)
        providers = self.resolve(priority_order)
        attempts: list[FallbackAttempt] = []

        if not providers:
            logger.error(f"No providers available for order {list(priority_order)} (task: {task_summary})")
            return FallbackResult(
                success=False,
                error_kind=ErrorKind.AUTH_ERROR,
                error_detail="No providers configured. Set at least one provider API key.",
                attempts=attempts,
            )

        logger.info(
            f"Starting fallback execution: providers={[p.name for p in providers]}, "
            f"timeout={timeout:g}s, provider_budget={provider_budget}s (task: {task_summary})"
        )

        for provider in providers:
            logger.info(f"Attempting provider: {provider.name}")
            calls = 0
            budget_spent = False
            deadline = time.monotonic() + provider_budget if provider_budget is not None else None

            async def _call_provider(provider=provider, deadline=deadline) -> ProviderResult:
                nonlocal calls, budget_spent
                calls += 1
                call_timeout = timeout
                clamped = False
                if deadline is not None:
                    remaining = max(deadline - time.monotonic(), 0.001)
                    clamped = remaining <= timeout
                    call_timeout = min(timeout, remaining)
                try:
                    return await asyncio.wait_for(provider.execute(task, call_timeout), timeout=call_timeout)
                except asyncio.TimeoutError:
                    budget_spent = budget_spent or clamped
                    logger.warning(f"[{provider.name}] Call exceeded {call_timeout:g}s, abandoning")
                    return ProviderResult.failure(
                        provider.name,
                        ErrorKind.TIMEOUT_ERROR,
                        f"{provider.name} timed out after {call_timeout:g}s",
                    )

            def _retry_within_budget(response: ProviderResult, provider=provider, deadline=deadline) -> RetryDecision:
                decision = _retry_transient(response)
                if decision.retry and deadline is not None and (budget_spent or time.monotonic() >= deadline):
                    logger.warning(f"[{provider.name}] Spent its {provider_budget:g}s budget, moving on")
                    return RetryDecision(retry=False, error_kind=decision.error_kind)
                return decision

            retry_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
            response = await retry_with_backoff(
                _call_provider,
                _retry_within_budget,
                retry_policy,
                {"provider": provider.name, "task": task_summary},
                **retry_kwargs,
            )

            attempts.append(FallbackAttempt(
                provider=provider.name,
                success=response.success,
                error_kind=response.error_kind,
                error_detail=response.error_detail,
                retries=max(calls - 1, 0),
            ))

            if response.success:
                logger.info(f"Provider {provider.name} succeeded after {calls} call(s)")
                return FallbackResult(success=True, result=response, attempts=attempts)

            logger.warning(
                f"Provider {provider.name} failed: kind={response.error_kind.value if response.error_kind else None}, "
                f"detail={response.error_detail}"
            )

        logger.error(f"All providers failed ({len(attempts)} tried, task: {task_summary})")
        return FallbackResult(
            success=False,
            error_kind=ErrorKind.UNKNOWN_ERROR,
            error_detail=f"Tried {len(attempts)} provider(s), all failed",
            attempts=attempts,
        )
