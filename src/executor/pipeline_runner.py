"""Pipeline runner: executes the five stages of a run in order.

Per stage:
1. Check for cancellation, mark the stage active, emit `stage_start`
2. Build the stage's task from the leads and earlier stage outputs
3. Run an outer bounded retry; each attempt goes through the
   timeout+cancellation guard and then the fallback dispatcher, which
   gives each provider an even share of the stage timeout. Backoff
   between attempts ends early on cancellation
4. Parse, validate (advisory) and cost the winning output
5. Record the StageOutcome and emit `stage_complete`

Terminal handling:
- Stages 1-4 failing after all retries fail the run (`error` event, no
  outcome recorded for the failing stage, later stages never run)
- Stage 5 may fail softly: the outcome is recorded with success=False and
  the run still completes
- Cancellation, observed at stage boundaries and in flight, ends the run
  as `cancelled` with the outcomes recorded so far

On every terminal path the record is finished first, then the registry
entry removed, then the record persisted, then the terminal event emitted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from src.executor.fallback import FallbackDispatcher, FallbackResult
from src.executor.guard import CancellationToken, RunCancelledError, StageTimeoutError, run_guarded
from src.executor.history_store import HistoryStore
from src.executor.progress import ProgressChannel
from src.executor.retry import DEFAULT_RETRY_POLICY, RetryDecision, RetryPolicy, retry_with_backoff
from src.executor.run_registry import RunEntry, RunRegistry
from src.executor.schemas import (
    ErrorEvent,
    PipelineCompleteEvent,
    RunRecord,
    RunStartedEvent,
    RunStatus,
    StageCompleteEvent,
    StageOutcome,
    StageStartEvent,
    StartRunRequest,
    new_run_id,
)
from src.executor.stages import (
    DEFAULT_STAGES,
    STAGE_RETRY_POLICY,
    StageContext,
    StageSpec,
    validate_stage_output,
)
from src.llm.backends import RETRYABLE_ERROR_KINDS, ErrorKind, ProviderResult
from src.llm.client import summarize_task
from src.llm.costs import calculate_cost, estimate_tokens, format_cost, format_tokens
from src.llm.factory import get_provider_priority

logger = logging.getLogger(__name__)


class StageFailedError(RuntimeError):
    """A stage exhausted its retries and every provider."""

    def __init__(self, stage_number: int, stage_name: str, error_kind: Optional[ErrorKind], detail: str):
        super().__init__(f"Stage {stage_number} ({stage_name}) failed: {detail}")
        self.stage_number = stage_number
        self.stage_name = stage_name
        self.error_kind = error_kind
        self.detail = detail


def should_retry_stage(result: FallbackResult) -> RetryDecision:
    """Outer-retry verdict for one stage attempt.

    Retry a transient kind, or a dispatcher exhaustion in which every
    provider failed transiently.
    """
    if result.success:
        return RetryDecision(retry=False)
    if result.error_kind in RETRYABLE_ERROR_KINDS:
        return RetryDecision(retry=True, error_kind=result.error_kind)
    if (
        result.error_kind == ErrorKind.UNKNOWN_ERROR
        and result.attempts
        and all(a.error_kind in RETRYABLE_ERROR_KINDS for a in result.attempts)
    ):
        return RetryDecision(retry=True, error_kind=result.attempts[-1].error_kind)
    return RetryDecision(retry=False, error_kind=result.error_kind)


def _token_counts(task: str, response: ProviderResult) -> tuple[Optional[int], Optional[int], Optional[int]]:
    """Reported (input, output, total) tokens, estimated from text when the provider sent none."""
    if response.input_tokens is None and response.output_tokens is None and response.tokens_used is None:
        input_tokens = estimate_tokens(task)
        output_tokens = estimate_tokens(response.content or "")
        return input_tokens, output_tokens, input_tokens + output_tokens
    return response.input_tokens, response.output_tokens, response.tokens_used


@dataclass
class PipelineRun:
    """A registered run, ready to execute."""

    record: RunRecord
    request: StartRunRequest
    entry: RunEntry

    @property
    def run_id(self) -> str:
        return self.record.run_id

    @property
    def token(self) -> CancellationToken:
        return self.entry.token


class PipelineRunner:
    """Runs pipelines against an injected dispatcher, registry and history store."""

    def __init__(
        self,
        dispatcher: FallbackDispatcher,
        registry: RunRegistry,
        history_store: Optional[HistoryStore] = None,
        stages: Sequence[StageSpec] = DEFAULT_STAGES,
        stage_retry_policy: RetryPolicy = STAGE_RETRY_POLICY,
        provider_retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._dispatcher = dispatcher
        self._registry = registry
        self._history_store = history_store
        self._stages = tuple(sorted(stages, key=lambda s: s.number))
        self._stage_retry_policy = stage_retry_policy
        self._provider_retry_policy = provider_retry_policy
        self._sleep = sleep

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    def begin(self, request: StartRunRequest, run_id: Optional[str] = None) -> PipelineRun:
        """Register a run (Pending -> Running). Nothing is emitted yet.

        Raises:
            DuplicateRunError: If the run id is already in flight
        """
        removed = self._registry.cleanup_stale()
        if removed:
            logger.warning(f"Cleaned up {removed} stale run(s) before starting a new one")

        run_id = run_id or request.run_id or new_run_id()
        entry = self._registry.start(run_id)
        record = RunRecord(
            run_id=run_id,
            mode=request.mode.value,
            input_summary=summarize_task(request.leads, max_length=200),
        )
        record.mark_running()
        return PipelineRun(record=record, request=request, entry=entry)

    async def run(
        self,
        request: StartRunRequest,
        channel: ProgressChannel,
        run_id: Optional[str] = None,
    ) -> RunRecord:
        """Register and execute a run, publishing progress to `channel`."""
        return await self.execute(self.begin(request, run_id), channel)

    async def execute(self, run: PipelineRun, channel: ProgressChannel) -> RunRecord:
        """Execute a registered run to a terminal state.

        Never raises for stage failures or cancellation; both end in an
        `error` event. Only task cancellation (asyncio) propagates.
        """
        record = run.record
        run_id = run.run_id
        priority_order = get_provider_priority(run.request.mode)
        start_time = time.monotonic()

        logger.info(
            f"[{run_id}] Starting pipeline: mode={record.mode}, "
            f"providers={priority_order}, stages={len(self._stages)}"
        )

        try:
            await channel.publish(RunStartedEvent(run_id=run_id, mode=record.mode))
            await self._run_stages(run, channel, priority_order)
        except RunCancelledError:
            terminal = self._finish(run, RunStatus.CANCELLED, start_time, "Run cancelled by client")
            event = ErrorEvent(
                message="Pipeline cancelled",
                cancelled=True,
                stage_number=run.entry.active_stage,
            )
        except StageFailedError as e:
            terminal = self._finish(run, RunStatus.FAILED, start_time, str(e))
            event = ErrorEvent(message=str(e), stage_number=e.stage_number)
        except asyncio.CancelledError:
            self._finish(run, RunStatus.CANCELLED, start_time, "Run task cancelled")
            raise
        except Exception as e:
            logger.error(f"[{run_id}] Pipeline failed unexpectedly: {e}", exc_info=True)
            terminal = self._finish(run, RunStatus.FAILED, start_time, f"Pipeline failed: {e}")
            event = ErrorEvent(message=f"Pipeline failed: {e}", stage_number=run.entry.active_stage)
        else:
            terminal = self._finish(run, RunStatus.COMPLETED, start_time)
            event = PipelineCompleteEvent(
                run_id=run_id,
                total_duration_ms=record.total_duration_ms,
                total_cost_usd=record.total_cost_usd,
                results=record.results(),
            )

        await channel.publish(event)
        return terminal

    def _finish(
        self,
        run: PipelineRun,
        status: RunStatus,
        start_time: float,
        error: Optional[str] = None,
    ) -> RunRecord:
        record = run.record
        duration_ms = int((time.monotonic() - start_time) * 1000)
        record.finish(status, duration_ms, error=error)
        self._registry.complete(run.run_id)

        log = logger.info if status == RunStatus.COMPLETED else logger.warning
        log(
            f"[{run.run_id}] Pipeline {status.value}: {len(record.outcomes)} stage(s), "
            f"{duration_ms}ms, {format_cost(record.total_cost_usd)}"
            + (f" ({error})" if error else "")
        )

        if self._history_store is not None:
            try:
                self._history_store.save(record)
            except Exception as e:
                logger.error(f"[{run.run_id}] Failed to persist run history: {e}", exc_info=True)
        return record

    async def _run_stages(
        self,
        run: PipelineRun,
        channel: ProgressChannel,
        priority_order: list[str],
    ) -> None:
        ctx = StageContext(leads=run.request.leads)

        for spec in self._stages:
            label = f"[{run.run_id} stage {spec.number}]"
            run.token.raise_if_cancelled(label)
            self._registry.set_active_stage(run.run_id, spec.number)

            await channel.publish(StageStartEvent(stage_number=spec.number, stage_name=spec.name))
            logger.info(f"{label} Starting {spec.name}")

            outcome = await self._execute_stage(run, spec, ctx, priority_order, label)

            if not outcome.success and not spec.allow_soft_failure:
                raise StageFailedError(
                    spec.number,
                    spec.name,
                    ErrorKind(outcome.error_kind) if outcome.error_kind else None,
                    outcome.error_detail or "unknown error",
                )

            run.record.add_outcome(outcome)
            if outcome.success:
                ctx.outputs[spec.number] = outcome.output
            else:
                logger.warning(f"{label} {spec.name} failed, recording and continuing: {outcome.error_detail}")

            await channel.publish(StageCompleteEvent(
                stage_number=spec.number,
                success=outcome.success,
                duration_ms=outcome.duration_ms,
                cost_usd=outcome.cost_usd,
                total_cost_usd=run.record.total_cost_usd,
                result_summary=outcome.summary(),
            ))

    async def _execute_stage(
        self,
        run: PipelineRun,
        spec: StageSpec,
        ctx: StageContext,
        priority_order: list[str],
        label: str,
    ) -> StageOutcome:
        task = spec.build_input(ctx)
        stage_start = time.monotonic()

        async def _attempt() -> FallbackResult:
            # Each provider gets a share of the stage timeout so a hanging
            # one times out inside the dispatcher and the next is tried
            share = spec.provider_share(len(self._dispatcher.resolve(priority_order)))
            try:
                return await run_guarded(
                    lambda: self._dispatcher.dispatch(
                        task,
                        priority_order,
                        share,
                        self._provider_retry_policy,
                        provider_budget=share,
                    ),
                    timeout=spec.timeout,
                    token=run.token,
                    label=label,
                )
            except StageTimeoutError as e:
                return FallbackResult(
                    success=False,
                    error_kind=ErrorKind.TIMEOUT_ERROR,
                    error_detail=str(e),
                )

        async def _backoff(delay: float) -> None:
            # A cancel during the backoff ends the wait immediately
            await run_guarded(lambda: self._sleep(delay), timeout=None, token=run.token, label=label)

        result = await retry_with_backoff(
            _attempt,
            should_retry_stage,
            self._stage_retry_policy,
            {"run": run.run_id, "stage": spec.number},
            sleep=_backoff,
        )
        duration_ms = int((time.monotonic() - stage_start) * 1000)
        attempts = [a.to_dict() for a in result.attempts]

        if not result.success:
            detail = result.error_detail
            if result.attempts and result.attempts[-1].error_detail:
                detail = f"{detail} (last error: {result.attempts[-1].error_detail})"
            logger.error(
                f"{label} {spec.name} failed after retries: "
                f"kind={result.error_kind.value if result.error_kind else None}, {detail}"
            )
            return StageOutcome(
                stage_number=spec.number,
                stage_name=spec.name,
                success=False,
                duration_ms=duration_ms,
                error_kind=result.error_kind.value if result.error_kind else None,
                error_detail=detail,
                attempts=attempts,
            )

        response = result.result
        output, validated = validate_stage_output(spec, response.content)
        input_tokens, output_tokens, tokens_used = _token_counts(task, response)
        cost = calculate_cost(
            response.provider,
            response.model_used,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=tokens_used,
        )
        logger.info(
            f"{label} {spec.name} complete via {response.provider}: "
            f"{duration_ms}ms, {format_tokens(tokens_used or 0)} tokens, "
            f"{format_cost(cost)}, validated={validated}"
        )
        return StageOutcome(
            stage_number=spec.number,
            stage_name=spec.name,
            success=True,
            output=output,
            provider=response.provider,
            model_used=response.model_used,
            duration_ms=duration_ms,
            cost_usd=cost,
            tokens_used=tokens_used,
            validated=validated,
            attempts=attempts,
        )

