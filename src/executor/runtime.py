"""Process-wide instances shared by the API layer.

Each getter builds its object on first use. The runner receives its
collaborators explicitly; only this module knows they are shared.
`reset_runtime()` drops everything (used by tests and app shutdown).
"""

import logging
from typing import Optional

from src.executor.fallback import FallbackDispatcher
from src.executor.history_store import HistoryStore, JsonFileHistoryStore
from src.executor.pipeline_runner import PipelineRunner
from src.executor.rate_governor import RateGovernor
from src.executor.run_registry import RunRegistry
from src.llm.factory import build_default_adapters

logger = logging.getLogger(__name__)

_run_registry: Optional[RunRegistry] = None
_rate_governor: Optional[RateGovernor] = None
_history_store: Optional[HistoryStore] = None
_dispatcher: Optional[FallbackDispatcher] = None
_pipeline_runner: Optional[PipelineRunner] = None


def get_run_registry() -> RunRegistry:
    """Get the global run registry instance."""
    global _run_registry
    if _run_registry is None:
        _run_registry = RunRegistry()
    return _run_registry


def get_rate_governor() -> RateGovernor:
    """Get the global rate governor instance."""
    global _rate_governor
    if _rate_governor is None:
        _rate_governor = RateGovernor()
    return _rate_governor


def get_history_store() -> HistoryStore:
    """Get the global history store (JSON file by default)."""
    global _history_store
    if _history_store is None:
        _history_store = JsonFileHistoryStore()
        logger.info(f"Run history stored at {_history_store.path}")
    return _history_store


def get_dispatcher() -> FallbackDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = FallbackDispatcher(build_default_adapters())
    return _dispatcher


def get_pipeline_runner() -> PipelineRunner:
    """Get the global pipeline runner, wired to the shared collaborators."""
    global _pipeline_runner
    if _pipeline_runner is None:
        _pipeline_runner = PipelineRunner(
            dispatcher=get_dispatcher(),
            registry=get_run_registry(),
            history_store=get_history_store(),
        )
    return _pipeline_runner


def configure_runtime(
    *,
    dispatcher: Optional[FallbackDispatcher] = None,
    registry: Optional[RunRegistry] = None,
    rate_governor: Optional[RateGovernor] = None,
    history_store: Optional[HistoryStore] = None,
    pipeline_runner: Optional[PipelineRunner] = None,
) -> None:
    """Install specific instances (e.g. fakes) in place of the defaults."""
    global _dispatcher, _run_registry, _rate_governor, _history_store, _pipeline_runner
    if dispatcher is not None:
        _dispatcher = dispatcher
    if registry is not None:
        _run_registry = registry
    if rate_governor is not None:
        _rate_governor = rate_governor
    if history_store is not None:
        _history_store = history_store
    if pipeline_runner is not None:
        _pipeline_runner = pipeline_runner


def reset_runtime() -> None:
    global _dispatcher, _run_registry, _rate_governor, _history_store, _pipeline_runner
    _dispatcher = None
    _run_registry = None
    _rate_governor = None
    _history_store = None
    _pipeline_runner = None
