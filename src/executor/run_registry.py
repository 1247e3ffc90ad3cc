"""Registry of in-flight pipeline runs.

Maps run id -> cancellation token, active stage and start time. An entry
exists exactly while its run is `running`: inserted on start, removed on
completion, failure or cancellation.

Two logical actors touch an entry: the run itself (start, stage updates,
complete) and an out-of-band cancel request. All access goes through one
lock; no operation spans more than one run id.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from src.executor.guard import CancellationToken

logger = logging.getLogger(__name__)

# Entries older than this are considered abandoned
STALE_RUN_SECONDS = 30 * 60


class DuplicateRunError(ValueError):
    """Raised when starting a run id that is already in flight."""


@dataclass
class RunEntry:
    run_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = 0.0
    active_stage: Optional[int] = None

    @property
    def cancel_requested(self) -> bool:
        return self.token.cancelled


class RunRegistry:
    """Concurrency-safe map of in-flight runs, injected into the runner."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, RunEntry] = {}
        self._lock = threading.Lock()

    def start(self, run_id: str) -> RunEntry:
        """Register a run and create its cancellation token.

        Raises:
            DuplicateRunError: If `run_id` is already registered
        """
        with self._lock:
            if run_id in self._entries:
                raise DuplicateRunError(f"Run {run_id} is already in progress")
            entry = RunEntry(run_id=run_id, started_at=self._clock())
            self._entries[run_id] = entry
        logger.info(f"Registered run {run_id}")
        return entry

    def request_cancel(self, run_id: str) -> bool:
        """Request cancellation. Unknown or finished runs are a no-op (False)."""
        with self._lock:
            entry = self._entries.get(run_id)
        if entry is None:
            logger.info(f"Cancel requested for unknown or finished run {run_id}, ignoring")
            return False
        entry.token.cancel()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
        return entry is not None and entry.token.cancelled

    def set_active_stage(self, run_id: str, stage_number: int) -> None:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is not None:
                entry.active_stage = stage_number

    def complete(self, run_id: str) -> None:
        """Remove a run's entry once it reaches a terminal state."""
        with self._lock:
            removed = self._entries.pop(run_id, None)
        if removed is not None:
            logger.info(f"Unregistered run {run_id}")

    def get(self, run_id: str) -> Optional[RunEntry]:
        with self._lock:
            return self._entries.get(run_id)

    def __contains__(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def active_runs(self) -> list[dict]:
        """Snapshot of in-flight runs for status endpoints."""
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        return [
            {
                "run_id": entry.run_id,
                "started_at": entry.started_at,
                "active_stage": entry.active_stage,
                "elapsed_seconds": round(now - entry.started_at, 1),
                "cancel_requested": entry.cancel_requested,
            }
            for entry in entries
        ]

    def cleanup_stale(self, max_age_seconds: float = STALE_RUN_SECONDS) -> int:
        """Cancel and drop entries older than `max_age_seconds`.

        Returns the number of entries removed.
        """
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [e for e in self._entries.values() if e.started_at < cutoff]
            for entry in stale:
                del self._entries[entry.run_id]

        for entry in stale:
            entry.token.cancel()
            logger.warning(
                f"Removed stale run {entry.run_id} "
                f"(stage {entry.active_stage}, started {self._clock() - entry.started_at:.0f}s ago)"
            )
        return len(stale)
