"""Durable storage for finished pipeline runs.

The runner hands each terminal RunRecord to a HistoryStore. Two stores
are provided:
- InMemoryHistoryStore: per-process, for tests and ephemeral deployments
- JsonFileHistoryStore: a single JSON file holding the newest runs first,
  capped at MAX_HISTORY_ITEMS

Usage:
    store = JsonFileHistoryStore()
    store.save(record)
    store.list(limit=20)
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from src.executor.schemas import RunRecord, RunStatus

logger = logging.getLogger(__name__)

MAX_HISTORY_ITEMS = 100
HISTORY_PATH = Path(os.environ.get("PIPELINE_HISTORY_PATH", "data/pipeline-history.json"))


@runtime_checkable
class HistoryStore(Protocol):
    """Protocol for run history backends."""

    def save(self, record: RunRecord) -> None: ...

    def get(self, run_id: str) -> Optional[RunRecord]: ...

    def list(self, limit: Optional[int] = None) -> list[RunRecord]: ...

    def delete(self, run_id: str) -> bool: ...

    def summary(self) -> dict: ...


def summarize_runs(runs: list[RunRecord]) -> dict:
    """Aggregate stats over stored runs (success rate in percent)."""
    if not runs:
        return {"total_runs": 0, "success_rate": 0.0, "avg_duration_ms": 0.0, "total_cost_usd": 0.0}

    completed = sum(1 for r in runs if r.status == RunStatus.COMPLETED)
    return {
        "total_runs": len(runs),
        "success_rate": completed / len(runs) * 100,
        "avg_duration_ms": sum(r.total_duration_ms for r in runs) / len(runs),
        "total_cost_usd": sum(r.total_cost_usd for r in runs),
    }


class InMemoryHistoryStore:
    """History kept in a list, newest first."""

    def __init__(self, max_items: int = MAX_HISTORY_ITEMS):
        self._max_items = max_items
        self._runs: list[RunRecord] = []
        self._lock = threading.Lock()

    def save(self, record: RunRecord) -> None:
        snapshot = record.model_copy(deep=True)
        with self._lock:
            self._runs = [r for r in self._runs if r.run_id != record.run_id]
            self._runs.insert(0, snapshot)
            del self._runs[self._max_items:]

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return next((r for r in self._runs if r.run_id == run_id), None)

    def list(self, limit: Optional[int] = None) -> list[RunRecord]:
        with self._lock:
            runs = list(self._runs)
        return runs[:limit] if limit is not None else runs

    def delete(self, run_id: str) -> bool:
        with self._lock:
            before = len(self._runs)
            self._runs = [r for r in self._runs if r.run_id != run_id]
            return len(self._runs) < before

    def summary(self) -> dict:
        return summarize_runs(self.list())


class JsonFileHistoryStore:
    """History persisted as one JSON array on disk, newest first.

    The whole file is rewritten on each save. A missing or unreadable file
    reads as empty history.
    """

    def __init__(self, path: Optional[Path] = None, max_items: int = MAX_HISTORY_ITEMS):
        self._path = Path(path) if path is not None else HISTORY_PATH
        self._max_items = max_items
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> list[RunRecord]:
        if not self._path.exists():
            return []
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            return [RunRecord.model_validate(item) for item in data]
        except Exception as e:
            logger.error(f"Failed to load run history from {self._path}: {e}")
            return []

    def _write(self, runs: list[RunRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump([r.model_dump(mode="json") for r in runs], f, indent=2)

    def save(self, record: RunRecord) -> None:
        with self._lock:
            runs = [r for r in self._load() if r.run_id != record.run_id]
            runs.insert(0, record)
            self._write(runs[: self._max_items])
        logger.info(f"Saved run {record.run_id} to history ({record.status.value})")

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            runs = self._load()
        return next((r for r in runs if r.run_id == run_id), None)

    def list(self, limit: Optional[int] = None) -> list[RunRecord]:
        with self._lock:
            runs = self._load()
        return runs[:limit] if limit is not None else runs

    def delete(self, run_id: str) -> bool:
        with self._lock:
            runs = self._load()
            remaining = [r for r in runs if r.run_id != run_id]
            if len(remaining) == len(runs):
                return False
            self._write(remaining)
        logger.info(f"Deleted run {run_id} from history")
        return True

    def summary(self) -> dict:
        return summarize_runs(self.list())
