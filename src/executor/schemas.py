"""Pipeline-side schemas for run lifecycle, stage outcomes, and progress.

RunRecord and StageOutcome describe what happened during a run and are
what the history store persists. The *Event models are the progress
stream: one model per event type, serialized in emission order.
"""

import os
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.llm.factory import ExecutionMode

MAX_STAGES = 5
MIN_LEADS_LENGTH = 10
MAX_LEADS_LENGTH = 50_000

_mode_env = os.environ.get("PIPELINE_DEFAULT_MODE", ExecutionMode.FAST.value)
DEFAULT_MODE = _mode_env if _mode_env in {m.value for m in ExecutionMode} else ExecutionMode.FAST.value


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


class RunStatus(str, Enum):
    """Run lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class RunStateError(RuntimeError):
    """Raised on an illegal mutation of a RunRecord."""


class StageOutcome(BaseModel):
    """Result of one stage within a run."""

    stage_number: int = Field(ge=1, le=MAX_STAGES)
    stage_name: str = ""
    success: bool
    output: Any = Field(default=None, description="Parsed stage output, opaque to the engine")
    provider: Optional[str] = None
    model_used: str = ""
    duration_ms: int = 0
    cost_usd: float = 0.0
    tokens_used: Optional[int] = None
    validated: bool = False
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    attempts: list[dict] = Field(
        default_factory=list,
        description="FallbackAttempt diagnostics for the winning stage attempt",
    )

    def summary(self) -> dict:
        """Compact view for progress events and history listings."""
        return {
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "success": self.success,
            "provider": self.provider,
            "validated": self.validated,
            "error": self.error_detail,
        }


class RunRecord(BaseModel):
    """Full state of one pipeline run.

    Mutated only by the runner that owns it. Outcomes are append-only in
    strictly increasing stage order, and the record is frozen once its
    status leaves `running`.
    """

    run_id: str = Field(default_factory=new_run_id)
    mode: str = DEFAULT_MODE
    status: RunStatus = RunStatus.PENDING
    outcomes: list[StageOutcome] = Field(default_factory=list)
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    error: Optional[str] = None
    input_summary: str = ""
    created_at: str = Field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self) -> None:
        if self.status != RunStatus.PENDING:
            raise RunStateError(f"Run {self.run_id} cannot start from status {self.status.value}")
        self.status = RunStatus.RUNNING
        self.started_at = _now_iso()

    def add_outcome(self, outcome: StageOutcome) -> None:
        if self.status != RunStatus.RUNNING:
            raise RunStateError(f"Run {self.run_id} is {self.status.value}, cannot record stage outcomes")
        if len(self.outcomes) >= MAX_STAGES:
            raise RunStateError(f"Run {self.run_id} already has {MAX_STAGES} stage outcomes")
        if self.outcomes and outcome.stage_number <= self.outcomes[-1].stage_number:
            raise RunStateError(
                f"Run {self.run_id}: stage {outcome.stage_number} recorded after "
                f"stage {self.outcomes[-1].stage_number}"
            )
        self.outcomes.append(outcome)
        self.total_cost_usd += outcome.cost_usd

    def finish(self, status: RunStatus, total_duration_ms: int, error: Optional[str] = None) -> None:
        if status not in TERMINAL_STATUSES:
            raise RunStateError(f"{status.value} is not a terminal status")
        if self.is_terminal:
            raise RunStateError(f"Run {self.run_id} already finished as {self.status.value}")
        self.status = status
        self.total_duration_ms = total_duration_ms
        self.error = error
        self.completed_at = _now_iso()

    def results(self) -> dict[str, Any]:
        """Stage outputs keyed `stage1`..`stage5`."""
        return {f"stage{o.stage_number}": o.output for o in self.outcomes}


class StartRunRequest(BaseModel):
    """Request to run the five-stage pipeline."""

    leads: str = Field(
        min_length=MIN_LEADS_LENGTH,
        max_length=MAX_LEADS_LENGTH,
        description="Raw lead data fed to stage 1",
    )
    mode: ExecutionMode = Field(
        default=ExecutionMode(DEFAULT_MODE),
        description="Execution mode; selects the provider priority order",
    )
    run_id: Optional[str] = Field(
        default=None,
        description="Client-chosen run id (generated when omitted)",
    )


class CancelRunRequest(BaseModel):
    run_id: str


class CancelRunResponse(BaseModel):
    run_id: str
    cancelled: bool
    message: str = ""


# --- Progress events ---


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class RunStartedEvent(_Event):
    type: Literal["run_started"] = "run_started"
    run_id: str
    mode: str


class StageStartEvent(_Event):
    type: Literal["stage_start"] = "stage_start"
    stage_number: int
    stage_name: str = ""


class StageCompleteEvent(_Event):
    type: Literal["stage_complete"] = "stage_complete"
    stage_number: int
    success: bool
    duration_ms: int
    cost_usd: float
    total_cost_usd: float
    result_summary: dict = Field(default_factory=dict)


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    cancelled: bool = False
    stage_number: Optional[int] = None


class PipelineCompleteEvent(_Event):
    type: Literal["pipeline_complete"] = "pipeline_complete"
    run_id: str
    total_duration_ms: int
    total_cost_usd: float
    results: dict[str, Any] = Field(default_factory=dict)


ProgressEvent = Union[
    RunStartedEvent,
    StageStartEvent,
    StageCompleteEvent,
    ErrorEvent,
    PipelineCompleteEvent,
]

TERMINAL_EVENT_TYPES = frozenset({"pipeline_complete", "error"})
