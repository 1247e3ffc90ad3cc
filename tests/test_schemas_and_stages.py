"""Tests for run record invariants, request validation, and stage output handling."""

import json

import pytest
from pydantic import ValidationError

from src.executor.schemas import (
    RunRecord,
    RunStateError,
    RunStatus,
    StageOutcome,
    StartRunRequest,
    StageCompleteEvent,
)
from src.executor.progress import format_sse
from src.executor.stages import (
    DEFAULT_STAGES,
    STAGE_TIMEOUTS,
    StageContext,
    validate_stage_output,
)
from src.llm.client import parse_llm_json_response, parse_stage_output
from src.llm.factory import ExecutionMode


def running_record() -> RunRecord:
    record = RunRecord(run_id="run-x")
    record.mark_running()
    return record


class TestRunRecord:
    def test_outcomes_strictly_increasing(self):
        record = running_record()
        record.add_outcome(StageOutcome(stage_number=1, success=True, cost_usd=0.5))
        record.add_outcome(StageOutcome(stage_number=2, success=True, cost_usd=0.25))

        with pytest.raises(RunStateError):
            record.add_outcome(StageOutcome(stage_number=2, success=True))
        assert record.total_cost_usd == pytest.approx(0.75)

    def test_stage_number_bounds(self):
        with pytest.raises(ValidationError):
            StageOutcome(stage_number=6, success=True)

    def test_immutable_after_terminal(self):
        record = running_record()
        record.finish(RunStatus.FAILED, total_duration_ms=10, error="boom")

        with pytest.raises(RunStateError):
            record.add_outcome(StageOutcome(stage_number=1, success=True))
        with pytest.raises(RunStateError):
            record.finish(RunStatus.COMPLETED, total_duration_ms=20)
        assert record.completed_at is not None

    def test_running_is_not_terminal(self):
        with pytest.raises(RunStateError):
            running_record().finish(RunStatus.RUNNING, total_duration_ms=0)

    def test_round_trips_through_json(self):
        record = running_record()
        record.add_outcome(StageOutcome(stage_number=1, success=True, output={"a": 1}))
        record.finish(RunStatus.COMPLETED, total_duration_ms=5)

        restored = RunRecord.model_validate(json.loads(record.model_dump_json()))
        assert restored.status == RunStatus.COMPLETED
        assert restored.results() == {"stage1": {"a": 1}}


class TestStartRunRequest:
    def test_leads_length_enforced(self):
        with pytest.raises(ValidationError):
            StartRunRequest(leads="short")
        with pytest.raises(ValidationError):
            StartRunRequest(leads="x" * 50_001)

    def test_mode_parsed(self):
        req = StartRunRequest(leads="a" * 20, mode="quality")
        assert req.mode == ExecutionMode.QUALITY

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValidationError):
            StartRunRequest(leads="a" * 20, mode="turbo")


class TestProgressEvents:
    def test_sse_frame(self):
        event = StageCompleteEvent(
            stage_number=2, success=True, duration_ms=10, cost_usd=0.1, total_cost_usd=0.3,
        )
        frame = format_sse(event)
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["type"] == "stage_complete"
        assert payload["stage_number"] == 2


class TestStages:
    def test_five_stages_with_timeouts(self):
        assert [s.number for s in DEFAULT_STAGES] == [1, 2, 3, 4, 5]
        assert [s.timeout for s in DEFAULT_STAGES] == [STAGE_TIMEOUTS[n] for n in range(1, 6)]
        assert [s.allow_soft_failure for s in DEFAULT_STAGES] == [False, False, False, False, True]

    def test_input_builders_use_prior_output(self):
        ctx = StageContext(leads="Jane Doe, Acme", outputs={3: {"handoff_spec": {"integrations": ["Slack"]}}})
        assert "Jane Doe, Acme" in DEFAULT_STAGES[0].build_input(ctx)
        assert "Slack" in DEFAULT_STAGES[3].build_input(ctx)

    def test_fenced_json_validates(self):
        text = 'Here you go:\n```json\n{"pain_points": ["manual routing"]}\n```'
        data, validated = validate_stage_output(DEFAULT_STAGES[0], text)
        assert validated
        assert data == {"pain_points": ["manual routing"]}

    def test_schema_mismatch_is_flagged_not_dropped(self):
        text = json.dumps({"target_pack_primary": [{"name": "Jane", "fit_score": 150}]})
        data, validated = validate_stage_output(DEFAULT_STAGES[0], text)
        assert not validated
        assert data["target_pack_primary"][0]["fit_score"] == 150

    def test_extra_fields_allowed(self):
        _, validated = validate_stage_output(DEFAULT_STAGES[4], json.dumps({"health_score": 80, "notes": "x"}))
        assert validated


class TestParsing:
    def test_strips_code_fences(self):
        assert parse_llm_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_non_json_wrapped(self):
        data, parsed = parse_stage_output("not json at all")
        assert not parsed
        assert data == {"raw_output": "not json at all"}
