"""The five pipeline stages.

Each stage is a StageSpec: a name, a timeout budget, an input builder
that turns the run's leads plus earlier stage outputs into a task for the
providers, and a permissive output schema. Validation is advisory: a
mismatch is logged and flagged, never fatal.

Stage flow:
1. Market Intelligence   - score and segment raw leads
2. Outbound Appointment  - outreach sequences for the target pack
3. Sales Engineer        - discovery brief, proposal, build handoff
4. Systems Delivery      - build plan, workflows, client handoff kit
5. Client Success        - onboarding, weekly wins, expansion map

Stage 5 has no downstream dependents, so its failure is recorded on the
run without failing it.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.executor.retry import RetryPolicy
from src.llm.client import parse_stage_output

logger = logging.getLogger(__name__)

# Seconds per stage attempt; research-heavy stages get less, generation-heavy more
STAGE_TIMEOUTS: dict[int, float] = {1: 120, 2: 120, 3: 180, 4: 180, 5: 180}

# Outer retry around a whole stage, on top of the dispatcher's per-provider retry
STAGE_RETRY_POLICY = RetryPolicy(max_attempts=2, initial_delay=2.0, multiplier=2.0, max_delay=10.0)

# Prior-stage JSON embedded in a prompt is clipped to this many chars
MAX_HANDOFF_CHARS = 12_000


# --- Output schemas (extra fields allowed) ---


class _StageOutput(BaseModel):
    model_config = ConfigDict(extra="allow")


class TargetLead(_StageOutput):
    name: str
    fit_score: float = Field(ge=0, le=100)
    company: Optional[str] = None
    role: Optional[str] = None


class MarketIntelligenceOutput(_StageOutput):
    target_pack_primary: Optional[list[TargetLead]] = None
    qualified_leads: Optional[list[Any]] = None
    shadow_ops: Optional[list[Any]] = None
    pain_points: Optional[list[str]] = None


class OutboundOutput(_StageOutput):
    message_library: Optional[list[Any]] = None
    email_sequences: Optional[list[Any]] = None
    linkedin_messages: Optional[list[Any]] = None
    booked_meetings: Optional[list[Any]] = None


class SalesEngineerOutput(_StageOutput):
    pre_call_briefs: Optional[list[Any]] = None
    proposals: Optional[list[Any]] = None
    discovery_notes: Any = None
    handoff_spec: Any = None


class SystemsDeliveryOutput(_StageOutput):
    build_plan: Any = None
    workflow_specs: Optional[list[Any]] = None
    handoff_kit: Any = None
    sops: Optional[list[Any]] = None


class ClientSuccessOutput(_StageOutput):
    onboarding_plan: Any = None
    weekly_win_report: Any = None
    expansion_map: Any = None
    health_score: Optional[float] = None


# --- Stage context and input builders ---


@dataclass
class StageContext:
    """What an input builder may read: the leads and earlier outputs."""

    leads: str
    outputs: dict[int, Any] = field(default_factory=dict)

    def output_of(self, stage_number: int) -> Any:
        return self.outputs.get(stage_number)


def _handoff(data: Any) -> str:
    if data is None:
        return "{}"
    text = json.dumps(data, indent=2, default=str)
    if len(text) > MAX_HANDOFF_CHARS:
        text = text[:MAX_HANDOFF_CHARS] + "\n... [truncated]"
    return text


_JSON_INSTRUCTION = "Respond with a single JSON object only, no prose before or after it."


def build_market_intelligence_input(ctx: StageContext) -> str:
    return (
        "You are a market intelligence analyst. Score each lead below for fit (0-100), "
        "identify the manual 'shadow ops' work they likely do, and list their pain points.\n\n"
        "Return keys: target_pack_primary (list of {name, fit_score, company, role}), "
        f"qualified_leads, shadow_ops, pain_points.\n{_JSON_INSTRUCTION}\n\n"
        f"## Leads\n{ctx.leads}"
    )


def build_outbound_input(ctx: StageContext) -> str:
    return (
        "You are an outbound appointment setter. Write outreach for the target pack below "
        "across LinkedIn and email, positioned as AI-powered operations automation.\n\n"
        "Return keys: message_library, email_sequences, linkedin_messages, booked_meetings.\n"
        f"{_JSON_INSTRUCTION}\n\n"
        f"## Target pack\n{_handoff(ctx.output_of(1))}"
    )


def build_sales_engineer_input(ctx: StageContext) -> str:
    return (
        "You are a sales engineer. From the outreach results below, prepare pre-call briefs, "
        "a proposal, and a handoff spec for the delivery team (build modules, integrations, risks).\n\n"
        "Return keys: pre_call_briefs, proposals, discovery_notes, handoff_spec.\n"
        f"{_JSON_INSTRUCTION}\n\n"
        f"## Outreach results\n{_handoff(ctx.output_of(2))}"
    )


def build_systems_delivery_input(ctx: StageContext) -> str:
    return (
        "You are a systems delivery lead. Turn the handoff spec below into a build plan, "
        "workflow specs, SOPs, and a client handoff kit with a 5-minute quickstart.\n\n"
        "Return keys: build_plan, workflow_specs, handoff_kit, sops.\n"
        f"{_JSON_INSTRUCTION}\n\n"
        f"## Sales handoff\n{_handoff(ctx.output_of(3))}"
    )


def build_client_success_input(ctx: StageContext) -> str:
    return (
        "You are a client success manager. Using the delivery package below, write the "
        "onboarding plan, the first weekly win report, an expansion map, and a 0-100 health score.\n\n"
        "Return keys: onboarding_plan, weekly_win_report, expansion_map, health_score.\n"
        f"{_JSON_INSTRUCTION}\n\n"
        f"## Delivery package\n{_handoff(ctx.output_of(4))}"
    )


@dataclass(frozen=True)
class StageSpec:
    number: int
    name: str
    build_input: Callable[[StageContext], str]
    output_schema: type[BaseModel]
    timeout: float
    allow_soft_failure: bool = False
    # Fixed per-provider budget; by default the stage timeout is split evenly
    provider_timeout: Optional[float] = None

    def provider_share(self, provider_count: int) -> float:
        """Seconds one provider may spend inside a single stage attempt."""
        if self.provider_timeout is not None:
            return min(self.provider_timeout, self.timeout)
        return self.timeout / max(provider_count, 1)


DEFAULT_STAGES: tuple[StageSpec, ...] = (
    StageSpec(1, "Market Intelligence", build_market_intelligence_input, MarketIntelligenceOutput, STAGE_TIMEOUTS[1]),
    StageSpec(2, "Outbound Appointment", build_outbound_input, OutboundOutput, STAGE_TIMEOUTS[2]),
    StageSpec(3, "Sales Engineer", build_sales_engineer_input, SalesEngineerOutput, STAGE_TIMEOUTS[3]),
    StageSpec(4, "Systems Delivery", build_systems_delivery_input, SystemsDeliveryOutput, STAGE_TIMEOUTS[4]),
    StageSpec(
        5, "Client Success", build_client_success_input, ClientSuccessOutput, STAGE_TIMEOUTS[5],
        allow_soft_failure=True,
    ),
)


def validate_stage_output(spec: StageSpec, raw_text: str) -> tuple[Any, bool]:
    """Parse and validate a stage's raw output.

    Returns (data, validated). Data is always usable downstream: the
    parsed JSON when it parses, else {"raw_output": text}.
    """
    data, parsed = parse_stage_output(raw_text)
    if not parsed:
        logger.warning(f"Stage {spec.number} output is not JSON, passing raw text forward")
        return data, False

    try:
        spec.output_schema.model_validate(data)
    except ValidationError as e:
        issues = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        logger.warning(f"Stage {spec.number} output validation warnings: {issues}")
        return data, False

    return data, True
