"""Pydantic models for run state, the decision ledger, and adapter I/O."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from kataflow.definitions import Artifact, Gate, StageCategory, StepResources

RunStatus = Literal["pending", "running", "completed", "failed"]
StageStatus = Literal["pending", "running", "completed", "failed", "skipped"]
ExecutionMode = Literal["parallel", "sequential"]
OutcomeQuality = Literal["good", "partial", "poor", "unknown"]

KNOWN_DECISION_TYPES: frozenset[str] = frozenset(
    {
        "capability-analysis",
        "flavor-selection",
        "execution-mode",
        "synthesis-approach",
        "retry",
        "confidence-gate",
    }
)


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Run tree
# ---------------------------------------------------------------------------


class Run(BaseModel):
    """One bet's execution through an ordered stage sequence."""

    id: str = Field(default_factory=new_id)
    cycle_id: str
    bet_id: str
    bet_prompt: str = Field(min_length=1)
    kata_pattern: str | None = None
    stage_sequence: list[StageCategory] = Field(min_length=1)
    current_stage: StageCategory | None = None
    status: RunStatus = "pending"
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None


class StageGap(BaseModel):
    description: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"]


class PendingGate(BaseModel):
    gate_id: str = Field(min_length=1)
    gate_type: str = Field(min_length=1)
    required_by: str = "stage"


class ApprovedGate(PendingGate):
    approved_at: str = Field(default_factory=utc_now)
    approver: Literal["human", "agent"] = "human"


class StageState(BaseModel):
    """Persisted state of one stage category inside a run."""

    category: StageCategory
    status: StageStatus = "pending"
    selected_flavors: list[str] = Field(default_factory=list)
    execution_mode: ExecutionMode | None = None
    gaps: list[StageGap] = Field(default_factory=list)
    synthesis_artifact: str | None = None
    decisions: list[str] = Field(default_factory=list)
    pending_gate: PendingGate | None = None
    approved_gates: list[ApprovedGate] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None


class FlavorStepState(BaseModel):
    type: str = Field(min_length=1)
    status: StageStatus = "pending"
    artifacts: list[str] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None


class FlavorState(BaseModel):
    """Persisted state of one selected flavor."""

    name: str = Field(min_length=1)
    stage_category: StageCategory
    status: StageStatus = "pending"
    steps: list[FlavorStepState] = Field(default_factory=list)
    current_step: int | None = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Ledger entries
# ---------------------------------------------------------------------------


class DecisionEntry(BaseModel):
    """An immutable record of a choice made during orchestration."""

    id: str = Field(default_factory=new_id)
    stage_category: StageCategory
    flavor: str | None = None
    step: str | None = None
    decision_type: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    options: list[str] = Field(default_factory=list)
    selection: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    decided_at: str = Field(default_factory=utc_now)
    low_confidence: bool | None = None

    @model_validator(mode="after")
    def _selection_in_options(self) -> DecisionEntry:
        # Empty options are allowed for gap-assessment style decisions.
        if self.options and self.selection not in self.options:
            raise ValueError(
                f"selection {self.selection!r} is not one of options {self.options!r}"
            )
        return self


class DecisionOutcomeEntry(BaseModel):
    """Post-facto outcome appended for a decision; merged by latest ``updated_at``."""

    decision_id: str = Field(min_length=1)
    outcome: OutcomeQuality
    notes: str | None = None
    user_overrides: str | None = None
    updated_at: str = Field(default_factory=utc_now)


class ArtifactIndexEntry(BaseModel):
    """Append-only record of a file produced inside a run."""

    id: str = Field(default_factory=new_id)
    stage_category: StageCategory
    flavor: str | None = None
    step: str | None = None
    file_name: str = Field(min_length=1)
    file_path: str = Field(min_length=1)
    summary: str = ""
    type: Literal["artifact", "synthesis"] = "artifact"
    recorded_at: str = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _artifact_requires_flavor(self) -> ArtifactIndexEntry:
        if self.type == "artifact" and not self.flavor:
            raise ValueError("flavor is required when type is 'artifact'")
        return self


# ---------------------------------------------------------------------------
# Adapter I/O
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class LearningEvidence(BaseModel):
    pipeline_id: str
    stage_type: str
    observation: str
    recorded_at: str = Field(default_factory=utc_now)


class Learning(BaseModel):
    """A learning injected into manifests as extra context."""

    id: str = Field(default_factory=new_id)
    tier: Literal["stage", "category", "agent"]
    category: str = Field(min_length=1)
    content: str = Field(min_length=1)
    evidence: list[LearningEvidence] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    stage_type: str | None = None
    agent_id: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class ExecutionContext(BaseModel):
    pipeline_id: str
    stage_index: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionManifest(BaseModel):
    """Everything an adapter needs to perform one stage or step."""

    stage_type: str = Field(min_length=1)
    stage_flavor: str | None = None
    prompt: str = Field(min_length=1)
    context: ExecutionContext
    entry_gate: Gate | None = None
    exit_gate: Gate | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    learnings: list[Learning] = Field(default_factory=list)
    resources: StepResources | None = None


class ProducedArtifact(BaseModel):
    name: str
    path: str | None = None


class ExecutionResult(BaseModel):
    """What an adapter reports back after ``execute``."""

    success: bool
    artifacts: list[ProducedArtifact] = Field(default_factory=list)
    token_usage: TokenUsage | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    notes: str | None = None
    completed_at: str = Field(default_factory=utc_now)


class ExecutionHistoryEntry(BaseModel):
    """One adapter execution captured under ``history/<id>.json``."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    stage_type: str
    stage_flavor: str | None = None
    stage_index: int = Field(ge=0)
    adapter: str
    token_usage: TokenUsage | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    artifact_names: list[str] = Field(default_factory=list)
    entry_gate_passed: bool | None = None
    exit_gate_passed: bool | None = None
    learning_ids: list[str] = Field(default_factory=list)
    cycle_id: str | None = None
    bet_id: str | None = None
    started_at: str = Field(default_factory=utc_now)
    completed_at: str = Field(default_factory=utc_now)
