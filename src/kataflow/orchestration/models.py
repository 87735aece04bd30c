"""Inputs and results exchanged between orchestrators and flavor executors."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from kataflow.definitions import StageCategory
from kataflow.schemas import DecisionEntry, ExecutionMode

ReflectionQuality = Literal["good", "partial", "poor"]


class OrchestratorConfig(BaseModel):
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_parallel_flavors: int = Field(default=3, ge=1)


class Stage(BaseModel):
    """One stage to orchestrate: which flavors may run and under what limits."""

    category: StageCategory
    available_flavors: list[str] = Field(default_factory=list)
    pinned_flavors: list[str] = Field(default_factory=list)
    excluded_flavors: list[str] = Field(default_factory=list)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)


class OrchestratorContext(BaseModel):
    available_artifacts: list[str] = Field(default_factory=list)
    bet: dict[str, Any] | None = None
    learnings: list[str] = Field(default_factory=list)


@dataclass
class ArtifactValue:
    name: str
    value: Any = None


@dataclass
class FlavorExecutionResult:
    flavor_name: str
    artifacts: dict[str, Any] = field(default_factory=dict)
    synthesis_artifact: ArtifactValue | None = None


@dataclass
class CapabilityProfile:
    stage_category: str
    available_artifacts: list[str] = field(default_factory=list)
    active_rules: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)
    bet_context: dict[str, Any] | None = None


@dataclass
class MatchReport:
    flavor_name: str
    score: float
    keyword_hits: int = 0
    rule_adjustments: float = 0.0
    learning_boost: float = 0.0
    reasoning: str = ""


@dataclass
class ReflectionResult:
    overall_quality: ReflectionQuality
    decision_outcomes: list[dict[str, Any]] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)


@dataclass
class OrchestratorResult:
    """Everything a single stage pass produced, in phase order."""

    stage_category: str
    selected_flavors: list[str]
    decisions: list[DecisionEntry]
    flavor_results: list[FlavorExecutionResult]
    stage_artifact: ArtifactValue
    execution_mode: ExecutionMode
    capability_profile: CapabilityProfile
    match_reports: list[MatchReport]
    reflection: ReflectionResult

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["decisions"] = [d.model_dump(mode="json") for d in self.decisions]
        return payload


@dataclass
class PipelineOrchestrationResult:
    stage_results: list[OrchestratorResult]
    pipeline_reflection: ReflectionResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_results": [r.to_dict() for r in self.stage_results],
            "pipeline_reflection": asdict(self.pipeline_reflection),
        }
