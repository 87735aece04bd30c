"""Authored definitions: gates, steps, flavors, vocabularies, and stage rules.

These are loaded from YAML/JSON files by the registries and are read-only
during a run.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, model_validator

StageCategory = Literal["research", "plan", "build", "review"]
STAGE_CATEGORIES: tuple[str, ...] = get_args(StageCategory)

GateConditionType = Literal[
    "artifact-exists",
    "schema-valid",
    "human-approved",
    "predecessor-complete",
    "command-passes",
]
SynthesisApproach = Literal["merge-all", "cascade", "first-wins"]


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


class GateCondition(BaseModel):
    """A single typed precondition or postcondition."""

    type: GateConditionType
    description: str | None = None
    artifact_name: str | None = None
    source_stage: str | None = None
    predecessor_type: str | None = None
    command: str | None = None


class Gate(BaseModel):
    type: Literal["entry", "exit"]
    conditions: list[GateCondition] = Field(default_factory=list)
    required: bool = True


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class Artifact(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    schema_id: str | None = None
    required: bool = True
    extension: str | None = None


class StepTool(BaseModel):
    name: str = Field(min_length=1)
    purpose: str = Field(min_length=1)
    command: str | None = None


class StepAgentHint(BaseModel):
    name: str = Field(min_length=1)
    when: str | None = None


class StepResources(BaseModel):
    """Tool/agent/skill hints rendered into the ``Suggested Resources`` prompt section."""

    tools: list[StepTool] = Field(default_factory=list)
    agents: list[StepAgentHint] = Field(default_factory=list)
    skills: list[StepAgentHint] = Field(default_factory=list)


class Step(BaseModel):
    """An atomic unit of work, delegated to an execution adapter."""

    type: str = Field(min_length=1)
    flavor: str | None = None
    stage_category: StageCategory | None = None
    description: str | None = None
    entry_gate: Gate | None = None
    exit_gate: Gate | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    prompt_template: str | None = None
    learning_hooks: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    resources: StepResources | None = None


# ---------------------------------------------------------------------------
# Flavors
# ---------------------------------------------------------------------------


class FlavorStepRef(BaseModel):
    step_name: str = Field(min_length=1)
    step_type: str = Field(min_length=1)


class FlavorStepOverride(BaseModel):
    prompt_template: str | None = None
    resources: StepResources | None = None


class Flavor(BaseModel):
    """A named strategy for a stage: an ordered list of step references."""

    name: str = Field(min_length=1)
    description: str | None = None
    stage_category: StageCategory
    steps: list[FlavorStepRef] = Field(min_length=1)
    overrides: dict[str, FlavorStepOverride] = Field(default_factory=dict)
    resources: StepResources | None = None
    synthesis_artifact: str = Field(min_length=1)
    isolation: Literal["shared", "worktree"] = "shared"

    @model_validator(mode="after")
    def _unique_step_names(self) -> Flavor:
        names = [ref.step_name for ref in self.steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate step names in flavor: {', '.join(duplicates)}")
        return self


# ---------------------------------------------------------------------------
# Vocabulary and rules
# ---------------------------------------------------------------------------


class BoostRule(BaseModel):
    artifact_pattern: str = Field(min_length=1)
    magnitude: float = Field(ge=0.0, le=1.0)


class StageVocabulary(BaseModel):
    """Keywords and synthesis preferences that drive flavor scoring for a category."""

    category: StageCategory
    keywords: list[str] = Field(min_length=1)
    boost_rules: list[BoostRule] = Field(default_factory=list)
    synthesis_preference: SynthesisApproach = "merge-all"
    synthesis_alternatives: list[SynthesisApproach] = Field(
        default_factory=lambda: ["merge-all", "first-wins", "cascade"]
    )
    reasoning_template: str | None = None


class StageRule(BaseModel):
    """A learned or user-authored rule that adjusts flavor selection."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: StageCategory
    name: str = Field(min_length=1)
    condition: str = Field(min_length=1)
    effect: Literal["boost", "penalize", "require", "exclude"]
    magnitude: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: Literal["auto-detected", "user", "imported"] = "user"
    evidence: list[str] = Field(default_factory=list)
    created_at: str = Field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat()
    )
