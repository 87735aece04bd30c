"""Observation and reflection records, plus the scope they are logged at.

Both are tagged unions keyed on ``type``. Observations are raw signals captured
during a run; reflections are derived verdicts (e.g. whether a prediction came
true). Each is stored in the append-only log of exactly one scope: the run, a
stage, a flavor, or a step.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from kataflow.definitions import StageCategory
from kataflow.schemas import new_id, utc_now

# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


class _ObservationBase(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: str = Field(default_factory=utc_now)
    content: str = Field(min_length=1)
    kataka_id: str | None = None


class DecisionObservation(_ObservationBase):
    type: Literal["decision"] = "decision"


class OutcomeObservation(_ObservationBase):
    type: Literal["outcome"] = "outcome"


class AssumptionObservation(_ObservationBase):
    type: Literal["assumption"] = "assumption"


class InsightObservation(_ObservationBase):
    type: Literal["insight"] = "insight"


class QuantitativePrediction(BaseModel):
    metric: str = Field(min_length=1)
    predicted: float
    unit: str | None = None


class QualitativePrediction(BaseModel):
    expected: str = Field(min_length=1)


class PredictionObservation(_ObservationBase):
    type: Literal["prediction"] = "prediction"
    quantitative: QuantitativePrediction | None = None
    qualitative: QualitativePrediction | None = None
    timeframe: str | None = None


FrictionTaxonomy = Literal[
    "stale-learning",
    "config-drift",
    "convention-clash",
    "tool-mismatch",
    "scope-creep",
]


class FrictionObservation(_ObservationBase):
    type: Literal["friction"] = "friction"
    taxonomy: FrictionTaxonomy
    contradicts: str | None = None


class GapObservation(_ObservationBase):
    type: Literal["gap"] = "gap"
    severity: Literal["critical", "major", "minor"]


Observation = Annotated[
    Union[
        DecisionObservation,
        PredictionObservation,
        FrictionObservation,
        GapObservation,
        OutcomeObservation,
        AssumptionObservation,
        InsightObservation,
    ],
    Field(discriminator="type"),
]
ObservationAdapter: TypeAdapter = TypeAdapter(Observation)


# ---------------------------------------------------------------------------
# Reflections
# ---------------------------------------------------------------------------


class _ReflectionBase(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: str = Field(default_factory=utc_now)
    observation_ids: list[str] = Field(default_factory=list)


class CalibrationReflection(_ReflectionBase):
    type: Literal["calibration"] = "calibration"
    domain: str = Field(min_length=1)
    kataka_id: str | None = None
    total_predictions: int = Field(ge=0)
    correct_predictions: int = Field(ge=0)
    accuracy_rate: float = Field(ge=0.0, le=1.0)
    bias: Literal["overconfident", "underconfident", "accurate"]


class ValidationReflection(_ReflectionBase):
    type: Literal["validation"] = "validation"
    prediction_id: str
    outcome_id: str
    correct: bool
    notes: str | None = None


class ResolutionReflection(_ReflectionBase):
    type: Literal["resolution"] = "resolution"
    friction_id: str
    path: Literal["invalidate", "scope", "synthesize", "escalate"]
    summary: str = Field(min_length=1)


class UnmatchedReflection(_ReflectionBase):
    type: Literal["unmatched"] = "unmatched"
    prediction_id: str
    reason: str = Field(min_length=1)


class SynthesisReflection(_ReflectionBase):
    type: Literal["synthesis"] = "synthesis"
    source_reflection_ids: list[str] = Field(default_factory=list)
    insight: str = Field(min_length=1)


Reflection = Annotated[
    Union[
        CalibrationReflection,
        ValidationReflection,
        ResolutionReflection,
        UnmatchedReflection,
        SynthesisReflection,
    ],
    Field(discriminator="type"),
]
ReflectionAdapter: TypeAdapter = TypeAdapter(Reflection)


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


class RunTarget(BaseModel):
    level: Literal["run"] = "run"


class StageTarget(BaseModel):
    level: Literal["stage"] = "stage"
    category: StageCategory


class FlavorTarget(BaseModel):
    level: Literal["flavor"] = "flavor"
    category: StageCategory
    flavor: str = Field(min_length=1)


class StepTarget(BaseModel):
    level: Literal["step"] = "step"
    category: StageCategory
    flavor: str = Field(min_length=1)
    step: str = Field(min_length=1)


ObservationTarget = Annotated[
    Union[RunTarget, StageTarget, FlavorTarget, StepTarget],
    Field(discriminator="level"),
]


def describe_target(target: RunTarget | StageTarget | FlavorTarget | StepTarget) -> str:
    """Return a short human-readable label such as ``build/tdd/write-tests``."""
    if isinstance(target, StepTarget):
        return f"{target.category}/{target.flavor}/{target.step}"
    if isinstance(target, FlavorTarget):
        return f"{target.category}/{target.flavor}"
    if isinstance(target, StageTarget):
        return target.category
    return "run"
