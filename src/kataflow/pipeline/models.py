"""Pipeline definitions: an ordered list of step references plus runtime state."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from kataflow.schemas import new_id, utc_now

PipelineType = Literal["vertical", "bug-fix", "polish", "spike", "cooldown", "custom"]
PipelineState = Literal["draft", "active", "paused", "complete", "abandoned"]
PipelineStageStatus = Literal["pending", "active", "skipped", "complete", "failed"]


class StageRef(BaseModel):
    type: str = Field(min_length=1)
    flavor: str | None = None


class PipelineArtifact(BaseModel):
    name: str = Field(min_length=1)
    path: str | None = None
    produced_at: str = Field(default_factory=utc_now)


class PipelineStage(BaseModel):
    stage_ref: StageRef
    state: PipelineStageStatus = "pending"
    artifacts: list[PipelineArtifact] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    # Set by a human approval; read by human-approved gate conditions.
    human_approved_at: str | None = None


class PipelineMetadata(BaseModel):
    project_ref: str | None = None
    issue_refs: list[str] = Field(default_factory=list)
    bet_id: str | None = None
    cycle_id: str | None = None


class Pipeline(BaseModel):
    """A persisted pipeline. ``current_stage_index`` is where a rerun resumes."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    type: PipelineType = "custom"
    stages: list[PipelineStage] = Field(min_length=1)
    state: PipelineState = "draft"
    current_stage_index: int = Field(default=0, ge=0)
    metadata: PipelineMetadata = Field(default_factory=PipelineMetadata)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()
