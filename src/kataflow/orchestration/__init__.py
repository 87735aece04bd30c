"""Stage and multi-stage orchestration."""

from kataflow.orchestration.meta_orchestrator import MetaOrchestrator
from kataflow.orchestration.models import (
    OrchestratorConfig,
    OrchestratorContext,
    OrchestratorResult,
    PipelineOrchestrationResult,
    Stage,
)
from kataflow.orchestration.stage_orchestrator import StageOrchestrator

__all__ = [
    "MetaOrchestrator",
    "OrchestratorConfig",
    "OrchestratorContext",
    "OrchestratorResult",
    "PipelineOrchestrationResult",
    "Stage",
    "StageOrchestrator",
]
