"""Sequential pipeline execution with entry/exit gates.

Usage::

    from kataflow.pipeline import PipelineRunner, PipelineStore

    pipelines = PipelineStore(kata_dir / "pipelines")
    runner = PipelineRunner(
        step_registry=steps,
        knowledge_store=knowledge,
        adapter_resolver=AdapterResolver(config),
        result_capturer=ResultCapturer(kata_dir),
        token_tracker=TokenTracker(kata_dir),
        persist_pipeline=pipelines.save,
    )
    result = runner.run(pipelines.load(pipeline_id))
"""

from kataflow.pipeline.models import (
    Pipeline,
    PipelineArtifact,
    PipelineMetadata,
    PipelineStage,
    StageRef,
)
from kataflow.pipeline.runner import MAX_GATE_RETRIES, PipelineHooks, PipelineResult, PipelineRunner
from kataflow.pipeline.store import PipelineStore

__all__ = [
    "MAX_GATE_RETRIES",
    "Pipeline",
    "PipelineArtifact",
    "PipelineHooks",
    "PipelineMetadata",
    "PipelineResult",
    "PipelineRunner",
    "PipelineStage",
    "PipelineStore",
    "StageRef",
]
