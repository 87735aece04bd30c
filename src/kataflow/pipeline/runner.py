"""Pipeline Runner: the sequential stage loop with gates, history and learnings.

For each stage from ``pipeline.current_stage_index`` on:

1. mark the stage active and persist the pipeline
2. look up the step definition
3. evaluate the entry gate (with override/retry)
4. load stage and subscription learnings
5. resolve a file-reference prompt template
6. build the manifest and execute it through the resolved adapter
7. capture history and token usage (best effort)
8. evaluate the exit gate with the freshly produced artifacts
9. optionally capture a learning
10. mark the stage complete and persist the pipeline

Stages already complete or skipped are never run again. A crash marks the
stage failed and the pipeline abandoned; rerunning the same pipeline resumes
at the first stage that has not finished.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from kataflow.adapters.base import ExecutionAdapter
from kataflow.config import KataConfig
from kataflow.definitions import Gate, Step
from kataflow.errors import KataError, RefResolutionError
from kataflow.file_io import exclusive_lease
from kataflow.gates import GateEvalContext, GateResult, evaluate_gate
from kataflow.history import ResultCapturer, TokenTracker
from kataflow.knowledge import KnowledgeStore
from kataflow.manifest import ManifestBuilder, is_template_ref, resolve_ref
from kataflow.pipeline.models import Pipeline, PipelineArtifact
from kataflow.schemas import (
    ExecutionContext,
    ExecutionHistoryEntry,
    ExecutionResult,
    Learning,
    LearningEvidence,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_GATE_RETRIES = 3
DEFAULT_SUBSCRIBER = "default"

GateAction = Literal["proceed", "skip", "abort"]
OverrideAction = Literal["retry", "skip", "abort"]


class StepLookup(Protocol):
    def get(self, step_type: str, flavor: str | None = None) -> Step: ...


class AdapterLookup(Protocol):
    def resolve(self, name: str | None = None) -> ExecutionAdapter: ...


@dataclass
class PipelineHooks:
    """Optional callbacks. Errors raised inside a hook are logged and ignored."""

    on_stage_start: Callable[[str, int], None] | None = None
    on_stage_complete: Callable[[str, int], None] | None = None
    on_stage_fail: Callable[[str, int, BaseException], None] | None = None
    on_gate_result: Callable[[Gate, GateResult, GateAction], None] | None = None
    gate_override: Callable[[GateResult], OverrideAction] | None = None
    capture_learning: Callable[[str], str | None] | None = None


@dataclass
class PipelineResult:
    pipeline_id: str
    success: bool
    stages_completed: int
    stages_total: int
    history_ids: list[str] = field(default_factory=list)
    aborted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PipelineRunner:
    """Run a :class:`Pipeline` from its current stage to completion.

    Parameters
    ----------
    step_registry:
        Resolves ``stage_ref.type``/``stage_ref.flavor`` to a :class:`Step`.
    knowledge_store:
        Source of injected learnings and sink for captured ones.
    adapter_resolver:
        Returns the execution adapter for a stage.
    result_capturer, token_tracker:
        History and token-usage sinks.
    persist_pipeline:
        Called with the pipeline after every state change.
    stages_dir:
        Base directory for file-reference prompt templates. Without it
        templates are passed through untouched.
    yolo:
        Bypass every gate check (logged as a warning).
    hooks:
        Lifecycle callbacks and the interactive gate override.
    lock_dir:
        When given, ``<lock_dir>/<pipeline_id>.lock`` is held as an exclusive
        lease for the duration of :meth:`run`.
    """

    def __init__(
        self,
        step_registry: StepLookup,
        knowledge_store: KnowledgeStore,
        adapter_resolver: AdapterLookup,
        result_capturer: ResultCapturer,
        token_tracker: TokenTracker,
        persist_pipeline: Callable[[Pipeline], Any],
        *,
        stages_dir: str | Path | None = None,
        yolo: bool = False,
        hooks: PipelineHooks | None = None,
        lock_dir: str | Path | None = None,
    ) -> None:
        self.step_registry = step_registry
        self.knowledge_store = knowledge_store
        self.adapter_resolver = adapter_resolver
        self.result_capturer = result_capturer
        self.token_tracker = token_tracker
        self.persist_pipeline = persist_pipeline
        self.stages_dir = Path(stages_dir) if stages_dir else None
        self.yolo = yolo
        self.hooks = hooks or PipelineHooks()
        self.lock_dir = Path(lock_dir) if lock_dir else None

    def _lease(self, pipeline: Pipeline) -> AbstractContextManager[None]:
        if self.lock_dir is None:
            return nullcontext()
        return exclusive_lease(self.lock_dir / f"{pipeline.id}.lock")

    def run(self, pipeline: Pipeline, config: KataConfig | None = None) -> PipelineResult:
        with self._lease(pipeline):
            return self._run(pipeline, config)

    def _run(self, pipeline: Pipeline, config: KataConfig | None) -> PipelineResult:
        history_ids: list[str] = []
        stages_completed = 0
        aborted_at: int | None = None
        adapter_name = config.execution.adapter if config is not None else None

        if self.yolo:
            logger.warning("YOLO mode enabled: all gate checks are bypassed")

        pipeline.state = "active"
        pipeline.touch()
        self.persist_pipeline(pipeline)
        logger.info(
            'Running pipeline "%s" (%s) from stage %d/%d',
            pipeline.name,
            pipeline.id,
            pipeline.current_stage_index + 1,
            len(pipeline.stages),
        )

        for i in range(pipeline.current_stage_index, len(pipeline.stages)):
            stage = pipeline.stages[i]
            stage_type = stage.stage_ref.type
            if stage.state in ("complete", "skipped"):
                logger.info('Stage %d "%s" already %s; not running it again', i, stage_type, stage.state)
                continue
            try:
                stage.state = "active"
                stage.started_at = utc_now()
                pipeline.current_stage_index = i
                pipeline.touch()
                self.persist_pipeline(pipeline)

                step = self.step_registry.get(stage_type, stage.stage_ref.flavor)
                self._fire("on_stage_start", stage_type, i)

                action: GateAction = "proceed"
                if step.entry_gate is not None:
                    action = self._evaluate_gate_with_retry(step.entry_gate, self._gate_context(pipeline, i))
                if action != "proceed":
                    if action == "abort":
                        aborted_at = i
                    self._finish_gated(pipeline, i, action)
                    if action == "abort":
                        break
                    continue

                learnings = self._load_learnings(step)
                resolved_step = self._resolve_prompt_template(step)
                manifest = ManifestBuilder.build(
                    resolved_step,
                    ExecutionContext(
                        pipeline_id=pipeline.id,
                        stage_index=i,
                        metadata=pipeline.metadata.model_dump(mode="json"),
                    ),
                    learnings,
                )
                adapter = self.adapter_resolver.resolve(adapter_name)
                started_at = utc_now()
                result = adapter.execute(manifest)
                logger.info(
                    'Stage %d "%s" executed by %s (success=%s)', i, stage_type, adapter.name, result.success
                )

                entry = self._record_history(
                    pipeline_id=pipeline.id,
                    stage_type=stage_type,
                    stage_flavor=stage.stage_ref.flavor,
                    stage_index=i,
                    adapter_name=adapter.name,
                    result=result,
                    cycle_id=pipeline.metadata.cycle_id,
                    bet_id=pipeline.metadata.bet_id,
                    started_at=started_at,
                    entry_gate_passed=True if step.entry_gate is not None else None,
                    learning_ids=[learning.id for learning in learnings],
                )
                if entry is not None:
                    history_ids.append(entry.id)
                if result.token_usage is not None:
                    self._record_usage(f"{pipeline.id}:{i}", result, pipeline.metadata.bet_id)

                if step.exit_gate is not None:
                    exit_context = self._gate_context(pipeline, i, [a.name for a in result.artifacts])
                    action = self._evaluate_gate_with_retry(step.exit_gate, exit_context)
                    if entry is not None:
                        entry.exit_gate_passed = action == "proceed"
                        self._update_history(entry)
                    if action != "proceed":
                        if action == "abort":
                            aborted_at = i
                        self._finish_gated(pipeline, i, action)
                        if action == "abort":
                            break
                        continue

                self._capture_learning(pipeline, stage_type)

                stage.state = "complete"
                stage.completed_at = utc_now()
                if result.artifacts:
                    stage.artifacts = [
                        PipelineArtifact(name=a.name, path=a.path, produced_at=utc_now()) for a in result.artifacts
                    ]
                stages_completed += 1
                pipeline.touch()
                self.persist_pipeline(pipeline)
                self._fire("on_stage_complete", stage_type, i)
            except Exception as exc:
                stage.state = "failed"
                stage.completed_at = utc_now()
                pipeline.state = "abandoned"
                pipeline.touch()
                try:
                    self.persist_pipeline(pipeline)
                except Exception as persist_exc:
                    logger.error(
                        "Failed to persist abandoned pipeline %s; file may be inconsistent: %s",
                        pipeline.id,
                        persist_exc,
                    )
                self._fire("on_stage_fail", stage_type, i, exc)
                raise

        if aborted_at is None and all(s.state in ("complete", "skipped") for s in pipeline.stages):
            pipeline.state = "complete"
        pipeline.touch()
        self.persist_pipeline(pipeline)

        result = PipelineResult(
            pipeline_id=pipeline.id,
            success=aborted_at is None,
            stages_completed=stages_completed,
            stages_total=len(pipeline.stages),
            history_ids=history_ids,
            aborted_at=aborted_at,
        )
        logger.info(
            "Pipeline %s finished: %s (%d/%d stages completed)",
            pipeline.id,
            pipeline.state,
            stages_completed,
            len(pipeline.stages),
        )
        return result

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _gate_context(
        self,
        pipeline: Pipeline,
        index: int,
        additional_artifacts: list[str] | None = None,
    ) -> GateEvalContext:
        completed: list[str] = []
        artifacts: list[str] = []
        for prev in pipeline.stages[:index]:
            if prev.state == "complete":
                completed.append(prev.stage_ref.type)
                artifacts.extend(a.name for a in prev.artifacts)
        artifacts.extend(additional_artifacts or [])
        return GateEvalContext(
            available_artifacts=artifacts,
            completed_stages=completed,
            human_approved=pipeline.stages[index].human_approved_at is not None,
        )

    def _evaluate_gate_with_retry(self, gate: Gate, context: GateEvalContext) -> GateAction:
        if self.yolo:
            logger.warning(
                "Gate bypassed (yolo mode): %s gate with %d condition(s)", gate.type, len(gate.conditions)
            )
            return "proceed"

        last_result: GateResult | None = None
        for attempt in range(MAX_GATE_RETRIES + 1):
            result = evaluate_gate(gate, context)
            last_result = result
            if result.passed:
                self._fire("on_gate_result", gate, result, "proceed")
                return "proceed"

            override = self._gate_override(result)
            logger.info(
                "%s gate failed (attempt %d/%d): %s",
                gate.type,
                attempt + 1,
                MAX_GATE_RETRIES + 1,
                override,
            )
            if override in ("skip", "abort"):
                self._fire("on_gate_result", gate, result, override)
                return override

        if last_result is not None:
            self._fire("on_gate_result", gate, last_result, "abort")
        return "abort"

    def _gate_override(self, result: GateResult) -> OverrideAction:
        if self.hooks.gate_override is None:
            return "abort"
        return self.hooks.gate_override(result)

    def _finish_gated(self, pipeline: Pipeline, index: int, action: GateAction) -> None:
        stage = pipeline.stages[index]
        stage.completed_at = utc_now()
        if action == "skip":
            stage.state = "skipped"
        else:
            stage.state = "failed"
            pipeline.state = "abandoned"
            logger.warning('Pipeline %s aborted at stage %d "%s"', pipeline.id, index, stage.stage_ref.type)
        pipeline.touch()
        self.persist_pipeline(pipeline)

    # ------------------------------------------------------------------
    # Learnings / prompts
    # ------------------------------------------------------------------

    def _load_learnings(self, step: Step) -> list[Learning]:
        stage_learnings = self.knowledge_store.load_for_stage(step.type)
        subscribed = self.knowledge_store.load_for_subscriptions(DEFAULT_SUBSCRIBER)
        seen = {learning.id for learning in stage_learnings}
        return [*stage_learnings, *(learning for learning in subscribed if learning.id not in seen)]

    def _resolve_prompt_template(self, step: Step) -> Step:
        template = step.prompt_template
        if not template or self.stages_dir is None or not is_template_ref(template):
            return step
        try:
            return step.model_copy(update={"prompt_template": resolve_ref(template, self.stages_dir)})
        except RefResolutionError as exc:
            logger.warning('Could not resolve prompt template "%s": %s', template, exc)
            return step

    def _capture_learning(self, pipeline: Pipeline, stage_type: str) -> None:
        if self.hooks.capture_learning is None:
            return
        try:
            content = self.hooks.capture_learning(stage_type)
            if content:
                self.knowledge_store.capture(
                    tier="stage",
                    category=stage_type,
                    content=content,
                    confidence=0.5,
                    stage_type=stage_type,
                    evidence=[
                        LearningEvidence(pipeline_id=pipeline.id, stage_type=stage_type, observation=content)
                    ],
                )
        except Exception as exc:
            logger.warning('Learning capture failed for stage "%s"; continuing pipeline: %s', stage_type, exc)

    # ------------------------------------------------------------------
    # History / usage (best effort once the adapter has run)
    # ------------------------------------------------------------------

    def _record_history(self, **fields: Any) -> ExecutionHistoryEntry | None:
        try:
            return self.result_capturer.capture(**fields)
        except (KataError, OSError) as exc:
            logger.warning(
                'Could not record history for stage %d "%s": %s', fields["stage_index"], fields["stage_type"], exc
            )
            return None

    def _update_history(self, entry: ExecutionHistoryEntry) -> None:
        try:
            self.result_capturer.update(entry)
        except (KataError, OSError) as exc:
            logger.warning("Could not update history entry %s: %s", entry.id, exc)

    def _record_usage(self, key: str, result: ExecutionResult, bet_id: str | None) -> None:
        try:
            self.token_tracker.record_usage(key, result.token_usage, bet_id=bet_id)
        except (KataError, OSError) as exc:
            logger.warning("Could not record token usage for %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _fire(self, hook_name: str, *args: Any) -> None:
        hook = getattr(self.hooks, hook_name)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as exc:
            logger.warning("Lifecycle hook %s raised (ignored): %s", hook_name, exc)
