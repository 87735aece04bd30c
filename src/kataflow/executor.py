"""Run one flavor's steps, in order, through an execution adapter."""

from __future__ import annotations

import logging
from typing import Protocol

from kataflow.adapters.base import ExecutionAdapter
from kataflow.definitions import Flavor, Step
from kataflow.errors import KataError, StepExecutionError
from kataflow.manifest import ManifestBuilder
from kataflow.orchestration.models import ArtifactValue, FlavorExecutionResult, OrchestratorContext
from kataflow.run_store import RunStore
from kataflow.schemas import (
    ArtifactIndexEntry,
    ExecutionContext,
    ExecutionResult,
    FlavorState,
    FlavorStepState,
    Learning,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class StepLookup(Protocol):
    def get(self, step_type: str, flavor: str | None = None) -> Step: ...


class AdapterLookup(Protocol):
    def resolve(self) -> ExecutionAdapter: ...


def apply_override(step: Step, flavor: Flavor, step_name: str) -> Step:
    """Return *step* with the flavor's per-step prompt/resources override applied."""
    override = flavor.overrides.get(step_name)
    if override is None:
        return step
    update = {}
    if override.prompt_template is not None:
        update["prompt_template"] = override.prompt_template
    if override.resources is not None:
        update["resources"] = override.resources
    return step.model_copy(update=update) if update else step


class StepFlavorExecutor:
    """Bridge between the stage orchestrator and adapters.

    For every step reference of a flavor: resolve the step definition, build
    a manifest, execute it, and collect the produced artifacts. A step that
    reports ``success=False`` stops the flavor with :class:`StepExecutionError`.

    When *run_store* and *run_id* are given, the flavor's progress is written
    to its ``state.json`` after every step and each produced artifact is
    appended to the artifact index in step order.
    """

    def __init__(
        self,
        step_registry: StepLookup,
        adapter_resolver: AdapterLookup,
        run_store: RunStore | None = None,
        run_id: str | None = None,
    ) -> None:
        self.step_registry = step_registry
        self.adapter_resolver = adapter_resolver
        self.run_store = run_store
        self.run_id = run_id

    @property
    def persists(self) -> bool:
        return self.run_store is not None and self.run_id is not None

    def execute(self, flavor: Flavor, context: OrchestratorContext) -> FlavorExecutionResult:
        adapter = self.adapter_resolver.resolve()
        learnings = [
            Learning(tier="stage", category="execution", content=text, confidence=0.7)
            for text in context.learnings
        ]
        correlation_id = self.run_id or new_id()
        state = FlavorState(
            name=flavor.name,
            stage_category=flavor.stage_category,
            status="running",
            steps=[FlavorStepState(type=ref.step_type) for ref in flavor.steps],
            current_step=0,
        )
        self._save_state(state)

        artifacts: dict[str, object] = {}
        last_result: ExecutionResult | None = None
        for index, ref in enumerate(flavor.steps):
            step_state = state.steps[index]
            step_state.status = "running"
            step_state.started_at = utc_now()
            state.current_step = index
            self._save_state(state)

            try:
                step = apply_override(self.step_registry.get(ref.step_type), flavor, ref.step_name)
                manifest = ManifestBuilder.build(
                    step,
                    ExecutionContext(
                        pipeline_id=correlation_id,
                        stage_index=0,
                        metadata={
                            "flavor_name": flavor.name,
                            "step_name": ref.step_name,
                            "bet": context.bet,
                        },
                    ),
                    learnings,
                )
                result = adapter.execute(manifest)
            except Exception:
                self._fail(state, step_state)
                raise
            if not result.success:
                self._fail(state, step_state)
                notes = result.notes or "execution returned success=false"
                raise StepExecutionError(f"Step '{ref.step_name}' in flavor '{flavor.name}' failed: {notes}")

            for artifact in result.artifacts:
                artifacts[artifact.name] = artifact.path if artifact.path else True
                step_state.artifacts.append(self._index_artifact(flavor, ref.step_name, artifact.name, artifact.path))
            step_state.status = "completed"
            step_state.completed_at = utc_now()
            last_result = result
            self._save_state(state)
            logger.debug("Flavor %s: step %s completed", flavor.name, ref.step_name)

        state.status = "completed"
        state.current_step = None
        self._save_state(state)

        if flavor.synthesis_artifact in artifacts:
            value = artifacts[flavor.synthesis_artifact]
        else:
            value = {
                "artifacts": dict(artifacts),
                "completed_at": last_result.completed_at if last_result else utc_now(),
            }
        return FlavorExecutionResult(
            flavor_name=flavor.name,
            artifacts=artifacts,
            synthesis_artifact=ArtifactValue(flavor.synthesis_artifact, value),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save_state(self, state: FlavorState) -> None:
        if self.persists:
            self.run_store.write_flavor_state(self.run_id, state)

    def _fail(self, state: FlavorState, step_state: FlavorStepState) -> None:
        step_state.status = "failed"
        step_state.completed_at = utc_now()
        state.status = "failed"
        try:
            self._save_state(state)
        except (KataError, OSError) as exc:
            logger.warning("Could not persist failed state for flavor %s: %s", state.name, exc)

    def _index_artifact(self, flavor: Flavor, step_name: str, name: str, path: str | None) -> str:
        """Append an artifact-index entry and return the path recorded for the step."""
        if not self.persists:
            return path or name
        paths = self.run_store.paths(self.run_id)
        rel_path = path or str(
            (paths.flavor_artifacts_dir(flavor.stage_category, flavor.name) / name).relative_to(paths.run_dir)
        ).replace("\\", "/")
        try:
            self.run_store.append_artifact_index(
                self.run_id,
                ArtifactIndexEntry(
                    stage_category=flavor.stage_category,
                    flavor=flavor.name,
                    step=step_name,
                    file_name=name,
                    file_path=rel_path,
                    summary=f"Produced by step {step_name}",
                    type="artifact",
                ),
            )
        except (KataError, OSError) as exc:
            logger.warning("Could not index artifact %s of flavor %s: %s", name, flavor.name, exc)
        return rel_path
