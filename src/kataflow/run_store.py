"""Run-State Store: the on-disk tree for one execution of a bet.

Directory layout under ``<runs>/<run_id>/``::

    run.json
    decisions.jsonl
    decision-outcomes.jsonl
    artifact-index.jsonl
    observations.jsonl / reflections.jsonl
    stages/<category>/
        state.json
        observations.jsonl / reflections.jsonl
        synthesis.md
        flavors/<name>/
            state.json
            artifact-index.jsonl
            observations.jsonl / reflections.jsonl
            artifacts/
            synthesis.md
            steps/<step>/observations.jsonl / reflections.jsonl

JSON documents are only ever rewritten whole; JSONL logs are only ever
appended to. Nothing here is deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kataflow import store
from kataflow.errors import (
    GateConflictError,
    GateNotPendingError,
    JsonStoreError,
    JsonStoreNotFoundError,
    RunNotFoundError,
)
from kataflow.file_io import atomic_write_text, exclusive_lease
from kataflow.observations import (
    FlavorTarget,
    ObservationAdapter,
    ReflectionAdapter,
    RunTarget,
    StageTarget,
    StepTarget,
)
from kataflow.schemas import (
    ApprovedGate,
    ArtifactIndexEntry,
    FlavorState,
    PendingGate,
    Run,
    StageState,
    utc_now,
)

logger = logging.getLogger(__name__)

Target = RunTarget | StageTarget | FlavorTarget | StepTarget

OBSERVATIONS_FILE = "observations.jsonl"
REFLECTIONS_FILE = "reflections.jsonl"
ARTIFACT_INDEX_FILE = "artifact-index.jsonl"


@dataclass(frozen=True)
class RunPaths:
    """Path helpers for a single run directory."""

    run_dir: Path

    @property
    def run_json(self) -> Path:
        return self.run_dir / "run.json"

    @property
    def decisions_jsonl(self) -> Path:
        return self.run_dir / "decisions.jsonl"

    @property
    def decision_outcomes_jsonl(self) -> Path:
        return self.run_dir / "decision-outcomes.jsonl"

    @property
    def artifact_index_jsonl(self) -> Path:
        return self.run_dir / ARTIFACT_INDEX_FILE

    @property
    def lock_file(self) -> Path:
        return self.run_dir / ".lock"

    @property
    def stages_dir(self) -> Path:
        return self.run_dir / "stages"

    def stage_dir(self, category: str) -> Path:
        return self.stages_dir / category

    def stage_state_json(self, category: str) -> Path:
        return self.stage_dir(category) / "state.json"

    def stage_synthesis(self, category: str) -> Path:
        return self.stage_dir(category) / "synthesis.md"

    def flavors_dir(self, category: str) -> Path:
        return self.stage_dir(category) / "flavors"

    def flavor_dir(self, category: str, flavor: str) -> Path:
        return self.flavors_dir(category) / flavor

    def flavor_state_json(self, category: str, flavor: str) -> Path:
        return self.flavor_dir(category, flavor) / "state.json"

    def flavor_artifact_index_jsonl(self, category: str, flavor: str) -> Path:
        return self.flavor_dir(category, flavor) / ARTIFACT_INDEX_FILE

    def flavor_artifacts_dir(self, category: str, flavor: str) -> Path:
        return self.flavor_dir(category, flavor) / "artifacts"

    def flavor_synthesis(self, category: str, flavor: str) -> Path:
        return self.flavor_dir(category, flavor) / "synthesis.md"

    def step_dir(self, category: str, flavor: str, step: str) -> Path:
        return self.flavor_dir(category, flavor) / "steps" / step

    def target_dir(self, target: Target) -> Path:
        """Resolve an observation target to the directory holding its logs."""
        if isinstance(target, StepTarget):
            return self.step_dir(target.category, target.flavor, target.step)
        if isinstance(target, FlavorTarget):
            return self.flavor_dir(target.category, target.flavor)
        if isinstance(target, StageTarget):
            return self.stage_dir(target.category)
        return self.run_dir


class RunStore:
    """Read/write/append primitives over ``<runs_dir>/<run_id>/`` trees.

    Parameters
    ----------
    runs_dir:
        Root directory containing one sub-directory per run. Each component
        receives this explicitly; there is no process-wide default.
    """

    def __init__(self, runs_dir: str | Path) -> None:
        self.runs_dir = Path(runs_dir)

    def paths(self, run_id: str) -> RunPaths:
        return RunPaths(self.runs_dir / run_id)

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, run_id: str, *, timeout_seconds: float = 3.0) -> Iterator[None]:
        """Hold the exclusive lease on a run directory while driving it."""
        with exclusive_lease(self.paths(run_id).lock_file, timeout_seconds=timeout_seconds):
            yield

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def create_tree(self, run: Run) -> Run:
        """Scaffold the run directory, ``run.json`` and one pending state per stage.

        Calling this again for the same run id rewrites ``run.json`` but never
        resets a stage state that already exists.
        """
        paths = self.paths(run.id)
        validated = store.write_json(paths.run_json, run, Run)
        for category in validated.stage_sequence:
            state_path = paths.stage_state_json(category)
            if store.json_exists(state_path):
                continue
            store.write_json(state_path, StageState(category=category), StageState)
        logger.debug("Created run tree %s (%d stages)", paths.run_dir, len(validated.stage_sequence))
        return validated

    def read_run(self, run_id: str) -> Run:
        try:
            return store.read_json(self.paths(run_id).run_json, Run)
        except JsonStoreNotFoundError as exc:
            raise RunNotFoundError(run_id) from exc

    def write_run(self, run: Run) -> Run:
        return store.write_json(self.paths(run.id).run_json, run, Run)

    def list_runs(self) -> list[Run]:
        if not self.runs_dir.is_dir():
            return []
        runs: list[Run] = []
        for run_dir in sorted(p for p in self.runs_dir.iterdir() if p.is_dir()):
            try:
                runs.append(store.read_json(run_dir / "run.json", Run))
            except (JsonStoreNotFoundError, JsonStoreError) as exc:
                logger.warning("Skip unreadable run %s: %s", run_dir.name, exc)
        return runs

    # ------------------------------------------------------------------
    # Stage / flavor state
    # ------------------------------------------------------------------

    def read_stage_state(self, run_id: str, category: str) -> StageState:
        return store.read_json(self.paths(run_id).stage_state_json(category), StageState)

    def write_stage_state(self, run_id: str, state: StageState) -> StageState:
        return store.write_json(self.paths(run_id).stage_state_json(state.category), state, StageState)

    def read_flavor_state(self, run_id: str, category: str, flavor: str) -> FlavorState:
        return store.read_json(self.paths(run_id).flavor_state_json(category, flavor), FlavorState)

    def write_flavor_state(self, run_id: str, state: FlavorState) -> FlavorState:
        path = self.paths(run_id).flavor_state_json(state.stage_category, state.name)
        return store.write_json(path, state, FlavorState)

    def list_flavor_states(self, run_id: str, category: str) -> list[FlavorState]:
        flavors_dir = self.paths(run_id).flavors_dir(category)
        if not flavors_dir.is_dir():
            return []
        states: list[FlavorState] = []
        for flavor_dir in sorted(p for p in flavors_dir.iterdir() if p.is_dir()):
            try:
                states.append(store.read_json(flavor_dir / "state.json", FlavorState))
            except (JsonStoreNotFoundError, JsonStoreError) as exc:
                logger.warning("Skip unreadable flavor state %s: %s", flavor_dir, exc)
        return states

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def set_pending_gate(
        self,
        run_id: str,
        category: str,
        gate_id: str,
        gate_type: str,
        *,
        required_by: str = "stage",
    ) -> StageState:
        """Block a stage on an approval. A stage holds at most one pending gate."""
        state = self.read_stage_state(run_id, category)
        if state.pending_gate is not None:
            raise GateConflictError(
                f'Stage "{category}" already has a pending gate "{state.pending_gate.gate_id}"'
            )
        if any(g.gate_id == gate_id for g in state.approved_gates):
            logger.warning('Gate "%s" was already approved for stage "%s"; setting it again', gate_id, category)
        state.pending_gate = PendingGate(gate_id=gate_id, gate_type=gate_type, required_by=required_by)
        return self.write_stage_state(run_id, state)

    def approve_gate(
        self,
        run_id: str,
        category: str,
        gate_id: str | None = None,
        *,
        approver: str = "human",
    ) -> ApprovedGate:
        """Move the pending gate into ``approved_gates`` and clear it."""
        state = self.read_stage_state(run_id, category)
        pending = state.pending_gate
        if pending is None or (gate_id is not None and pending.gate_id != gate_id):
            label = gate_id or "<any>"
            raise GateNotPendingError(f'Gate "{label}" is not pending on stage "{category}"')
        approved = ApprovedGate(
            gate_id=pending.gate_id,
            gate_type=pending.gate_type,
            required_by=pending.required_by,
            approved_at=utc_now(),
            approver=approver,
        )
        state.approved_gates.append(approved)
        state.pending_gate = None
        self.write_stage_state(run_id, state)
        return approved

    # ------------------------------------------------------------------
    # Observations / reflections
    # ------------------------------------------------------------------

    def append_observation(self, run_id: str, target: Target, observation: Any) -> Any:
        path = self.paths(run_id).target_dir(target) / OBSERVATIONS_FILE
        return store.append_jsonl(path, observation, ObservationAdapter)

    def read_observations(self, run_id: str, target: Target | None = None) -> list[Any]:
        path = self.paths(run_id).target_dir(target or RunTarget()) / OBSERVATIONS_FILE
        return store.read_jsonl(path, ObservationAdapter)

    def append_reflection(self, run_id: str, target: Target, reflection: Any) -> Any:
        path = self.paths(run_id).target_dir(target) / REFLECTIONS_FILE
        return store.append_jsonl(path, reflection, ReflectionAdapter)

    def read_reflections(self, run_id: str, target: Target | None = None) -> list[Any]:
        path = self.paths(run_id).target_dir(target or RunTarget()) / REFLECTIONS_FILE
        return store.read_jsonl(path, ReflectionAdapter)

    def iter_targets(self, run_id: str) -> list[Target]:
        """Every scope of a run: the run, its stages, and flavors/steps found on disk."""
        run = self.read_run(run_id)
        paths = self.paths(run_id)
        targets: list[Target] = [RunTarget()]
        for category in run.stage_sequence:
            targets.append(StageTarget(category=category))
            flavors_dir = paths.flavors_dir(category)
            if not flavors_dir.is_dir():
                continue
            for flavor_dir in sorted(p for p in flavors_dir.iterdir() if p.is_dir()):
                targets.append(FlavorTarget(category=category, flavor=flavor_dir.name))
                steps_dir = flavor_dir / "steps"
                if not steps_dir.is_dir():
                    continue
                for step_dir in sorted(p for p in steps_dir.iterdir() if p.is_dir()):
                    targets.append(
                        StepTarget(category=category, flavor=flavor_dir.name, step=step_dir.name)
                    )
        return targets

    def read_all_observations(self, run_id: str) -> list[tuple[Target, Any]]:
        """Return ``(target, observation)`` pairs across every level of the run."""
        pairs: list[tuple[Target, Any]] = []
        for target in self.iter_targets(run_id):
            pairs.extend((target, obs) for obs in self.read_observations(run_id, target))
        return pairs

    def read_all_reflections(self, run_id: str) -> list[tuple[Target, Any]]:
        pairs: list[tuple[Target, Any]] = []
        for target in self.iter_targets(run_id):
            pairs.extend((target, ref) for ref in self.read_reflections(run_id, target))
        return pairs

    # ------------------------------------------------------------------
    # Artifact index
    # ------------------------------------------------------------------

    def append_artifact_index(self, run_id: str, entry: ArtifactIndexEntry) -> ArtifactIndexEntry:
        """Record an artifact at run level and, for flavor output, in the flavor index."""
        paths = self.paths(run_id)
        validated = store.append_jsonl(paths.artifact_index_jsonl, entry, ArtifactIndexEntry)
        if validated.flavor:
            flavor_index = paths.flavor_artifact_index_jsonl(validated.stage_category, validated.flavor)
            store.append_jsonl(flavor_index, validated, ArtifactIndexEntry)
        return validated

    def read_artifact_index(
        self,
        run_id: str,
        category: str | None = None,
        flavor: str | None = None,
    ) -> list[ArtifactIndexEntry]:
        paths = self.paths(run_id)
        if category and flavor:
            return store.read_jsonl(paths.flavor_artifact_index_jsonl(category, flavor), ArtifactIndexEntry)
        entries = store.read_jsonl(paths.artifact_index_jsonl, ArtifactIndexEntry)
        if category:
            entries = [e for e in entries if e.stage_category == category]
        return entries

    def write_synthesis(self, run_id: str, category: str, content: str, *, flavor: str | None = None) -> Path:
        """Write a synthesis markdown file and return its path relative to the run root."""
        paths = self.paths(run_id)
        target = paths.flavor_synthesis(category, flavor) if flavor else paths.stage_synthesis(category)
        atomic_write_text(target, content)
        return target.relative_to(paths.run_dir)
