"""Drive a sequence of stage categories through their stage orchestrators."""

from __future__ import annotations

import logging
from typing import Any

from kataflow.config import OrchestrationSettings
from kataflow.errors import KataError, OrchestratorError
from kataflow.ledger import DecisionLedger
from kataflow.orchestration.models import (
    OrchestratorConfig,
    OrchestratorContext,
    OrchestratorResult,
    PipelineOrchestrationResult,
    ReflectionResult,
    Stage,
)
from kataflow.orchestration.stage_orchestrator import FlavorRunner, StageOrchestrator
from kataflow.registries import FlavorRegistry, RuleRegistry, VocabularyRegistry
from kataflow.run_store import RunStore
from kataflow.schemas import utc_now

logger = logging.getLogger(__name__)


def pipeline_quality(results: list[OrchestratorResult]) -> str:
    qualities = [r.reflection.overall_quality for r in results]
    if qualities and all(q == "good" for q in qualities):
        return "good"
    if any(q == "poor" for q in qualities):
        return "poor"
    return "partial"


class MetaOrchestrator:
    """Run stage categories in order, feeding each stage's artifacts forward.

    Parameters
    ----------
    flavor_registry:
        Flavors available per category.
    ledger:
        Decision ledger of the run; shared by every stage.
    executor:
        Flavor executor handed to each :class:`StageOrchestrator`.
    settings:
        Orchestration defaults (threshold and parallel limit).
    vocabulary_registry, rule_registry:
        Optional scoring inputs passed down to each stage.
    run_store:
        When given, ``run.json`` tracks the current stage and run status, and
        the run lease is held for the duration of :meth:`run_pipeline`.
    """

    def __init__(
        self,
        flavor_registry: FlavorRegistry,
        ledger: DecisionLedger,
        executor: FlavorRunner,
        settings: OrchestrationSettings | None = None,
        *,
        vocabulary_registry: VocabularyRegistry | None = None,
        rule_registry: RuleRegistry | None = None,
        run_store: RunStore | None = None,
    ) -> None:
        self.flavor_registry = flavor_registry
        self.ledger = ledger
        self.executor = executor
        self.settings = settings or OrchestrationSettings()
        self.vocabulary_registry = vocabulary_registry
        self.rule_registry = rule_registry
        self.run_store = run_store

    def run_pipeline(
        self,
        categories: list[str],
        bet: dict[str, Any] | None = None,
        *,
        yolo: bool | None = None,
    ) -> PipelineOrchestrationResult:
        if not categories:
            raise OrchestratorError("Pipeline needs at least one stage category")
        yolo = self.settings.yolo if yolo is None else yolo
        if yolo:
            logger.warning("yolo mode: confidence threshold disabled for this pipeline")

        if self.run_store is None:
            return self._run(categories, bet, yolo)
        with self.run_store.lock(self.ledger.run_id):
            self._update_run(status="running")
            try:
                result = self._run(categories, bet, yolo)
            except Exception:
                try:
                    self._update_run(status="failed", completed_at=utc_now())
                except (KataError, OSError) as exc:
                    logger.warning("Could not mark run %s failed: %s", self.ledger.run_id, exc)
                raise
            self._update_run(status="completed", completed_at=utc_now())
            return result

    def _run(self, categories: list[str], bet: dict[str, Any] | None, yolo: bool) -> PipelineOrchestrationResult:
        config = OrchestratorConfig(
            confidence_threshold=0.0 if yolo else self.settings.confidence_threshold,
            max_parallel_flavors=self.settings.max_parallel_flavors,
        )
        available_artifacts: list[str] = []
        results: list[OrchestratorResult] = []
        for category in categories:
            flavors = self.flavor_registry.list(category)
            if not flavors:
                raise OrchestratorError(f'No flavors registered for stage category "{category}"')
            self._update_run(current_stage=category)

            vocabulary = self.vocabulary_registry.get(category) if self.vocabulary_registry else None
            orchestrator = StageOrchestrator(
                category,
                self.flavor_registry,
                self.ledger,
                self.executor,
                vocabulary=vocabulary,
                rule_registry=self.rule_registry,
                run_store=self.run_store,
            )
            stage = Stage(
                category=category,
                available_flavors=[f.name for f in flavors],
                orchestrator=config,
            )
            context = OrchestratorContext(available_artifacts=list(available_artifacts), bet=bet)
            result = orchestrator.run(stage, context)
            results.append(result)
            available_artifacts.append(result.stage_artifact.name)

        quality = pipeline_quality(results)
        learnings = [f"Pipeline completed {len(results)} stage(s): {' -> '.join(categories)}"]
        for result in results:
            learnings.extend(result.reflection.learnings)
        return PipelineOrchestrationResult(
            stage_results=results,
            pipeline_reflection=ReflectionResult(overall_quality=quality, learnings=learnings),
        )

    def _update_run(self, **changes: Any) -> None:
        if self.run_store is None:
            return
        run = self.run_store.read_run(self.ledger.run_id)
        self.run_store.write_run(run.model_copy(update=changes))
