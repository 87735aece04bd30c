"""Six-phase orchestration of a single stage category.

analyze -> match -> plan -> execute -> synthesize -> reflect

Every choice the orchestrator makes is written to the run's decision ledger
before it acts on it, and every decision receives an outcome once the stage
has been reflected on.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from kataflow.definitions import Flavor, StageRule, StageVocabulary
from kataflow.errors import FlavorNotFoundError, KataError, OrchestratorError
from kataflow.ledger import DecisionLedger
from kataflow.orchestration.models import (
    ArtifactValue,
    CapabilityProfile,
    FlavorExecutionResult,
    MatchReport,
    OrchestratorContext,
    OrchestratorResult,
    ReflectionResult,
    Stage,
)
from kataflow.registries import FlavorRegistry, RuleRegistry
from kataflow.run_store import RunStore
from kataflow.schemas import ArtifactIndexEntry, DecisionEntry, ExecutionMode, StageState, utc_now

logger = logging.getLogger(__name__)

CAPABILITY_CONFIDENCE = 0.95
MODE_CONFIDENCE = 0.95
SYNTHESIS_CONFIDENCE = 0.9
NO_VOCABULARY_SCORE = 0.5
LEARNING_BOOST = 0.1
DEFAULT_SYNTHESIS = "merge-all"
DEFAULT_ALTERNATIVES = ("merge-all", "first-wins", "cascade")


class FlavorRunner(Protocol):
    def execute(self, flavor: Flavor, context: OrchestratorContext) -> FlavorExecutionResult: ...


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _bet_text(bet: dict[str, Any] | None) -> str:
    if not bet:
        return ""
    parts: list[str] = []
    for key in ("title", "description", "prompt"):
        value = bet.get(key)
        if isinstance(value, str):
            parts.append(value)
    tags = bet.get("tags")
    if isinstance(tags, list):
        parts.extend(str(tag) for tag in tags)
    return " ".join(parts)


def _mentions(text: str, needle: str) -> bool:
    return bool(needle) and needle.lower() in text.lower()


def render_synthesis(category: str, approach: str, values: dict[str, Any]) -> str:
    """Markdown body for ``synthesis.md``."""
    lines = [f"# {category} synthesis", "", f"Approach: {approach}", ""]
    for flavor_name, value in values.items():
        lines += [f"## {flavor_name}", "", "```json", json.dumps(value, indent=2, default=str), "```", ""]
    return "\n".join(lines)


class StageOrchestrator:
    """Pick, run and merge the flavors of one stage category.

    Parameters
    ----------
    category:
        Stage category this orchestrator drives.
    flavor_registry:
        Source of flavor definitions.
    ledger:
        Decision ledger of the run being driven.
    executor:
        Runs a single flavor (normally :class:`~kataflow.executor.StepFlavorExecutor`).
    vocabulary:
        Keywords and synthesis preferences for *category*; ``None`` falls
        back to neutral scoring and ``merge-all``.
    rule_registry:
        Active stage rules. Without one no rule adjustments apply.
    run_store:
        When given, the stage's ``state.json`` tracks each transition and the
        stage synthesis is written and indexed under the ledger's run.
    """

    def __init__(
        self,
        category: str,
        flavor_registry: FlavorRegistry,
        ledger: DecisionLedger,
        executor: FlavorRunner,
        *,
        vocabulary: StageVocabulary | None = None,
        rule_registry: RuleRegistry | None = None,
        run_store: RunStore | None = None,
    ) -> None:
        self.category = category
        self.flavor_registry = flavor_registry
        self.ledger = ledger
        self.executor = executor
        self.vocabulary = vocabulary
        self.rule_registry = rule_registry
        self.run_store = run_store

    def run(self, stage: Stage, context: OrchestratorContext) -> OrchestratorResult:
        if stage.category != self.category:
            raise OrchestratorError(
                f'Stage category "{stage.category}" does not match orchestrator category "{self.category}"'
            )
        logger.info('Orchestrating stage "%s"', self.category)
        self._update_state(status="running", started_at=utc_now(), completed_at=None)
        try:
            result = self._run_phases(stage, context)
        except Exception:
            try:
                self._update_state(status="failed", completed_at=utc_now())
            except (KataError, OSError) as exc:
                logger.warning('Could not mark stage "%s" failed: %s', self.category, exc)
            raise
        self._update_state(status="completed", completed_at=utc_now())
        logger.info(
            'Stage "%s" finished: %s (%s)',
            self.category,
            ", ".join(result.selected_flavors),
            result.reflection.overall_quality,
        )
        return result

    def _run_phases(self, stage: Stage, context: OrchestratorContext) -> OrchestratorResult:
        decisions: list[DecisionEntry] = []

        rules = self.rule_registry.load_rules(self.category) if self.rule_registry else []
        profile = self._analyze(context, rules, len(stage.available_flavors), decisions)
        candidates, pinned, reports = self._match(stage, context, rules)
        selected, mode = self._plan(stage, candidates, pinned, reports, decisions)
        self._update_state(
            selected_flavors=[f.name for f in selected],
            execution_mode=mode,
            decisions=[d.id for d in decisions],
        )
        flavor_results = self._execute(stage, selected, mode, context)
        stage_artifact = self._synthesize(flavor_results, decisions)
        self._persist_synthesis(flavor_results, stage_artifact, decisions)
        reflection = self._reflect(flavor_results, decisions)

        return OrchestratorResult(
            stage_category=self.category,
            selected_flavors=[f.name for f in selected],
            decisions=decisions,
            flavor_results=flavor_results,
            stage_artifact=stage_artifact,
            execution_mode=mode,
            capability_profile=profile,
            match_reports=reports,
            reflection=reflection,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _analyze(
        self,
        context: OrchestratorContext,
        rules: list[StageRule],
        flavor_count: int,
        decisions: list[DecisionEntry],
    ) -> CapabilityProfile:
        profile = CapabilityProfile(
            stage_category=self.category,
            available_artifacts=list(context.available_artifacts),
            active_rules=[r.id for r in rules],
            learnings=list(context.learnings),
            bet_context=context.bet,
        )
        reasoning = (
            f"Capability analysis for {self.category} stage: "
            f"{len(profile.available_artifacts)} artifact(s) available, "
            f"{len(profile.learnings)} learning(s), {len(profile.active_rules)} active rule(s), "
            f"{flavor_count} candidate flavor(s)."
        )
        decisions.append(
            self._record(
                "capability-analysis",
                options=["proceed", "insufficient-context"],
                selection="proceed",
                reasoning=reasoning,
                confidence=CAPABILITY_CONFIDENCE,
                context={"available_artifacts": profile.available_artifacts},
            )
        )
        return profile

    def _resolve(self, name: str) -> Flavor | None:
        try:
            return self.flavor_registry.get(self.category, name)
        except FlavorNotFoundError:
            logger.warning('Flavor "%s" not found for stage "%s"; skipping', name, self.category)
            return None
        except KataError as exc:
            raise OrchestratorError(f'Could not load flavor "{name}" for stage "{self.category}": {exc}') from exc

    def _match(
        self,
        stage: Stage,
        context: OrchestratorContext,
        rules: list[StageRule],
    ) -> tuple[list[Flavor], list[Flavor], list[MatchReport]]:
        excluded = set(stage.excluded_flavors)
        pinned_names: list[str] = []
        for name in stage.pinned_flavors:
            if name in excluded:
                logger.warning('Flavor "%s" is both pinned and excluded; exclusion wins', name)
                continue
            if name not in pinned_names:
                pinned_names.append(name)
        candidate_names = [
            n for n in dict.fromkeys(stage.available_flavors) if n not in excluded and n not in pinned_names
        ]
        if not candidate_names and not pinned_names:
            raise OrchestratorError(f'No flavors available for stage "{self.category}" after exclusions')

        # Resolve in registration order: pinned first, then candidates.
        resolved: dict[str, Flavor] = {}
        for name in [*pinned_names, *candidate_names]:
            flavor = self._resolve(name)
            if flavor is not None:
                resolved[name] = flavor
        if not resolved:
            raise OrchestratorError(f'None of the flavors for stage "{self.category}" could be resolved')

        for rule in rules:
            for name in list(resolved):
                if not _mentions(rule.condition, name):
                    continue
                if rule.effect == "exclude":
                    logger.info('Rule "%s" excludes flavor "%s"', rule.name, name)
                    resolved.pop(name)
                    if name in pinned_names:
                        pinned_names.remove(name)
                elif rule.effect == "require" and name not in pinned_names:
                    logger.info('Rule "%s" requires flavor "%s"', rule.name, name)
                    pinned_names.append(name)
        if not resolved:
            raise OrchestratorError(f'All flavors for stage "{self.category}" were excluded by rules')

        reports = [self._score(flavor, context, rules) for flavor in resolved.values()]
        pinned = [resolved[n] for n in pinned_names if n in resolved]
        candidates = [f for f in resolved.values() if f.name not in pinned_names]
        return candidates, pinned, reports

    def _score(self, flavor: Flavor, context: OrchestratorContext, rules: list[StageRule]) -> MatchReport:
        text = " ".join(filter(None, [flavor.name, flavor.description or "", _bet_text(context.bet)]))
        hits = 0
        boost = 0.0
        if self.vocabulary is None:
            keyword_score = NO_VOCABULARY_SCORE
        else:
            hits = sum(1 for kw in self.vocabulary.keywords if _mentions(text, kw))
            keyword_score = hits / len(self.vocabulary.keywords)
            for rule in self.vocabulary.boost_rules:
                if rule.artifact_pattern == "*":
                    if context.available_artifacts:
                        boost += rule.magnitude
                elif any(rule.artifact_pattern in a for a in context.available_artifacts):
                    boost += rule.magnitude

        learning_boost = LEARNING_BOOST if any(_mentions(note, flavor.name) for note in context.learnings) else 0.0

        adjustment = 0.0
        for rule in rules:
            if rule.effect not in ("boost", "penalize"):
                continue
            applies = _mentions(rule.condition, flavor.name) or any(
                _mentions(rule.condition, a) for a in context.available_artifacts
            )
            if not applies:
                continue
            delta = rule.magnitude * rule.confidence
            adjustment += delta if rule.effect == "boost" else -delta

        score = _clamp(keyword_score + boost + learning_boost + adjustment)
        reasoning = (
            f"keywords {keyword_score:.2f} ({hits} hit(s)), boost rules {boost:.2f}, "
            f"learnings {learning_boost:.2f}, rule adjustments {adjustment:+.2f}"
        )
        return MatchReport(
            flavor_name=flavor.name,
            score=score,
            keyword_hits=hits,
            rule_adjustments=adjustment,
            learning_boost=learning_boost,
            reasoning=reasoning,
        )

    def _plan(
        self,
        stage: Stage,
        candidates: list[Flavor],
        pinned: list[Flavor],
        reports: list[MatchReport],
        decisions: list[DecisionEntry],
    ) -> tuple[list[Flavor], ExecutionMode]:
        scores = {r.flavor_name: r.score for r in reports}
        ranked = sorted(candidates, key=lambda f: scores[f.name], reverse=True)
        selected = list(pinned)
        if ranked:
            selected.append(ranked[0])
            selection = ranked[0].name
        else:
            selection = pinned[0].name
        confidence = scores[selection]
        threshold = stage.orchestrator.confidence_threshold
        low_confidence = confidence < threshold
        if low_confidence:
            logger.warning(
                'Low confidence %.2f for flavor selection in stage "%s" (threshold %.2f)',
                confidence,
                self.category,
                threshold,
            )

        pinned_note = f" Pinned: {', '.join(f.name for f in pinned)}." if pinned else ""
        decisions.append(
            self._record(
                "flavor-selection",
                options=[f.name for f in [*pinned, *candidates]],
                selection=selection,
                reasoning=(
                    f'Selected "{selection}" with score {confidence:.2f} '
                    f"out of {len(candidates)} candidate(s).{pinned_note}"
                ),
                confidence=confidence,
                context={"scores": scores},
                low_confidence=low_confidence or None,
            )
        )

        max_parallel = stage.orchestrator.max_parallel_flavors
        mode: ExecutionMode = "parallel" if 1 < len(selected) <= max_parallel else "sequential"
        if len(selected) > max_parallel:
            reasoning = f"{len(selected)} flavors exceed the parallel limit of {max_parallel}; running sequentially."
        elif mode == "parallel":
            reasoning = f"{len(selected)} flavors within the parallel limit of {max_parallel}; running in parallel."
        else:
            reasoning = "Single flavor selected; running sequentially."
        decisions.append(
            self._record(
                "execution-mode",
                options=["parallel", "sequential"],
                selection=mode,
                reasoning=reasoning,
                confidence=MODE_CONFIDENCE,
            )
        )
        return selected, mode

    def _execute(
        self,
        stage: Stage,
        selected: list[Flavor],
        mode: ExecutionMode,
        context: OrchestratorContext,
    ) -> list[FlavorExecutionResult]:
        if mode == "sequential":
            return [self.executor.execute(flavor, context) for flavor in selected]

        results: list[FlavorExecutionResult | None] = [None] * len(selected)
        failures: list[str] = []
        workers = min(len(selected), stage.orchestrator.max_parallel_flavors)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.executor.execute, flavor, context) for flavor in selected]
            for index, (flavor, future) in enumerate(zip(selected, futures)):
                try:
                    results[index] = future.result()
                except Exception as exc:
                    logger.warning('Flavor "%s" failed: %s', flavor.name, exc)
                    failures.append(f"{flavor.name}: {exc}")
        if failures:
            raise OrchestratorError(
                f'Stage "{self.category}" parallel execution failed '
                f"({len(failures)}/{len(selected)} flavors): {'; '.join(failures)}"
            )
        return [r for r in results if r is not None]

    def _synthesize(
        self,
        flavor_results: list[FlavorExecutionResult],
        decisions: list[DecisionEntry],
    ) -> ArtifactValue:
        missing = [
            r.flavor_name
            for r in flavor_results
            if r.synthesis_artifact is None or r.synthesis_artifact.value is None
        ]
        if missing:
            raise OrchestratorError(
                f'Stage "{self.category}": missing synthesis artifact from {", ".join(missing)}'
            )

        approach = self.vocabulary.synthesis_preference if self.vocabulary else DEFAULT_SYNTHESIS
        alternatives = list(self.vocabulary.synthesis_alternatives) if self.vocabulary else list(DEFAULT_ALTERNATIVES)
        if approach not in alternatives:
            raise OrchestratorError(
                f'Synthesis approach "{approach}" is not one of {", ".join(alternatives)}'
            )
        template = self.vocabulary.reasoning_template if self.vocabulary else None
        if template:
            reasoning = template.replace("{count}", str(len(flavor_results)))
        else:
            reasoning = f"Merging the synthesis artifacts of {len(flavor_results)} flavor(s) with {approach}."
        decisions.append(
            self._record(
                "synthesis-approach",
                options=alternatives,
                selection=approach,
                reasoning=reasoning,
                confidence=SYNTHESIS_CONFIDENCE,
            )
        )
        merged = {r.flavor_name: r.synthesis_artifact.value for r in flavor_results}
        return ArtifactValue(f"{self.category}-synthesis", merged)

    def _reflect(
        self,
        flavor_results: list[FlavorExecutionResult],
        decisions: list[DecisionEntry],
    ) -> ReflectionResult:
        complete = all(
            r.synthesis_artifact is not None and r.synthesis_artifact.value is not None for r in flavor_results
        )
        quality = "good" if complete else "partial"
        outcomes: list[dict[str, Any]] = []
        for decision in decisions:
            try:
                self.ledger.record_outcome(decision.id, quality)
            except (KataError, OSError) as exc:
                logger.warning("Could not record outcome for decision %s: %s", decision.id, exc)
                continue
            outcomes.append({"decision_id": decision.id, "outcome": quality})

        if complete:
            learning = f"{self.category} stage completed successfully with {len(flavor_results)} flavor(s)."
        else:
            learning = f"{self.category} stage completed with partial results; some flavors missing synthesis."
        return ReflectionResult(overall_quality=quality, decision_outcomes=outcomes, learnings=[learning])

    # ------------------------------------------------------------------
    # Ledger / persistence
    # ------------------------------------------------------------------

    def _record(self, decision_type: str, **fields: Any) -> DecisionEntry:
        try:
            return self.ledger.record(stage_category=self.category, decision_type=decision_type, **fields)
        except KataError as exc:
            raise OrchestratorError(f'Could not record {decision_type} decision for "{self.category}": {exc}') from exc

    def _update_state(self, **changes: Any) -> None:
        if self.run_store is None:
            return
        run_id = self.ledger.run_id
        path = self.run_store.paths(run_id).stage_state_json(self.category)
        try:
            state = self.run_store.read_stage_state(run_id, self.category)
        except KataError:
            if path.exists():
                raise
            state = StageState(category=self.category)
        if "decisions" in changes:
            changes["decisions"] = list(dict.fromkeys([*state.decisions, *changes["decisions"]]))
        self.run_store.write_stage_state(run_id, state.model_copy(update=changes))

    def _persist_synthesis(
        self,
        flavor_results: list[FlavorExecutionResult],
        stage_artifact: ArtifactValue,
        decisions: list[DecisionEntry],
    ) -> None:
        if self.run_store is None:
            return
        run_id = self.ledger.run_id
        approach = decisions[-1].selection
        for result in flavor_results:
            self.run_store.write_synthesis(
                run_id,
                self.category,
                render_synthesis(self.category, approach, {result.flavor_name: result.synthesis_artifact.value}),
                flavor=result.flavor_name,
            )
        rel_path = self.run_store.write_synthesis(
            run_id, self.category, render_synthesis(self.category, approach, stage_artifact.value)
        )
        rel = str(rel_path).replace("\\", "/")
        self.run_store.append_artifact_index(
            run_id,
            ArtifactIndexEntry(
                stage_category=self.category,
                file_name=rel_path.name,
                file_path=rel,
                summary=f"{self.category} synthesis of {len(flavor_results)} flavor(s)",
                type="synthesis",
            ),
        )
        self._update_state(synthesis_artifact=rel, decisions=[d.id for d in decisions])
