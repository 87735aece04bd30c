"""File-backed registries for steps, flavors, stage rules, and vocabularies.

Registered definitions are persisted as JSON under the registry's base
directory. Authored definitions (YAML or JSON) can be bulk-loaded with
``load_definitions``; files that fail to parse or validate are skipped with a
warning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from kataflow import store
from kataflow.definitions import STAGE_CATEGORIES, Flavor, StageRule, StageVocabulary, Step
from kataflow.errors import (
    FlavorNotFoundError,
    JsonStoreError,
    KataError,
    RuleNotFoundError,
    StepNotFoundError,
    ValidationError,
)
from kataflow.schemas import utc_now

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")
_BUILTIN_VOCABULARIES = Path(__file__).resolve().parent / "vocabularies"

StepResolver = Callable[[str, str], "Step | None"]


def _load_definition_file(path: Path) -> Any:
    # JSON is a subset of YAML, so one loader covers every suffix.
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def iter_definitions(directory: str | Path, model: type[BaseModel]) -> Iterator[tuple[Path, Any]]:
    """Yield ``(path, model)`` for each valid definition file in *directory*."""
    directory = Path(directory)
    if not directory.is_dir():
        return
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() not in DEFINITION_SUFFIXES or not path.is_file():
            continue
        try:
            raw = _load_definition_file(path)
            yield path, model.model_validate(raw)
        except (OSError, yaml.YAMLError, PydanticValidationError) as exc:
            logger.warning("Skip invalid definition %s: %s", path, exc)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _step_filename(step_type: str, flavor: str | None = None) -> str:
    return f"{step_type}.{flavor}.json" if flavor else f"{step_type}.json"


class StepRegistry:
    """Step definitions keyed by ``(type, flavor)``, one JSON file each."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self._steps: dict[tuple[str, str | None], Step] = {}

    def register(self, step: Step | dict[str, Any]) -> Step:
        validated = store.write_json(
            self.base_dir / _step_filename(_field(step, "type"), _field(step, "flavor")),
            step,
            Step,
        )
        self._steps[(validated.type, validated.flavor)] = validated
        return validated

    def get(self, step_type: str, flavor: str | None = None) -> Step:
        key = (step_type, flavor)
        cached = self._steps.get(key)
        if cached is not None:
            return cached
        path = self.base_dir / _step_filename(step_type, flavor)
        if not store.json_exists(path):
            raise StepNotFoundError(step_type, flavor)
        step = store.read_json(path, Step)
        self._steps[key] = step
        return step

    def list(self, stage_category: str | None = None) -> list[Step]:
        for step in store.list_json(self.base_dir, Step):
            self._steps.setdefault((step.type, step.flavor), step)
        steps = sorted(self._steps.values(), key=lambda s: (s.type, s.flavor or ""))
        if stage_category:
            steps = [s for s in steps if s.stage_category == stage_category]
        return steps

    def load_definitions(self, directory: str | Path) -> list[Step]:
        loaded = []
        for path, step in iter_definitions(directory, Step):
            try:
                loaded.append(self.register(step))
            except (ValidationError, OSError) as exc:
                logger.warning("Could not register step from %s: %s", path, exc)
        return loaded


def _field(record: BaseModel | dict[str, Any], name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name)


# ---------------------------------------------------------------------------
# Flavors
# ---------------------------------------------------------------------------


@dataclass
class FlavorValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _flavor_filename(stage_category: str, name: str) -> str:
    return f"{stage_category}.{name}.json"


class FlavorRegistry:
    """Flavor definitions stored as ``<category>.<name>.json``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self._flavors: dict[tuple[str, str], Flavor] = {}

    def register(self, flavor: Flavor | dict[str, Any]) -> Flavor:
        category, name = _field(flavor, "stage_category"), _field(flavor, "name")
        validated = store.write_json(self.base_dir / _flavor_filename(category, name), flavor, Flavor)
        self._flavors[(validated.stage_category, validated.name)] = validated
        return validated

    def get(self, stage_category: str, name: str) -> Flavor:
        key = (stage_category, name)
        cached = self._flavors.get(key)
        if cached is not None:
            return cached
        path = self.base_dir / _flavor_filename(stage_category, name)
        if not store.json_exists(path):
            raise FlavorNotFoundError(stage_category, name)
        try:
            flavor = store.read_json(path, Flavor)
        except JsonStoreError as exc:
            raise KataError(f'Flavor "{stage_category}/{name}" exists on disk but could not be loaded: {exc}') from exc
        self._flavors[key] = flavor
        return flavor

    def list(self, stage_category: str | None = None) -> list[Flavor]:
        """Flavors in registration order; disk entries not yet cached come after, by file name."""
        for flavor in store.list_json(self.base_dir, Flavor):
            self._flavors.setdefault((flavor.stage_category, flavor.name), flavor)
        flavors = list(self._flavors.values())
        if stage_category:
            flavors = [f for f in flavors if f.stage_category == stage_category]
        return flavors

    def delete(self, stage_category: str, name: str) -> Flavor:
        flavor = self.get(stage_category, name)
        path = self.base_dir / _flavor_filename(stage_category, name)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise KataError(f'Failed to delete flavor "{stage_category}/{name}": {exc}') from exc
        self._flavors.pop((stage_category, name), None)
        return flavor

    def load_definitions(self, directory: str | Path) -> list[Flavor]:
        loaded = []
        for path, flavor in iter_definitions(directory, Flavor):
            try:
                loaded.append(self.register(flavor))
            except (ValidationError, OSError) as exc:
                logger.warning("Could not register flavor from %s: %s", path, exc)
        return loaded

    def validate(
        self,
        flavor: Flavor | dict[str, Any],
        step_resolver: StepResolver | None = None,
        stage_inputs: list[str] | None = None,
    ) -> FlavorValidationResult:
        """Check a flavor structurally and, given a resolver, its artifact DAG.

        Without *step_resolver* a valid result only means the flavor is well
        formed; it says nothing about whether its synthesis artifact is ever
        produced.
        """
        try:
            flavor = Flavor.model_validate(
                flavor.model_dump() if isinstance(flavor, Flavor) else flavor
            )
        except PydanticValidationError as exc:
            return FlavorValidationResult(False, [f"Schema error: {i}" for i in store.format_issues(exc)])

        errors: list[str] = []
        step_names = [ref.step_name for ref in flavor.steps]
        for key in flavor.overrides:
            if key not in step_names:
                errors.append(
                    f'Override key "{key}" does not match any step name in this flavor. '
                    f"Available step names: {', '.join(step_names)}."
                )

        if step_resolver is None:
            return FlavorValidationResult(not errors, errors)

        resolved: dict[str, Step | None] = {}
        for ref in flavor.steps:
            try:
                resolved[ref.step_name] = step_resolver(ref.step_name, ref.step_type)
            except KataError as exc:
                logger.warning(
                    'Step resolver failed for "%s" (type "%s"): %s', ref.step_name, ref.step_type, exc
                )
                resolved[ref.step_name] = None

        available = set(stage_inputs or [])
        synthesis_produced = False
        for ref in flavor.steps:
            step = resolved[ref.step_name]
            if step is None:
                errors.append(f'Step "{ref.step_name}" (type: "{ref.step_type}") could not be resolved.')
                continue
            conditions = step.entry_gate.conditions if step.entry_gate else []
            for condition in conditions:
                if condition.type != "artifact-exists" or not condition.artifact_name:
                    continue
                if condition.artifact_name in available:
                    continue
                producer = next(
                    (
                        other.step_name
                        for other in flavor.steps
                        if resolved.get(other.step_name) is not None
                        and any(a.name == condition.artifact_name for a in resolved[other.step_name].artifacts)
                    ),
                    None,
                )
                if producer is None:
                    errors.append(
                        f'Step "{ref.step_name}" requires artifact "{condition.artifact_name}" '
                        "which is not produced by any step in this flavor and is not a stage input."
                    )
                else:
                    errors.append(
                        f'Step "{ref.step_name}" requires artifact "{condition.artifact_name}" '
                        f'which is produced by step "{producer}", but "{producer}" is not '
                        f'included before "{ref.step_name}" in this flavor.'
                    )
            for artifact in step.artifacts:
                available.add(artifact.name)
                if artifact.name == flavor.synthesis_artifact:
                    synthesis_produced = True

        if not synthesis_produced:
            errors.append(
                f'Flavor declares synthesis_artifact "{flavor.synthesis_artifact}" '
                "but no step in this flavor produces it."
            )
        return FlavorValidationResult(not errors, errors)


# ---------------------------------------------------------------------------
# Stage rules
# ---------------------------------------------------------------------------


class RuleRegistry:
    """Active stage rules stored as ``<category>/<id>.json``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def load_rules(self, category: str) -> list[StageRule]:
        rules = store.list_json(self.base_dir / category, StageRule)
        return sorted((r for r in rules if r.category == category), key=lambda r: r.created_at)

    def add_rule(
        self,
        *,
        category: str,
        name: str,
        condition: str,
        effect: str,
        magnitude: float = 0.0,
        confidence: float = 0.5,
        source: str = "user",
        evidence: list[str] | None = None,
    ) -> StageRule:
        try:
            rule = StageRule(
                category=category,
                name=name,
                condition=condition,
                effect=effect,
                magnitude=magnitude,
                confidence=confidence,
                source=source,
                evidence=list(evidence or []),
                created_at=utc_now(),
            )
        except PydanticValidationError as exc:
            raise ValidationError("Invalid StageRule", store.format_issues(exc)) from exc
        store.write_json(self.base_dir / rule.category / f"{rule.id}.json", rule, StageRule)
        logger.info('Added %s rule "%s" (%s) for %s', rule.effect, rule.name, rule.id, rule.category)
        return rule

    def remove_rule(self, rule_id: str) -> StageRule:
        for category in STAGE_CATEGORIES:
            path = self.base_dir / category / f"{rule_id}.json"
            if store.json_exists(path):
                rule = store.read_json(path, StageRule)
                path.unlink()
                return rule
        raise RuleNotFoundError(rule_id)


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class VocabularyRegistry:
    """Built-in stage vocabularies, optionally overridden per category.

    Parameters
    ----------
    custom_dir:
        Directory holding ``<category>.yaml`` (or ``.yml``/``.json``)
        overrides. A custom file replaces the built-in vocabulary for that
        category entirely.
    """

    def __init__(self, custom_dir: str | Path | None = None) -> None:
        self.custom_dir = Path(custom_dir) if custom_dir else None
        self._cache: dict[str, StageVocabulary | None] = {}

    def _candidates(self, category: str) -> Iterator[Path]:
        if self.custom_dir is not None:
            for suffix in DEFINITION_SUFFIXES:
                yield self.custom_dir / f"{category}{suffix}"
        yield _BUILTIN_VOCABULARIES / f"{category}.yaml"

    def get(self, category: str) -> StageVocabulary | None:
        if category in self._cache:
            return self._cache[category]
        vocabulary = None
        for path in self._candidates(category):
            if not path.is_file():
                continue
            try:
                vocabulary = StageVocabulary.model_validate(_load_definition_file(path))
                break
            except (OSError, yaml.YAMLError, PydanticValidationError) as exc:
                logger.warning('Failed to load vocabulary for "%s" from %s: %s', category, path, exc)
        if vocabulary is None:
            logger.warning('No vocabulary found for category "%s"; using default scoring', category)
        self._cache[category] = vocabulary
        return vocabulary
