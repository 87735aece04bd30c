"""Tests for the step, flavor, rule, and vocabulary registries."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from kataflow.definitions import Artifact, Flavor, Gate, GateCondition, Step
from kataflow.errors import FlavorNotFoundError, RuleNotFoundError, StepNotFoundError, ValidationError
from kataflow.registries import FlavorRegistry, RuleRegistry, StepRegistry, VocabularyRegistry

pytestmark = pytest.mark.unit


def _flavor(name: str = "tdd", **overrides) -> dict:
    data = {
        "name": name,
        "stage_category": "build",
        "steps": [
            {"step_name": "write-tests", "step_type": "write-tests"},
            {"step_name": "implement", "step_type": "implement"},
        ],
        "synthesis_artifact": "code",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def test_step_registry_persists_and_reloads(tmp_path: Path) -> None:
    StepRegistry(tmp_path).register(Step(type="research", stage_category="research"))
    StepRegistry(tmp_path).register({"type": "research", "flavor": "deep", "stage_category": "research"})

    fresh = StepRegistry(tmp_path)

    assert (tmp_path / "research.json").is_file()
    assert (tmp_path / "research.deep.json").is_file()
    assert fresh.get("research").flavor is None
    assert fresh.get("research", "deep").flavor == "deep"
    assert [s.flavor for s in fresh.list("research")] == [None, "deep"]


def test_step_registry_missing_step_raises(tmp_path: Path) -> None:
    with pytest.raises(StepNotFoundError, match="build.fast"):
        StepRegistry(tmp_path).get("build", "fast")


def test_step_registry_rejects_invalid_step(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        StepRegistry(tmp_path).register({"type": "", "stage_category": "build"})


def test_step_definitions_load_from_yaml_skipping_invalid(caplog, tmp_path: Path) -> None:
    defs = tmp_path / "defs"
    defs.mkdir()
    (defs / "plan.yaml").write_text("type: plan\nstage_category: plan\nprompt_template: Plan it.\n", encoding="utf-8")
    (defs / "broken.yaml").write_text("type: [unclosed\n", encoding="utf-8")
    (defs / "notes.txt").write_text("ignored", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        loaded = StepRegistry(tmp_path / "steps").load_definitions(defs)

    assert [s.type for s in loaded] == ["plan"]
    assert "broken.yaml" in caplog.text


# ---------------------------------------------------------------------------
# Flavors
# ---------------------------------------------------------------------------


def test_flavor_registry_round_trip_and_delete(tmp_path: Path) -> None:
    registry = FlavorRegistry(tmp_path)
    registry.register(_flavor("tdd"))
    registry.register(_flavor("spike"))

    assert (tmp_path / "build.tdd.json").is_file()
    assert [f.name for f in FlavorRegistry(tmp_path).list("build")] == ["spike", "tdd"]
    assert [f.name for f in registry.list("build")] == ["tdd", "spike"]

    registry.delete("build", "tdd")

    assert not (tmp_path / "build.tdd.json").exists()
    with pytest.raises(FlavorNotFoundError):
        registry.get("build", "tdd")


def test_flavor_with_duplicate_step_names_is_rejected(tmp_path: Path) -> None:
    steps = [{"step_name": "x", "step_type": "a"}, {"step_name": "x", "step_type": "b"}]

    with pytest.raises(ValidationError, match="duplicate step names"):
        FlavorRegistry(tmp_path).register(_flavor(steps=steps))


def test_validate_reports_unknown_override_keys(tmp_path: Path) -> None:
    result = FlavorRegistry(tmp_path).validate(_flavor(overrides={"deploy": {"prompt_template": "x"}}))

    assert result.valid is False
    assert 'Override key "deploy"' in result.errors[0]


def test_validate_checks_artifact_order_and_synthesis(tmp_path: Path) -> None:
    steps = {
        "write-tests": Step(
            type="write-tests",
            entry_gate=Gate(
                type="entry",
                conditions=[GateCondition(type="artifact-exists", artifact_name="design")],
            ),
            artifacts=[Artifact(name="tests")],
        ),
        "implement": Step(type="implement", artifacts=[Artifact(name="design")]),
    }

    result = FlavorRegistry(tmp_path).validate(_flavor(), lambda name, _type: steps[name])

    assert result.valid is False
    assert any('produced by step "implement"' in e for e in result.errors)
    assert any('synthesis_artifact "code"' in e for e in result.errors)


def test_validate_accepts_well_ordered_flavor_with_stage_inputs(tmp_path: Path) -> None:
    steps = {
        "write-tests": Step(
            type="write-tests",
            entry_gate=Gate(
                type="entry",
                conditions=[GateCondition(type="artifact-exists", artifact_name="plan")],
            ),
            artifacts=[Artifact(name="tests")],
        ),
        "implement": Step(type="implement", artifacts=[Artifact(name="code")]),
    }

    result = FlavorRegistry(tmp_path).validate(
        Flavor.model_validate(_flavor()), lambda name, _type: steps[name], stage_inputs=["plan"]
    )

    assert result.to_dict() == {"valid": True, "errors": []}


def test_validate_reports_unresolvable_steps(tmp_path: Path) -> None:
    def resolver(name: str, step_type: str) -> Step:
        raise StepNotFoundError(step_type)

    result = FlavorRegistry(tmp_path).validate(_flavor(), resolver)

    assert any("could not be resolved" in e for e in result.errors)


# ---------------------------------------------------------------------------
# Rules and vocabularies
# ---------------------------------------------------------------------------


def test_rule_registry_add_load_remove(tmp_path: Path) -> None:
    registry = RuleRegistry(tmp_path)
    first = registry.add_rule(category="build", name="prefer tdd", condition="tdd", effect="boost", magnitude=0.2)
    registry.add_rule(category="build", name="no spikes", condition="spike", effect="exclude")
    registry.add_rule(category="plan", name="other", condition="x", effect="penalize", magnitude=0.1)

    assert [r.name for r in registry.load_rules("build")] == ["prefer tdd", "no spikes"]

    removed = registry.remove_rule(first.id)

    assert removed.name == "prefer tdd"
    assert [r.name for r in registry.load_rules("build")] == ["no spikes"]
    with pytest.raises(RuleNotFoundError):
        registry.remove_rule(first.id)


def test_rule_registry_rejects_unknown_effect(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        RuleRegistry(tmp_path).add_rule(category="build", name="bad", condition="x", effect="amplify")


def test_builtin_vocabulary_loads() -> None:
    vocabulary = VocabularyRegistry().get("build")

    assert "tdd" in vocabulary.keywords
    assert vocabulary.synthesis_preference == "first-wins"
    assert vocabulary.reasoning_template == "Build flavors scored against the plan and existing test assets."


def test_custom_vocabulary_replaces_builtin(tmp_path: Path) -> None:
    (tmp_path / "review.yaml").write_text(
        "category: review\nkeywords: [audit]\nsynthesis_preference: cascade\n",
        encoding="utf-8",
    )

    vocabulary = VocabularyRegistry(tmp_path).get("review")

    assert vocabulary.keywords == ["audit"]
    assert vocabulary.synthesis_preference == "cascade"


def test_broken_custom_vocabulary_falls_back_to_builtin(caplog, tmp_path: Path) -> None:
    (tmp_path / "plan.yaml").write_text("category: plan\nkeywords: []\n", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        vocabulary = VocabularyRegistry(tmp_path).get("plan")

    assert vocabulary is not None
    assert vocabulary.keywords
    assert "Failed to load vocabulary" in caplog.text
