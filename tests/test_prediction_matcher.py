from __future__ import annotations

from pathlib import Path

import pytest

from kataflow.observations import (
    CalibrationReflection,
    FlavorTarget,
    OutcomeObservation,
    PredictionObservation,
    QuantitativePrediction,
    RunTarget,
    StageTarget,
    UnmatchedReflection,
    ValidationReflection,
)
from kataflow.prediction_matcher import (
    CalibrationDetector,
    PredictionMatcher,
    extract_keywords,
    overlap_ratio,
)
from kataflow.run_store import RunStore
from kataflow.schemas import Run

pytestmark = pytest.mark.unit


@pytest.fixture
def runs(tmp_path: Path) -> RunStore:
    return RunStore(tmp_path / "runs")


@pytest.fixture
def run_id(runs: RunStore) -> str:
    run = runs.create_tree(
        Run(cycle_id="c", bet_id="b", bet_prompt="Ship it", stage_sequence=["build", "review"])
    )
    return run.id


def test_extract_keywords_drops_stop_words_and_punctuation() -> None:
    assert extract_keywords("The API will be FAST, with caching.") == ["api", "be", "fast", "caching"]


def test_overlap_ratio_of_all_stop_words_is_zero() -> None:
    assert overlap_ratio("it is the", "it is the") == 0.0


def test_strong_overlap_is_matched_correct(runs: RunStore, run_id: str) -> None:
    prediction = runs.append_observation(
        run_id, RunTarget(), PredictionObservation(content="deploy service kubernetes cluster production")
    )
    outcome = runs.append_observation(
        run_id,
        RunTarget(),
        OutcomeObservation(content="deployed service to kubernetes cluster in production environment"),
    )

    result = PredictionMatcher(runs).match(run_id)

    assert result.matched == [
        {"prediction_id": prediction.id, "outcome_id": outcome.id, "correct": True, "ratio": 1.0}
    ]
    [reflection] = runs.read_reflections(run_id)
    assert isinstance(reflection, ValidationReflection)
    assert reflection.correct is True
    assert reflection.observation_ids == [prediction.id, outcome.id]


def test_weak_overlap_is_matched_incorrect(runs: RunStore, run_id: str) -> None:
    runs.append_observation(
        run_id, RunTarget(), PredictionObservation(content="deploy release staging environment smoke")
    )
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="deploy completed"))

    result = PredictionMatcher(runs).match(run_id)

    [match] = result.matched
    assert match["correct"] is False
    assert match["ratio"] == pytest.approx(0.2)


def test_prediction_without_outcome_is_unmatched(runs: RunStore, run_id: str) -> None:
    target = StageTarget(category="build")
    prediction = runs.append_observation(
        run_id, target, PredictionObservation(content="build finishes under ten minutes")
    )
    # outcomes at another scope are not considered
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="build finishes under ten minutes"))

    result = PredictionMatcher(runs).match(run_id)

    assert result.unmatched == [{"prediction_id": prediction.id, "reason": "no-outcome-found"}]
    [reflection] = runs.read_reflections(run_id, target)
    assert isinstance(reflection, UnmatchedReflection)
    assert reflection.reason == "no-outcome-found"


def test_zero_overlap_outcome_counts_as_unmatched(runs: RunStore, run_id: str) -> None:
    runs.append_observation(run_id, RunTarget(), PredictionObservation(content="latency drops"))
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="docs were updated"))

    result = PredictionMatcher(runs).match(run_id)

    assert result.matched == []
    assert len(result.unmatched) == 1


def test_each_outcome_is_consumed_once_per_scope(runs: RunStore, run_id: str) -> None:
    target = FlavorTarget(category="build", flavor="tdd")
    runs.append_observation(run_id, target, PredictionObservation(content="tests pass first try"))
    runs.append_observation(run_id, target, PredictionObservation(content="tests pass first try"))
    runs.append_observation(run_id, target, OutcomeObservation(content="tests pass on first try"))

    result = PredictionMatcher(runs).match(run_id)

    assert len(result.matched) == 1
    assert len(result.unmatched) == 1
    assert result.reflections_written == 2
    assert len(runs.read_reflections(run_id, target)) == 2


def test_ties_keep_first_outcome(runs: RunStore, run_id: str) -> None:
    runs.append_observation(run_id, RunTarget(), PredictionObservation(content="cache warms quickly"))
    first = runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="cache warms"))
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="cache warms"))

    result = PredictionMatcher(runs).match(run_id)

    assert result.matched[0]["outcome_id"] == first.id


def test_calibration_groups_by_metric_domain(runs: RunStore, run_id: str) -> None:
    runs.append_observation(
        run_id,
        RunTarget(),
        PredictionObservation(
            content="p95 latency under 200 ms",
            quantitative=QuantitativePrediction(metric="latency", predicted=200, unit="ms"),
        ),
    )
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="p95 latency under 200 ms observed"))
    runs.append_observation(run_id, RunTarget(), PredictionObservation(content="reviewers approve quickly"))
    runs.append_observation(run_id, RunTarget(), OutcomeObservation(content="reviewers requested changes"))
    PredictionMatcher(runs).match(run_id)

    calibrations = CalibrationDetector(runs).detect(run_id)

    by_domain = {c.domain: c for c in calibrations}
    assert set(by_domain) == {"general", "latency"}
    assert by_domain["latency"].accuracy_rate == 1.0
    assert by_domain["latency"].bias == "underconfident"
    assert by_domain["general"].correct_predictions == 0
    assert by_domain["general"].bias == "overconfident"
    stored = [r for r in runs.read_reflections(run_id) if isinstance(r, CalibrationReflection)]
    assert len(stored) == 2


def test_calibration_without_validations_writes_nothing(runs: RunStore, run_id: str) -> None:
    assert CalibrationDetector(runs).detect(run_id) == []
    assert runs.read_reflections(run_id) == []
