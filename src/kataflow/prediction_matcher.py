"""Reconcile prediction observations against outcome observations.

Matching is a keyword heuristic: both texts are reduced to lowercase word
tokens minus a small stop-word list, and the overlap ratio is the share of
prediction keywords that appear (as substrings) in the outcome text. A
semantic matcher can replace :func:`overlap_ratio` without changing the
reflection contract: one ``validation`` or ``unmatched`` reflection per
prediction, written to the prediction's own scope.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any

from kataflow.observations import (
    CalibrationReflection,
    OutcomeObservation,
    PredictionObservation,
    RunTarget,
    UnmatchedReflection,
    ValidationReflection,
    describe_target,
)
from kataflow.run_store import RunStore, Target

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "will", "it", "this",
        "that", "of", "in", "to", "for", "with", "by",
    }
)
CORRECT_THRESHOLD = 0.6
NO_OUTCOME_REASON = "no-outcome-found"

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def extract_keywords(text: str) -> list[str]:
    words = (_NON_ALNUM.sub("", word) for word in text.lower().split())
    return [w for w in words if w and w not in STOP_WORDS]


def overlap_ratio(prediction: str, outcome: str) -> float:
    """Fraction of prediction keywords found in *outcome*; 0 when there are none."""
    keywords = extract_keywords(prediction)
    if not keywords:
        return 0.0
    outcome_text = outcome.lower()
    hits = sum(1 for kw in keywords if kw in outcome_text)
    return hits / len(keywords)


@dataclass
class MatchResult:
    run_id: str
    matched: list[dict[str, Any]] = field(default_factory=list)
    unmatched: list[dict[str, Any]] = field(default_factory=list)
    reflections_written: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _scope_key(target: Target) -> str:
    return f"{target.level}:{describe_target(target)}"


class PredictionMatcher:
    """Greedy per-scope matching of predictions to outcomes."""

    def __init__(self, run_store: RunStore) -> None:
        self.store = run_store

    def match(self, run_id: str) -> MatchResult:
        scopes: dict[str, Target] = {}
        predictions: dict[str, list[PredictionObservation]] = defaultdict(list)
        outcomes: dict[str, list[OutcomeObservation]] = defaultdict(list)
        for target, obs in self.store.read_all_observations(run_id):
            key = _scope_key(target)
            scopes.setdefault(key, target)
            if isinstance(obs, PredictionObservation):
                predictions[key].append(obs)
            elif isinstance(obs, OutcomeObservation):
                outcomes[key].append(obs)

        result = MatchResult(run_id=run_id)
        for key, scope_predictions in predictions.items():
            target = scopes[key]
            used: set[str] = set()
            for prediction in scope_predictions:
                best: OutcomeObservation | None = None
                best_ratio = 0.0
                for outcome in outcomes.get(key, []):
                    if outcome.id in used:
                        continue
                    ratio = overlap_ratio(prediction.content, outcome.content)
                    # strict ">" keeps the first outcome on ties
                    if ratio > best_ratio:
                        best, best_ratio = outcome, ratio

                if best is not None:
                    used.add(best.id)
                    correct = best_ratio >= CORRECT_THRESHOLD
                    self.store.append_reflection(
                        run_id,
                        target,
                        ValidationReflection(
                            observation_ids=[prediction.id, best.id],
                            prediction_id=prediction.id,
                            outcome_id=best.id,
                            correct=correct,
                            notes=f"keyword overlap ratio {best_ratio:.2f}",
                        ),
                    )
                    result.matched.append(
                        {
                            "prediction_id": prediction.id,
                            "outcome_id": best.id,
                            "correct": correct,
                            "ratio": round(best_ratio, 4),
                        }
                    )
                else:
                    self.store.append_reflection(
                        run_id,
                        target,
                        UnmatchedReflection(
                            observation_ids=[prediction.id],
                            prediction_id=prediction.id,
                            reason=NO_OUTCOME_REASON,
                        ),
                    )
                    result.unmatched.append(
                        {"prediction_id": prediction.id, "reason": NO_OUTCOME_REASON}
                    )
                result.reflections_written += 1

        logger.info(
            "Matched predictions for run %s: %d matched, %d unmatched",
            run_id,
            len(result.matched),
            len(result.unmatched),
        )
        return result


def _bias(accuracy: float) -> str:
    if accuracy < 0.5:
        return "overconfident"
    if accuracy < 0.8:
        return "accurate"
    return "underconfident"


class CalibrationDetector:
    """Roll validation reflections up into one calibration reflection per domain.

    The domain of a prediction is its quantitative metric, or ``general`` for
    qualitative and free-text predictions. Calibration reflections are written
    at run level.
    """

    def __init__(self, run_store: RunStore) -> None:
        self.store = run_store

    def detect(self, run_id: str) -> list[CalibrationReflection]:
        domains: dict[str, str] = {}
        for _target, obs in self.store.read_all_observations(run_id):
            if isinstance(obs, PredictionObservation):
                domains[obs.id] = obs.quantitative.metric if obs.quantitative else "general"

        grouped: dict[str, list[ValidationReflection]] = defaultdict(list)
        for _target, ref in self.store.read_all_reflections(run_id):
            if isinstance(ref, ValidationReflection):
                grouped[domains.get(ref.prediction_id, "general")].append(ref)

        written: list[CalibrationReflection] = []
        for domain, validations in sorted(grouped.items()):
            total = len(validations)
            if total < 1:
                continue
            correct = sum(1 for v in validations if v.correct)
            accuracy = correct / total
            reflection = CalibrationReflection(
                observation_ids=[v.prediction_id for v in validations],
                domain=domain,
                total_predictions=total,
                correct_predictions=correct,
                accuracy_rate=accuracy,
                bias=_bias(accuracy),
            )
            written.append(self.store.append_reflection(run_id, RunTarget(), reflection))
            logger.debug("Calibration for %s/%s: %.2f (%s)", run_id, domain, accuracy, reflection.bias)
        return written
