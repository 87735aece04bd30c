"""Decision Ledger: append-only decisions with outcomes merged at read time.

Decisions are never edited in place. Outcomes live in a companion log
(``decision-outcomes.jsonl``) and are attached on read: per decision id the
entry with the greatest ``updated_at`` wins; entries with equal timestamps
resolve to the one appearing later in the file (last seen wins).
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from kataflow import store
from kataflow.errors import DecisionNotFoundError, JsonStoreError, JsonStoreNotFoundError, ValidationError
from kataflow.run_store import RunStore, Target
from kataflow.schemas import (
    KNOWN_DECISION_TYPES,
    DecisionEntry,
    DecisionOutcomeEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def _timestamp_key(value: str) -> dt.datetime:
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable outcome timestamp %r; treating as oldest", value)
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def merge_outcomes(entries: list[DecisionOutcomeEntry]) -> dict[str, DecisionOutcomeEntry]:
    """Keep the latest outcome per decision id (ties: last seen wins)."""
    latest: dict[str, DecisionOutcomeEntry] = {}
    for entry in entries:
        current = latest.get(entry.decision_id)
        if current is None or _timestamp_key(entry.updated_at) >= _timestamp_key(current.updated_at):
            latest[entry.decision_id] = entry
    return latest


@dataclass
class DecisionWithOutcome:
    """A decision plus whichever outcome currently wins the merge (if any)."""

    decision: DecisionEntry
    latest_outcome: DecisionOutcomeEntry | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = self.decision.model_dump(mode="json")
        payload["latest_outcome"] = (
            self.latest_outcome.model_dump(mode="json") if self.latest_outcome else None
        )
        return payload


class DecisionLedger:
    """Per-run ledger of decisions, outcomes, observations, and reflections."""

    def __init__(self, run_store: RunStore, run_id: str) -> None:
        self.store = run_store
        self.run_id = run_id
        self.paths = run_store.paths(run_id)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def record(
        self,
        *,
        stage_category: str,
        decision_type: str,
        options: list[str],
        selection: str,
        reasoning: str,
        confidence: float,
        context: dict[str, Any] | None = None,
        flavor: str | None = None,
        step: str | None = None,
        low_confidence: bool | None = None,
    ) -> DecisionEntry:
        """Append a decision and link its id from the stage state."""
        if decision_type not in KNOWN_DECISION_TYPES:
            logger.warning(
                'Unknown decision type "%s". Known types: %s',
                decision_type,
                ", ".join(sorted(KNOWN_DECISION_TYPES)),
            )
        try:
            entry = DecisionEntry(
                stage_category=stage_category,
                flavor=flavor,
                step=step,
                decision_type=decision_type,
                context=context or {},
                options=list(options),
                selection=selection,
                reasoning=reasoning,
                confidence=confidence,
                decided_at=utc_now(),
                low_confidence=low_confidence,
            )
        except PydanticValidationError as exc:
            raise ValidationError("Invalid DecisionEntry", store.format_issues(exc)) from exc

        with self._lock:
            store.append_jsonl(self.paths.decisions_jsonl, entry, DecisionEntry)
            self._link_to_stage(entry)
        logger.debug("Recorded %s decision %s (%s)", decision_type, entry.id, selection)
        return entry

    def _link_to_stage(self, entry: DecisionEntry) -> None:
        try:
            state = self.store.read_stage_state(self.run_id, entry.stage_category)
            if entry.id not in state.decisions:
                state.decisions.append(entry.id)
                self.store.write_stage_state(self.run_id, state)
        except (JsonStoreNotFoundError, JsonStoreError, ValidationError, OSError) as exc:
            logger.warning(
                'Could not link decision %s to stage "%s" of run %s: %s',
                entry.id,
                entry.stage_category,
                self.run_id,
                exc,
            )

    def read_decisions(self) -> list[DecisionEntry]:
        return store.read_jsonl(self.paths.decisions_jsonl, DecisionEntry)

    def read_outcomes(self) -> list[DecisionOutcomeEntry]:
        return store.read_jsonl(self.paths.decision_outcomes_jsonl, DecisionOutcomeEntry)

    def list_decisions(
        self,
        *,
        stage_category: str | None = None,
        decision_type: str | None = None,
    ) -> list[DecisionWithOutcome]:
        """Return decisions in append order, each joined with its latest outcome."""
        latest = merge_outcomes(self.read_outcomes())
        merged: list[DecisionWithOutcome] = []
        for decision in self.read_decisions():
            if stage_category and decision.stage_category != stage_category:
                continue
            if decision_type and decision.decision_type != decision_type:
                continue
            merged.append(DecisionWithOutcome(decision, latest.get(decision.id)))
        return merged

    def get(self, decision_id: str) -> DecisionWithOutcome:
        for item in self.list_decisions():
            if item.decision.id == decision_id:
                return item
        raise DecisionNotFoundError(decision_id, self.run_id)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        decision_id: str,
        outcome: str,
        *,
        notes: str | None = None,
        user_overrides: str | None = None,
        updated_at: str | None = None,
    ) -> DecisionOutcomeEntry:
        """Append an outcome for an existing decision."""
        if not any(d.id == decision_id for d in self.read_decisions()):
            raise DecisionNotFoundError(decision_id, self.run_id)
        entry = {
            "decision_id": decision_id,
            "outcome": outcome,
            "notes": notes,
            "user_overrides": user_overrides,
            "updated_at": updated_at or utc_now(),
        }
        with self._lock:
            return store.append_jsonl(self.paths.decision_outcomes_jsonl, entry, DecisionOutcomeEntry)

    # ------------------------------------------------------------------
    # Observations / reflections
    # ------------------------------------------------------------------

    def observe(self, target: Target, observation: Any) -> Any:
        return self.store.append_observation(self.run_id, target, observation)

    def reflect(self, target: Target, reflection: Any) -> Any:
        return self.store.append_reflection(self.run_id, target, reflection)
