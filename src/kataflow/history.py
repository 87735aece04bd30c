"""Execution history entries and per-stage token usage."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from kataflow import store
from kataflow.errors import JsonStoreError
from kataflow.schemas import ExecutionHistoryEntry, ExecutionResult, TokenUsage, utc_now

logger = logging.getLogger(__name__)


class ResultCapturer:
    """Persist one :class:`ExecutionHistoryEntry` per adapter execution."""

    def __init__(self, base_dir: str | Path) -> None:
        self.history_dir = Path(base_dir) / "history"

    def capture(
        self,
        *,
        pipeline_id: str,
        stage_type: str,
        stage_index: int,
        adapter_name: str,
        result: ExecutionResult,
        stage_flavor: str | None = None,
        cycle_id: str | None = None,
        bet_id: str | None = None,
        started_at: str | None = None,
        entry_gate_passed: bool | None = None,
        learning_ids: list[str] | None = None,
    ) -> ExecutionHistoryEntry:
        entry = ExecutionHistoryEntry(
            pipeline_id=pipeline_id,
            stage_type=stage_type,
            stage_flavor=stage_flavor,
            stage_index=stage_index,
            adapter=adapter_name,
            token_usage=result.token_usage,
            duration_ms=result.duration_ms,
            artifact_names=[a.name for a in result.artifacts],
            entry_gate_passed=entry_gate_passed,
            learning_ids=list(learning_ids or []),
            cycle_id=cycle_id,
            bet_id=bet_id,
            started_at=started_at or utc_now(),
            completed_at=result.completed_at,
        )
        return store.write_json(self.history_dir / f"{entry.id}.json", entry, ExecutionHistoryEntry)

    def update(self, entry: ExecutionHistoryEntry) -> ExecutionHistoryEntry:
        return store.write_json(self.history_dir / f"{entry.id}.json", entry, ExecutionHistoryEntry)

    def get_for_pipeline(self, pipeline_id: str) -> list[ExecutionHistoryEntry]:
        return [e for e in self.list_all() if e.pipeline_id == pipeline_id]

    def list_all(self) -> list[ExecutionHistoryEntry]:
        return store.list_json(self.history_dir, ExecutionHistoryEntry)


class AttributedUsage(TokenUsage):
    bet_id: str | None = None


class TokenTracker:
    """Token usage keyed by ``"<pipeline_id>:<stage_index>"`` in ``usage.json``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.usage_path = Path(base_dir) / "usage.json"
        self._lock = threading.RLock()

    def _load(self) -> dict[str, AttributedUsage]:
        if not store.json_exists(self.usage_path):
            return {}
        try:
            return store.read_json(self.usage_path, dict[str, AttributedUsage])
        except JsonStoreError as exc:
            logger.error("Could not load token usage from %s: %s", self.usage_path, exc)
            return {}

    def record_usage(self, key: str, usage: TokenUsage, bet_id: str | None = None) -> AttributedUsage:
        with self._lock:
            records = self._load()
            record = AttributedUsage(**usage.model_dump(), bet_id=bet_id)
            records[key] = record
            store.write_json(self.usage_path, records, dict[str, AttributedUsage])
        return record

    def get_usage(self, key: str) -> AttributedUsage | None:
        return self._load().get(key)

    def get_usage_by_bet(self, bet_id: str) -> int:
        return sum(u.total for u in self._load().values() if u.bet_id == bet_id)

    def total_usage(self) -> int:
        return sum(u.total for u in self._load().values())
