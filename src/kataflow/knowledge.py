"""Minimal learning store: stage-tier and category-tier retrieval."""

from __future__ import annotations

import logging
from pathlib import Path

from kataflow import store
from kataflow.schemas import Learning, LearningEvidence, utc_now

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "default"


class KnowledgeStore:
    """Learnings in ``learnings.jsonl`` plus agent subscriptions in ``subscriptions.json``.

    Subscriptions map an agent id to the categories whose category-tier
    learnings it loads. The ``default`` agent loads every category unless it
    has an explicit subscription entry.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.learnings_path = self.base_dir / "learnings.jsonl"
        self.subscriptions_path = self.base_dir / "subscriptions.json"

    def list_all(self) -> list[Learning]:
        return store.read_jsonl(self.learnings_path, Learning)

    def load_for_stage(self, stage_type: str) -> list[Learning]:
        return [
            learning
            for learning in self.list_all()
            if learning.tier == "stage" and learning.stage_type == stage_type
        ]

    def load_for_subscriptions(self, agent_id: str) -> list[Learning]:
        subscriptions = self.subscriptions()
        category_learnings = [learning for learning in self.list_all() if learning.tier == "category"]
        if agent_id not in subscriptions:
            return category_learnings if agent_id == DEFAULT_AGENT else []
        wanted = set(subscriptions[agent_id])
        return [learning for learning in category_learnings if learning.category in wanted]

    def subscriptions(self) -> dict[str, list[str]]:
        if not store.json_exists(self.subscriptions_path):
            return {}
        return store.read_json(self.subscriptions_path, dict[str, list[str]])

    def subscribe(self, agent_id: str, categories: list[str]) -> list[str]:
        all_subs = self.subscriptions()
        merged = list(dict.fromkeys([*all_subs.get(agent_id, []), *categories]))
        all_subs[agent_id] = merged
        store.write_json(self.subscriptions_path, all_subs, dict[str, list[str]])
        return merged

    def capture(
        self,
        *,
        tier: str,
        category: str,
        content: str,
        confidence: float = 0.5,
        stage_type: str | None = None,
        agent_id: str | None = None,
        evidence: list[LearningEvidence] | None = None,
    ) -> Learning:
        now = utc_now()
        learning = Learning(
            tier=tier,
            category=category,
            content=content,
            confidence=confidence,
            stage_type=stage_type,
            agent_id=agent_id,
            evidence=list(evidence or []),
            created_at=now,
            updated_at=now,
        )
        validated = store.append_jsonl(self.learnings_path, learning, Learning)
        logger.debug("Captured %s learning %s (%s)", tier, validated.id, category)
        return validated
