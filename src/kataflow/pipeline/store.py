"""JSON persistence for pipelines: one ``<id>.json`` per pipeline."""

from __future__ import annotations

from pathlib import Path

from kataflow import store
from kataflow.errors import JsonStoreNotFoundError, PipelineNotFoundError
from kataflow.pipeline.models import Pipeline


class PipelineStore:
    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _path(self, pipeline_id: str) -> Path:
        return self.base_dir / f"{pipeline_id}.json"

    def save(self, pipeline: Pipeline) -> Pipeline:
        return store.write_json(self._path(pipeline.id), pipeline, Pipeline)

    def load(self, pipeline_id: str) -> Pipeline:
        try:
            return store.read_json(self._path(pipeline_id), Pipeline)
        except JsonStoreNotFoundError as exc:
            raise PipelineNotFoundError(pipeline_id) from exc

    def list(self) -> list[Pipeline]:
        return store.list_json(self.base_dir, Pipeline)
