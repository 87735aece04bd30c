"""Tests for the validated JSON / JSONL primitives."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from kataflow import store
from kataflow.errors import JsonStoreError, JsonStoreNotFoundError, ValidationError
from kataflow.schemas import DecisionOutcomeEntry, Run

pytestmark = pytest.mark.unit


def _run(**overrides) -> Run:
    fields = {"cycle_id": "c1", "bet_id": "b1", "bet_prompt": "Ship search", "stage_sequence": ["research"]}
    fields.update(overrides)
    return Run(**fields)


def test_write_then_read_returns_equal_model(tmp_path: Path) -> None:
    path = tmp_path / "docs" / "run.json"
    run = _run()

    store.write_json(path, run, Run)

    assert store.json_exists(path)
    assert store.read_json(path, Run) == run


def test_write_rejects_invalid_record_and_writes_nothing(tmp_path: Path) -> None:
    path = tmp_path / "run.json"
    run = _run()
    run.stage_sequence = ["deploy"]  # mutated after construction

    with pytest.raises(ValidationError) as exc_info:
        store.write_json(path, run, Run)

    assert exc_info.value.issues
    assert "Run" in str(exc_info.value)
    assert not path.exists()


def test_read_missing_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(JsonStoreNotFoundError):
        store.read_json(tmp_path / "missing.json", Run)


def test_read_corrupt_document_carries_path(tmp_path: Path) -> None:
    path = tmp_path / "run.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(JsonStoreError) as exc_info:
        store.read_json(path, Run)

    assert exc_info.value.path == path


def test_list_json_skips_invalid_documents(caplog, tmp_path: Path) -> None:
    store.write_json(tmp_path / "a.json", _run(bet_id="a"), Run)
    (tmp_path / "b.json").write_text('{"cycle_id": "c"}', encoding="utf-8")
    store.write_json(tmp_path / "c.json", _run(bet_id="c"), Run)

    with caplog.at_level(logging.WARNING):
        runs = store.list_json(tmp_path, Run)

    assert [r.bet_id for r in runs] == ["a", "c"]
    assert "b.json" in caplog.text


def test_append_jsonl_creates_parents_lazily(tmp_path: Path) -> None:
    path = tmp_path / "deep" / "nested" / "outcomes.jsonl"

    store.append_jsonl(path, {"decision_id": "d1", "outcome": "good"}, DecisionOutcomeEntry)

    assert path.is_file()
    assert [e.decision_id for e in store.read_jsonl(path, DecisionOutcomeEntry)] == ["d1"]


def test_append_jsonl_rejects_invalid_record(tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"

    with pytest.raises(ValidationError):
        store.append_jsonl(path, {"decision_id": "d1", "outcome": "great"}, DecisionOutcomeEntry)

    assert not path.exists()


def test_read_jsonl_missing_file_is_empty(tmp_path: Path) -> None:
    assert store.read_jsonl(tmp_path / "none.jsonl", DecisionOutcomeEntry) == []


def test_read_jsonl_skips_malformed_lines_preserving_order(caplog, tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"
    lines = [
        json.dumps({"decision_id": "d1", "outcome": "good"}),
        "{truncated",
        json.dumps({"decision_id": "d2", "outcome": "not-a-quality"}),
        "",
        json.dumps({"decision_id": "d3", "outcome": "poor"}),
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        entries = store.read_jsonl(path, DecisionOutcomeEntry)

    assert [e.decision_id for e in entries] == ["d1", "d3"]
    assert caplog.text.count("Skip invalid line") == 2


def test_read_jsonl_skips_line_with_broken_utf8(caplog, tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"
    good = [json.dumps({"decision_id": d, "outcome": "good"}).encode("utf-8") for d in ("d1", "d2")]
    path.write_bytes(good[0] + b"\n" + b'{"bad": "\xff\xfe"}\n' + good[1] + b"\n")

    with caplog.at_level(logging.WARNING):
        entries = store.read_jsonl(path, DecisionOutcomeEntry)

    assert [e.decision_id for e in entries] == ["d1", "d2"]
    assert f"Skip invalid line {path}:2" in caplog.text


def test_read_json_with_broken_utf8_is_a_store_error(tmp_path: Path) -> None:
    path = tmp_path / "run.json"
    path.write_bytes(b'{"bet_id": "\xff"}')

    with pytest.raises(JsonStoreError, match="not valid UTF-8") as exc_info:
        store.read_json(path, Run)

    assert exc_info.value.path == path
