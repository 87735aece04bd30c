"""Tests for atomic writes, locked appends, and run-directory leases."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from pathlib import Path

import pytest

import kataflow.file_io as file_io
from kataflow.errors import RunLockedError

pytestmark = pytest.mark.unit


def _scripted_replace(monkeypatch: pytest.MonkeyPatch, failures: list[OSError]) -> list[float]:
    """Make ``Path.replace`` raise each queued error once, then behave normally."""
    real_replace = Path.replace

    def replace(self: Path, target: Path) -> Path:
        if failures:
            raise failures.pop(0)
        return real_replace(self, target)

    naps: list[float] = []
    monkeypatch.setattr(Path, "replace", replace)
    monkeypatch.setattr(file_io.time, "sleep", naps.append)
    return naps


def test_locked_run_json_is_replaced_after_transient_denials(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    staged = tmp_path / "run.json.tmp"
    run_json = tmp_path / "run.json"
    staged.write_text('{"status": "running"}', encoding="utf-8")
    run_json.write_text('{"status": "pending"}', encoding="utf-8")
    naps = _scripted_replace(monkeypatch, [PermissionError("locked"), OSError(13, "denied")])

    file_io._replace_file_with_retry(staged, run_json)

    assert run_json.read_text(encoding="utf-8") == '{"status": "running"}'
    assert len(naps) == 2


def test_replace_gives_up_on_other_errors_and_on_persistent_locks(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    staged = tmp_path / "stage.json.tmp"
    staged.write_text("{}", encoding="utf-8")

    _scripted_replace(monkeypatch, [OSError(28, "no space left")])
    with pytest.raises(OSError, match="no space left"):
        file_io._replace_file_with_retry(staged, tmp_path / "stage.json")

    naps = _scripted_replace(
        monkeypatch, [PermissionError("locked") for _ in range(file_io._ATOMIC_REPLACE_MAX_RETRIES)]
    )
    with pytest.raises(PermissionError):
        file_io._replace_file_with_retry(staged, tmp_path / "stage.json")
    assert len(naps) == file_io._ATOMIC_REPLACE_MAX_RETRIES - 1


def test_atomic_write_text_creates_parents_and_replaces_content(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.json"

    file_io.atomic_write_text(path, "old")
    file_io.atomic_write_text(path, "new")

    assert path.read_text(encoding="utf-8") == "new"


def test_atomic_write_text_cleans_temp_file_when_replace_raises(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / "stages" / "state.json"

    def busy(_src: Path, _dst: Path) -> None:
        raise PermissionError("busy")

    monkeypatch.setattr(file_io, "_replace_file_with_retry", busy)

    with pytest.raises(PermissionError):
        file_io.atomic_write_text(path, "content")

    assert list(path.parent.glob(f"{path.name}.*.tmp")) == []
    assert not path.exists()


def test_append_line_terminates_each_line(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "events.jsonl"

    file_io.append_line(path, '{"a": 1}')
    file_io.append_line(path, '{"a": 2}\n')

    assert path.read_text(encoding="utf-8") == '{"a": 1}\n{"a": 2}\n'


def test_exclusive_lease_writes_pid_and_releases(tmp_path: Path) -> None:
    lock_file = tmp_path / "run" / ".lock"

    with file_io.exclusive_lease(lock_file):
        assert lock_file.read_text(encoding="utf-8") == str(os.getpid())

    assert not lock_file.exists()


def test_exclusive_lease_is_reentrant_within_process(tmp_path: Path) -> None:
    lock_file = tmp_path / ".lock"

    with file_io.exclusive_lease(lock_file):
        with file_io.exclusive_lease(lock_file, timeout_seconds=0.01):
            assert lock_file.exists()
        assert lock_file.exists()

    assert not lock_file.exists()


def test_exclusive_lease_times_out_while_owner_is_alive(tmp_path: Path) -> None:
    lock_file = tmp_path / ".lock"
    owner = str(os.getppid())
    lock_file.write_text(owner, encoding="utf-8")

    with pytest.raises(RunLockedError, match=f"held by pid {owner}"):
        with file_io.exclusive_lease(lock_file, timeout_seconds=0.05):
            pass

    assert lock_file.read_text(encoding="utf-8") == owner


@pytest.mark.skipif(os.name == "nt", reason="liveness probe is POSIX-only")
def test_exclusive_lease_takes_over_lock_of_dead_process(caplog, tmp_path: Path) -> None:
    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    lock_file = tmp_path / "run" / ".lock"
    lock_file.parent.mkdir()
    lock_file.write_text(str(finished.pid), encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        with file_io.exclusive_lease(lock_file, timeout_seconds=0.05):
            assert lock_file.read_text(encoding="utf-8") == str(os.getpid())

    assert not lock_file.exists()
    assert f"left by dead pid {finished.pid}" in caplog.text


def test_exclusive_lease_does_not_nest_across_threads(tmp_path: Path) -> None:
    lock_file = tmp_path / ".lock"
    errors: list[BaseException] = []

    def contend() -> None:
        try:
            with file_io.exclusive_lease(lock_file, timeout_seconds=0.05):
                pass
        except RunLockedError as exc:
            errors.append(exc)

    with file_io.exclusive_lease(lock_file):
        worker = threading.Thread(target=contend)
        worker.start()
        worker.join()
        assert lock_file.exists()

    assert len(errors) == 1
    assert not lock_file.exists()
