from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from kataflow.config import (
    KataConfig,
    load_config,
    resolve_kata_dir,
    write_default_config,
)
from kataflow.errors import ConfigError

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KATAFLOW_DIR", "KATAFLOW_ADAPTER", "KATAFLOW_YOLO"):
        monkeypatch.delenv(name, raising=False)


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path)

    assert config == KataConfig()
    assert config.execution.adapter == "manual"
    assert config.orchestration.confidence_threshold == 0.7
    assert config.runs_dir(tmp_path) == tmp_path / "runs"


def test_partial_config_is_merged_with_defaults(tmp_path: Path) -> None:
    (tmp_path / "config.yaml").write_text(
        "orchestration:\n  max_parallel_flavors: 5\npaths:\n  runs_dir: /var/kata/runs\n",
        encoding="utf-8",
    )

    config = load_config(tmp_path)

    assert config.orchestration.max_parallel_flavors == 5
    assert config.orchestration.confidence_threshold == 0.7
    assert config.runs_dir(tmp_path) == Path("/var/kata/runs")


@pytest.mark.parametrize(
    "content",
    ["orchestration: [unclosed\n", "- just\n- a list\n", "orchestration:\n  confidence_threshold: 2\n"],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    (tmp_path / "config.yaml").write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_environment_overrides_adapter_and_yolo(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("KATAFLOW_ADAPTER", "claude-cli")
    monkeypatch.setenv("KATAFLOW_YOLO", "yes")

    config = load_config(tmp_path)

    assert config.execution.adapter == "claude-cli"
    assert config.orchestration.yolo is True


def test_unrecognized_yolo_value_is_ignored(caplog, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("KATAFLOW_YOLO", "maybe")

    assert load_config(tmp_path).orchestration.yolo is False
    assert "KATAFLOW_YOLO" in caplog.text


def test_resolve_kata_dir_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    assert resolve_kata_dir() == Path(".kata")
    monkeypatch.setenv("KATAFLOW_DIR", str(tmp_path / "env-kata"))
    assert resolve_kata_dir() == tmp_path / "env-kata"
    assert resolve_kata_dir(tmp_path / "flag") == tmp_path / "flag"


def test_write_default_config_keeps_existing_file(tmp_path: Path) -> None:
    kata = tmp_path / ".kata"
    path = write_default_config(kata)

    written = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert written["execution"]["adapter"] == "manual"

    path.write_text("execution:\n  adapter: claude-cli\n", encoding="utf-8")
    write_default_config(kata)

    assert load_config(kata).execution.adapter == "claude-cli"
