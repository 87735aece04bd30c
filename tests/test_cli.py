"""End-to-end tests for the ``kataflow`` command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kataflow.__main__ import KATA_SUBDIRS, main
from kataflow.definitions import Flavor, Gate, GateCondition, Step
from kataflow.pipeline import Pipeline, PipelineStage, PipelineStore, StageRef
from kataflow.registries import FlavorRegistry, StepRegistry

pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KATAFLOW_DIR", "KATAFLOW_ADAPTER", "KATAFLOW_YOLO"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def kata(tmp_path: Path) -> Path:
    kata_dir = tmp_path / ".kata"
    assert main(["--kata-dir", str(kata_dir), "init"]) == 0
    return kata_dir


def _cli(kata: Path, *args: str) -> int:
    return main(["--kata-dir", str(kata), *args])


def _json(kata: Path, capsys, *args: str):
    capsys.readouterr()
    code = _cli(kata, "--json", *args)
    assert code == 0
    return json.loads(capsys.readouterr().out)


def _create_run(kata: Path, capsys, stages: str = "research,plan") -> str:
    payload = _json(kata, capsys, "run", "create", "--cycle", "c1", "--bet", "b1", "--prompt", "Ship search",
                    "--stages", stages)
    return payload["id"]


def test_init_creates_layout_and_config(kata: Path) -> None:
    assert (kata / "config.yaml").is_file()
    for name in KATA_SUBDIRS:
        assert (kata / name).is_dir()


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 1
    assert "usage: kataflow" in capsys.readouterr().out


def test_run_create_and_status(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    status = _json(kata, capsys, "run", "status", run_id)

    assert status["run"]["stage_sequence"] == ["research", "plan"]
    assert [s["status"] for s in status["stages"]] == ["pending", "pending"]
    assert _cli(kata, "run", "status", run_id) == 0
    assert "research" in capsys.readouterr().out


def test_invalid_stage_category_is_reported(kata: Path, capsys) -> None:
    code = _cli(kata, "run", "create", "--cycle", "c", "--bet", "b", "--prompt", "p", "--stages", "deploy")

    assert code == 1
    assert "Error:" in capsys.readouterr().err


def test_unknown_run_is_a_clean_error(kata: Path, capsys) -> None:
    assert _cli(kata, "run", "status", "nope") == 1
    assert 'Run "nope" not found' in capsys.readouterr().err


def test_missing_subcommand_is_reported(kata: Path, capsys) -> None:
    assert _cli(kata, "gate") == 1
    assert "missing gate subcommand" in capsys.readouterr().err


def test_gate_set_and_approve(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    state = _json(kata, capsys, "gate", "set", run_id, "plan", "plan-review")
    assert state["pending_gate"]["gate_id"] == "plan-review"

    assert _cli(kata, "gate", "set", run_id, "plan", "another") == 1
    assert "already has a pending gate" in capsys.readouterr().err

    approved = _json(kata, capsys, "gate", "approve", run_id, "plan", "--approver", "agent")
    assert approved["approver"] == "agent"

    assert _cli(kata, "gate", "approve", run_id, "plan") == 1
    assert "is not pending" in capsys.readouterr().err


def test_decision_record_update_list(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    entry = _json(kata, capsys, "decision", "record", run_id, "--stage", "plan", "--type", "flavor-selection",
                  "--options", "outline,deep-plan", "--selection", "outline", "--reasoning", "smaller bet",
                  "--confidence", "0.8")
    _json(kata, capsys, "decision", "update", run_id, entry["id"], "--outcome", "partial", "--notes", "meh")
    listed = _json(kata, capsys, "decision", "list", run_id, "--stage", "plan")

    assert [d["id"] for d in listed] == [entry["id"]]
    assert listed[0]["latest_outcome"]["outcome"] == "partial"

    assert _cli(kata, "decision", "update", run_id, "missing", "--outcome", "good") == 1
    assert 'Decision "missing" not found' in capsys.readouterr().err


def test_decision_with_selection_outside_options_is_rejected(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    code = _cli(kata, "decision", "record", run_id, "--stage", "plan", "--type", "retry", "--options", "a,b",
                "--selection", "c", "--reasoning", "r", "--confidence", "0.5")

    assert code == 1
    assert "Invalid DecisionEntry" in capsys.readouterr().err


def test_observe_and_predict_match(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    prediction = _json(kata, capsys, "observe", run_id, "--type", "prediction", "--stage", "research",
                       "--content", "deploy service kubernetes cluster production",
                       "--metric", "deploys", "--predicted", "1")
    _json(kata, capsys, "observe", run_id, "--type", "outcome", "--stage", "research",
          "--content", "deployed service to kubernetes cluster in production environment")
    result = _json(kata, capsys, "predict", "match", run_id)

    assert prediction["quantitative"]["metric"] == "deploys"
    assert result["matched"][0]["prediction_id"] == prediction["id"]
    assert result["matched"][0]["correct"] is True
    assert result["calibrations"][0]["domain"] == "deploys"


def test_observe_validates_target_and_payload(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    assert _cli(kata, "observe", run_id, "--type", "insight", "--content", "x", "--step", "s") == 1
    assert "--step requires --stage and --flavor" in capsys.readouterr().err

    assert _cli(kata, "observe", run_id, "--type", "gap", "--content", "no tests") == 1
    assert "Error:" in capsys.readouterr().err


def test_run_start_orchestrates_every_stage(kata: Path, capsys) -> None:
    steps = StepRegistry(kata / "steps")
    flavors = FlavorRegistry(kata / "flavors")
    for category, name in (("research", "survey"), ("plan", "outline")):
        steps.register(Step(type=f"{category}-step", stage_category=category, prompt_template=f"Do {category}."))
        flavors.register(
            Flavor(
                name=name,
                stage_category=category,
                steps=[{"step_name": "only", "step_type": f"{category}-step"}],
                synthesis_artifact=f"{name}-out",
            )
        )
    run_id = _create_run(kata, capsys)
    capsys.readouterr()

    assert _cli(kata, "run", "start", run_id, "--yolo") == 0

    out = capsys.readouterr().out
    assert "Complete the above stage manually" in out
    assert "Quality: good" in out
    status = _json(kata, capsys, "run", "status", run_id)
    assert status["run"]["status"] == "completed"
    assert [s["status"] for s in status["stages"]] == ["completed", "completed"]
    assert status["stages"][1]["selected_flavors"] == ["outline"]


def test_run_start_without_flavors_fails_cleanly(kata: Path, capsys) -> None:
    run_id = _create_run(kata, capsys)

    assert _cli(kata, "run", "start", run_id) == 1
    assert 'No flavors registered for stage category "research"' in capsys.readouterr().err


def _save_pipeline(kata: Path, *types: str) -> Pipeline:
    pipeline = Pipeline(name="p", stages=[PipelineStage(stage_ref=StageRef(type=t)) for t in types])
    return PipelineStore(kata / "pipelines").save(pipeline)


def test_pipeline_run_succeeds_with_manual_adapter(kata: Path, capsys) -> None:
    StepRegistry(kata / "steps").register(Step(type="research", prompt_template="Look around."))
    pipeline = _save_pipeline(kata, "research")

    assert _cli(kata, "pipeline", "run", pipeline.id) == 0

    out = capsys.readouterr().out
    assert "Look around." in out
    assert f"Pipeline {pipeline.id} succeeded: 1/1 stages completed" in out
    assert PipelineStore(kata / "pipelines").load(pipeline.id).state == "complete"


def test_pipeline_run_reports_gate_abort(kata: Path, capsys) -> None:
    StepRegistry(kata / "steps").register(
        Step(type="build", entry_gate=Gate(type="entry", conditions=[GateCondition(type="human-approved")]))
    )
    pipeline = _save_pipeline(kata, "build")

    assert _cli(kata, "pipeline", "run", pipeline.id) == 1
    assert "aborted at stage 0" in capsys.readouterr().out


def test_pipeline_run_unknown_adapter(kata: Path, capsys) -> None:
    StepRegistry(kata / "steps").register(Step(type="research"))
    pipeline = _save_pipeline(kata, "research")

    assert _cli(kata, "pipeline", "run", pipeline.id, "--adapter", "telepathy") == 1
    assert "Unknown adapter 'telepathy'" in capsys.readouterr().err
