"""CLI entrypoint for kataflow."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from kataflow.adapters import AdapterResolver
from kataflow.config import KataConfig, load_config, load_env_files, resolve_kata_dir, write_default_config
from kataflow.errors import KataError
from kataflow.executor import StepFlavorExecutor
from kataflow.history import ResultCapturer, TokenTracker
from kataflow.knowledge import KnowledgeStore
from kataflow.ledger import DecisionLedger
from kataflow.observations import FlavorTarget, RunTarget, StageTarget, StepTarget, describe_target
from kataflow.orchestration import MetaOrchestrator
from kataflow.pipeline import PipelineRunner, PipelineStore
from kataflow.prediction_matcher import CalibrationDetector, PredictionMatcher
from kataflow.registries import FlavorRegistry, RuleRegistry, StepRegistry, VocabularyRegistry
from kataflow.run_store import RunStore
from kataflow.schemas import Run

logger = logging.getLogger(__name__)

KATA_SUBDIRS = ("runs", "pipelines", "steps", "flavors", "rules", "vocabularies", "knowledge", "history")


def _csv(value: str) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    p = argparse.ArgumentParser(
        prog="kataflow",
        description="kataflow - run stage pipelines and keep a ledger of every decision.",
    )
    p.add_argument("--kata-dir", default="", help="Project kata directory (default $KATAFLOW_DIR or .kata)")
    p.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command")

    sub.add_parser("init", help="Create the kata directory and a default config.yaml.")

    # -- run ------------------------------------------------------------------
    run_p = sub.add_parser("run", help="Create and inspect runs.")
    run_sub = run_p.add_subparsers(dest="run_command")
    create_p = run_sub.add_parser("create", help="Create a run tree.")
    create_p.add_argument("--cycle", required=True, help="Cycle id")
    create_p.add_argument("--bet", required=True, help="Bet id")
    create_p.add_argument("--prompt", required=True, help="Bet prompt")
    create_p.add_argument("--stages", required=True, help="Comma-separated stage categories")
    create_p.add_argument("--kata-pattern", default=None, help="Optional kata pattern name")
    status_p = run_sub.add_parser("status", help="Show run and stage state.")
    status_p.add_argument("run_id")
    start_p = run_sub.add_parser("start", help="Orchestrate every stage of a run.")
    start_p.add_argument("run_id")
    start_p.add_argument("--yolo", action="store_true", help="Disable the confidence threshold")

    # -- gate -----------------------------------------------------------------
    gate_p = sub.add_parser("gate", help="Set or approve a stage's pending gate.")
    gate_sub = gate_p.add_subparsers(dest="gate_command")
    gset_p = gate_sub.add_parser("set", help="Block a stage on a gate.")
    gset_p.add_argument("run_id")
    gset_p.add_argument("stage")
    gset_p.add_argument("gate_id")
    gset_p.add_argument("--type", dest="gate_type", default="human-approved", help="Gate type")
    gset_p.add_argument("--required-by", default="stage")
    gapp_p = gate_sub.add_parser("approve", help="Approve the pending gate.")
    gapp_p.add_argument("run_id")
    gapp_p.add_argument("stage")
    gapp_p.add_argument("--gate-id", default=None)
    gapp_p.add_argument("--approver", default="human")

    # -- decision -------------------------------------------------------------
    dec_p = sub.add_parser("decision", help="Record and inspect decisions.")
    dec_sub = dec_p.add_subparsers(dest="decision_command")
    drec_p = dec_sub.add_parser("record", help="Append a decision.")
    drec_p.add_argument("run_id")
    drec_p.add_argument("--stage", required=True)
    drec_p.add_argument("--type", dest="decision_type", required=True)
    drec_p.add_argument("--options", default="", help="Comma-separated options")
    drec_p.add_argument("--selection", required=True)
    drec_p.add_argument("--reasoning", required=True)
    drec_p.add_argument("--confidence", type=float, required=True)
    drec_p.add_argument("--flavor", default=None)
    drec_p.add_argument("--step", default=None)
    dupd_p = dec_sub.add_parser("update", help="Append an outcome for a decision.")
    dupd_p.add_argument("run_id")
    dupd_p.add_argument("decision_id")
    dupd_p.add_argument("--outcome", required=True, choices=["good", "partial", "poor", "unknown"])
    dupd_p.add_argument("--notes", default=None)
    dupd_p.add_argument("--user-overrides", default=None)
    dlist_p = dec_sub.add_parser("list", help="List decisions with their latest outcome.")
    dlist_p.add_argument("run_id")
    dlist_p.add_argument("--stage", default=None)
    dlist_p.add_argument("--type", dest="decision_type", default=None)

    # -- observe --------------------------------------------------------------
    obs_p = sub.add_parser("observe", help="Append an observation at run, stage, flavor or step level.")
    obs_p.add_argument("run_id")
    obs_p.add_argument("--type", dest="observation_type", required=True)
    obs_p.add_argument("--content", required=True)
    obs_p.add_argument("--stage", default=None)
    obs_p.add_argument("--flavor", default=None)
    obs_p.add_argument("--step", default=None)
    obs_p.add_argument("--severity", default=None, help="gap severity")
    obs_p.add_argument("--taxonomy", default=None, help="friction taxonomy")
    obs_p.add_argument("--contradicts", default=None)
    obs_p.add_argument("--metric", default=None, help="quantitative prediction metric")
    obs_p.add_argument("--predicted", type=float, default=None)
    obs_p.add_argument("--unit", default=None)
    obs_p.add_argument("--expected", default=None, help="qualitative prediction text")
    obs_p.add_argument("--timeframe", default=None)

    # -- predict --------------------------------------------------------------
    pred_p = sub.add_parser("predict", help="Prediction matching and calibration.")
    pred_sub = pred_p.add_subparsers(dest="predict_command")
    pmatch_p = pred_sub.add_parser("match", help="Match predictions to outcomes and detect calibration.")
    pmatch_p.add_argument("run_id")

    # -- pipeline -------------------------------------------------------------
    pipe_p = sub.add_parser("pipeline", help="Run persisted pipelines.")
    pipe_sub = pipe_p.add_subparsers(dest="pipeline_command")
    prun_p = pipe_sub.add_parser("run", help="Run (or resume) a pipeline.")
    prun_p.add_argument("pipeline_id")
    prun_p.add_argument("--yolo", action="store_true", help="Bypass every gate check")
    prun_p.add_argument("--adapter", default="", help="Execution adapter (overrides config)")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate subcommand."""
    load_env_files()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    handlers = {
        "init": _init,
        "run": _run,
        "gate": _gate,
        "decision": _decision,
        "observe": _observe,
        "predict": _predict,
        "pipeline": _pipeline,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    kata_dir = resolve_kata_dir(args.kata_dir)
    try:
        return handler(args, kata_dir)
    except (KataError, KeyError, PydanticValidationError) as exc:
        if args.verbose:
            logger.exception("Command failed")
        message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
        print(f"Error: {message}", file=sys.stderr)
        return 1


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _emit(args: argparse.Namespace, payload: Any, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _run_store(kata_dir: Path, config: KataConfig) -> RunStore:
    return RunStore(config.runs_dir(kata_dir))


def _subcommand_missing(args: argparse.Namespace, name: str) -> int:
    print(f"Error: missing {name} subcommand (see 'kataflow {args.command} --help').", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _init(args: argparse.Namespace, kata_dir: Path) -> int:
    config_path = write_default_config(kata_dir)
    for name in KATA_SUBDIRS:
        (kata_dir / name).mkdir(parents=True, exist_ok=True)
    _emit(args, {"kata_dir": str(kata_dir), "config": str(config_path)}, f"Initialized {kata_dir}")
    return 0


def _run(args: argparse.Namespace, kata_dir: Path) -> int:
    config = load_config(kata_dir)
    runs = _run_store(kata_dir, config)
    if args.run_command == "create":
        run = runs.create_tree(
            Run(
                cycle_id=args.cycle,
                bet_id=args.bet,
                bet_prompt=args.prompt,
                kata_pattern=args.kata_pattern,
                stage_sequence=_csv(args.stages),
            )
        )
        _emit(args, run.model_dump(mode="json"), run.id)
        return 0
    if args.run_command == "status":
        run = runs.read_run(args.run_id)
        stages = [runs.read_stage_state(run.id, c) for c in run.stage_sequence]
        payload = {
            "run": run.model_dump(mode="json"),
            "stages": [s.model_dump(mode="json") for s in stages],
        }
        lines = [f"Run {run.id}  [{run.status}]  current stage: {run.current_stage or '-'}"]
        for state in stages:
            gate = f"  pending gate: {state.pending_gate.gate_id}" if state.pending_gate else ""
            flavors = ", ".join(state.selected_flavors) or "-"
            lines.append(f"  {state.category:<10} {state.status:<10} flavors: {flavors}{gate}")
        _emit(args, payload, "\n".join(lines))
        return 0
    if args.run_command == "start":
        return _start_run(args, kata_dir, config, runs)
    return _subcommand_missing(args, "run")


def _start_run(args: argparse.Namespace, kata_dir: Path, config: KataConfig, runs: RunStore) -> int:
    run = runs.read_run(args.run_id)
    ledger = DecisionLedger(runs, run.id)
    steps = StepRegistry(kata_dir / "steps")
    executor = StepFlavorExecutor(steps, AdapterResolver(config), run_store=runs, run_id=run.id)
    orchestrator = MetaOrchestrator(
        FlavorRegistry(kata_dir / "flavors"),
        ledger,
        executor,
        config.orchestration,
        vocabulary_registry=VocabularyRegistry(kata_dir / "vocabularies"),
        rule_registry=RuleRegistry(kata_dir / "rules"),
        run_store=runs,
    )
    bet = {"id": run.bet_id, "title": run.bet_prompt}
    result = orchestrator.run_pipeline(list(run.stage_sequence), bet, yolo=args.yolo or None)
    reflection = result.pipeline_reflection
    _emit(args, result.to_dict(), "\n".join([f"Quality: {reflection.overall_quality}", *reflection.learnings]))
    return 0


def _gate(args: argparse.Namespace, kata_dir: Path) -> int:
    runs = _run_store(kata_dir, load_config(kata_dir))
    if args.gate_command == "set":
        with runs.lock(args.run_id):
            state = runs.set_pending_gate(
                args.run_id, args.stage, args.gate_id, args.gate_type, required_by=args.required_by
            )
        _emit(args, state.model_dump(mode="json"), f"Gate {args.gate_id} pending on {args.stage}")
        return 0
    if args.gate_command == "approve":
        with runs.lock(args.run_id):
            approved = runs.approve_gate(args.run_id, args.stage, args.gate_id, approver=args.approver)
        _emit(args, approved.model_dump(mode="json"), f"Gate {approved.gate_id} approved by {approved.approver}")
        return 0
    return _subcommand_missing(args, "gate")


def _decision(args: argparse.Namespace, kata_dir: Path) -> int:
    runs = _run_store(kata_dir, load_config(kata_dir))
    runs.read_run(args.run_id)
    ledger = DecisionLedger(runs, args.run_id)
    if args.decision_command == "record":
        entry = ledger.record(
            stage_category=args.stage,
            decision_type=args.decision_type,
            options=_csv(args.options),
            selection=args.selection,
            reasoning=args.reasoning,
            confidence=args.confidence,
            flavor=args.flavor,
            step=args.step,
        )
        _emit(args, entry.model_dump(mode="json"), entry.id)
        return 0
    if args.decision_command == "update":
        outcome = ledger.record_outcome(
            args.decision_id, args.outcome, notes=args.notes, user_overrides=args.user_overrides
        )
        _emit(args, outcome.model_dump(mode="json"), f"{args.decision_id}: {outcome.outcome}")
        return 0
    if args.decision_command == "list":
        items = ledger.list_decisions(stage_category=args.stage, decision_type=args.decision_type)
        lines = []
        for item in items:
            d = item.decision
            outcome = item.latest_outcome.outcome if item.latest_outcome else "-"
            lines.append(
                f"{d.id}  {d.stage_category:<9} {d.decision_type:<20} {d.selection}  "
                f"({d.confidence:.2f})  outcome: {outcome}"
            )
        _emit(args, [item.to_dict() for item in items], "\n".join(lines) or "No decisions recorded.")
        return 0
    return _subcommand_missing(args, "decision")


def _target(args: argparse.Namespace) -> RunTarget | StageTarget | FlavorTarget | StepTarget:
    if args.step:
        if not (args.stage and args.flavor):
            raise KataError("--step requires --stage and --flavor")
        return StepTarget(category=args.stage, flavor=args.flavor, step=args.step)
    if args.flavor:
        if not args.stage:
            raise KataError("--flavor requires --stage")
        return FlavorTarget(category=args.stage, flavor=args.flavor)
    if args.stage:
        return StageTarget(category=args.stage)
    return RunTarget()


def _observe(args: argparse.Namespace, kata_dir: Path) -> int:
    runs = _run_store(kata_dir, load_config(kata_dir))
    runs.read_run(args.run_id)
    record: dict[str, Any] = {"type": args.observation_type, "content": args.content}
    if args.observation_type == "gap":
        record["severity"] = args.severity
    elif args.observation_type == "friction":
        record["taxonomy"] = args.taxonomy
        record["contradicts"] = args.contradicts
    elif args.observation_type == "prediction":
        if args.metric is not None:
            record["quantitative"] = {"metric": args.metric, "predicted": args.predicted, "unit": args.unit}
        if args.expected is not None:
            record["qualitative"] = {"expected": args.expected}
        record["timeframe"] = args.timeframe
    target = _target(args)
    observation = runs.append_observation(args.run_id, target, record)
    _emit(
        args,
        observation.model_dump(mode="json"),
        f"Recorded {observation.type} observation {observation.id} at {describe_target(target)}",
    )
    return 0


def _predict(args: argparse.Namespace, kata_dir: Path) -> int:
    if args.predict_command != "match":
        return _subcommand_missing(args, "predict")
    runs = _run_store(kata_dir, load_config(kata_dir))
    runs.read_run(args.run_id)
    with runs.lock(args.run_id):
        result = PredictionMatcher(runs).match(args.run_id)
        calibrations = CalibrationDetector(runs).detect(args.run_id)
    payload = {
        **result.to_dict(),
        "calibrations": [c.model_dump(mode="json") for c in calibrations],
    }
    lines = [
        f"Matched {len(result.matched)} prediction(s), {len(result.unmatched)} unmatched, "
        f"{result.reflections_written} reflection(s) written"
    ]
    for calibration in calibrations:
        lines.append(
            f"  {calibration.domain}: {calibration.correct_predictions}/{calibration.total_predictions} "
            f"correct ({calibration.accuracy_rate:.0%})"
        )
    _emit(args, payload, "\n".join(lines))
    return 0


def _pipeline(args: argparse.Namespace, kata_dir: Path) -> int:
    if args.pipeline_command != "run":
        return _subcommand_missing(args, "pipeline")
    config = load_config(kata_dir)
    if args.adapter:
        config.execution.adapter = args.adapter
    pipelines = PipelineStore(kata_dir / "pipelines")
    pipeline = pipelines.load(args.pipeline_id)
    runner = PipelineRunner(
        StepRegistry(kata_dir / "steps"),
        KnowledgeStore(kata_dir / "knowledge"),
        AdapterResolver(config),
        ResultCapturer(kata_dir),
        TokenTracker(kata_dir),
        pipelines.save,
        stages_dir=kata_dir / "steps",
        yolo=args.yolo or config.orchestration.yolo,
        lock_dir=kata_dir / "pipelines",
    )
    result = runner.run(pipeline, config)
    status = "succeeded" if result.success else f"aborted at stage {result.aborted_at}"
    _emit(
        args,
        result.to_dict(),
        f"Pipeline {result.pipeline_id} {status}: {result.stages_completed}/{result.stages_total} stages completed",
    )
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
