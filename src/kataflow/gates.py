"""Gate evaluation: a pure check of typed conditions against a context snapshot."""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel, Field

from kataflow.definitions import Gate, GateCondition
from kataflow.schemas import utc_now


class GateEvalContext(BaseModel):
    """Everything a gate may look at. Built by the caller; never read from disk here."""

    available_artifacts: list[str] = Field(default_factory=list)
    completed_stages: list[str] = Field(default_factory=list)
    human_approved: bool = False


class ConditionResult(BaseModel):
    condition: GateCondition
    passed: bool
    detail: str | None = None


class GateResult(BaseModel):
    gate: Gate
    passed: bool
    results: list[ConditionResult] = Field(default_factory=list)
    evaluated_at: str = Field(default_factory=utc_now)

    def failed_conditions(self) -> list[ConditionResult]:
        return [r for r in self.results if not r.passed]


def _artifact_exists(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    if not condition.artifact_name:
        return ConditionResult(
            condition=condition,
            passed=False,
            detail="artifact-exists condition is missing artifact_name",
        )
    passed = condition.artifact_name in context.available_artifacts
    detail = (
        f'Artifact "{condition.artifact_name}" is available'
        if passed
        else f'Artifact "{condition.artifact_name}" not found in available artifacts'
    )
    return ConditionResult(condition=condition, passed=passed, detail=detail)


def _schema_valid(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    return ConditionResult(
        condition=condition,
        passed=True,
        detail="Schema validation deferred to capture time",
    )


def _human_approved(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    passed = context.human_approved
    return ConditionResult(
        condition=condition,
        passed=passed,
        detail="Human approval granted" if passed else "Awaiting human approval",
    )


def _predecessor_complete(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    if not condition.predecessor_type:
        return ConditionResult(
            condition=condition,
            passed=False,
            detail="predecessor-complete condition is missing predecessor_type",
        )
    passed = condition.predecessor_type in context.completed_stages
    detail = (
        f'Predecessor stage "{condition.predecessor_type}" is complete'
        if passed
        else f'Predecessor stage "{condition.predecessor_type}" has not completed'
    )
    return ConditionResult(condition=condition, passed=passed, detail=detail)


def _command_passes(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    # Evaluation is side-effect free; commands are run (if ever) by the caller.
    return ConditionResult(
        condition=condition,
        passed=False,
        detail="command execution is not performed during gate evaluation",
    )


_EVALUATORS: dict[str, Callable[[GateCondition, GateEvalContext], ConditionResult]] = {
    "artifact-exists": _artifact_exists,
    "schema-valid": _schema_valid,
    "human-approved": _human_approved,
    "predecessor-complete": _predecessor_complete,
    "command-passes": _command_passes,
}


def evaluate_condition(condition: GateCondition, context: GateEvalContext) -> ConditionResult:
    evaluator = _EVALUATORS.get(condition.type)
    if evaluator is None:
        return ConditionResult(
            condition=condition,
            passed=False,
            detail=f"Unknown condition type: {condition.type}",
        )
    return evaluator(condition, context)


def evaluate_gate(gate: Gate, context: GateEvalContext) -> GateResult:
    """Evaluate every condition of *gate* against *context*.

    All conditions are always evaluated and reported. The gate passes when it
    is not ``required`` or when every condition passed. Given the same gate and
    context the verdict is always the same; nothing here touches the
    filesystem or spawns processes.
    """
    results = [evaluate_condition(condition, context) for condition in gate.conditions]
    passed = (not gate.required) or all(r.passed for r in results)
    return GateResult(gate=gate, passed=passed, results=results)
