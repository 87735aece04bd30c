"""Exception hierarchy shared by every kataflow component."""

from __future__ import annotations

from pathlib import Path


class KataError(RuntimeError):
    """Base class for all kataflow errors."""


class ConfigError(KataError):
    """Raised when the project configuration cannot be loaded."""


class ValidationError(KataError):
    """Raised when a document fails schema validation before a write."""

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        self.issues = list(issues or [])
        detail = f"{message}: {'; '.join(self.issues)}" if self.issues else message
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Not-found errors
# ---------------------------------------------------------------------------


class NotFoundError(KataError):
    """Raised when a requested entity does not exist."""


class JsonStoreNotFoundError(NotFoundError):
    """Raised when a JSON document is missing on disk."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        super().__init__(f"File not found: {self.path}")


class RunNotFoundError(NotFoundError):
    """Raised when a run directory or ``run.json`` is missing."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f'Run "{run_id}" not found')


class StepNotFoundError(NotFoundError):
    """Raised when a step definition is not registered."""

    def __init__(self, step_type: str, flavor: str | None = None) -> None:
        self.step_type = step_type
        self.flavor = flavor
        label = f"{step_type}.{flavor}" if flavor else step_type
        super().__init__(f'Step "{label}" not found')


class FlavorNotFoundError(NotFoundError):
    """Raised when a flavor is not registered for a stage category."""

    def __init__(self, stage_category: str, name: str) -> None:
        self.stage_category = stage_category
        self.name = name
        super().__init__(f'Flavor "{stage_category}/{name}" not found')


class PipelineNotFoundError(NotFoundError):
    """Raised when a persisted pipeline does not exist."""

    def __init__(self, pipeline_id: str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f'Pipeline "{pipeline_id}" not found')


class DecisionNotFoundError(NotFoundError):
    """Raised when a decision id is absent from a run's ledger."""

    def __init__(self, decision_id: str, run_id: str | None = None) -> None:
        self.decision_id = decision_id
        self.run_id = run_id
        scope = f' in run "{run_id}"' if run_id else ""
        super().__init__(f'Decision "{decision_id}" not found{scope}')


class RuleNotFoundError(NotFoundError):
    """Raised when a stage rule id is unknown."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f'Rule "{rule_id}" not found')


# ---------------------------------------------------------------------------
# Storage errors
# ---------------------------------------------------------------------------


class JsonStoreError(KataError):
    """Raised when a JSON document exists but cannot be parsed or validated."""

    def __init__(self, message: str, path: Path) -> None:
        self.path = Path(path)
        super().__init__(f"{message} ({self.path})")


class JsonlStoreError(KataError):
    """Raised when a JSONL log cannot be appended to."""

    def __init__(self, message: str, path: Path) -> None:
        self.path = Path(path)
        super().__init__(f"{message} ({self.path})")


class RunLockedError(KataError):
    """Raised when another process holds the lease on a run directory."""


# ---------------------------------------------------------------------------
# Gate / orchestration errors
# ---------------------------------------------------------------------------


class GateConflictError(KataError):
    """Raised when a stage already has a pending gate."""


class GateNotPendingError(KataError):
    """Raised when approving a gate that is not pending."""


class OrchestratorError(KataError):
    """Raised when stage orchestration cannot proceed."""


class StepExecutionError(KataError):
    """Raised when an adapter reports a failed step."""


class RefResolutionError(KataError):
    """Raised when a prompt template reference cannot be resolved."""
