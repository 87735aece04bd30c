"""Adapter that prints the manifest for a human to carry out."""

from __future__ import annotations

import sys
from collections.abc import Callable

from kataflow.adapters.base import ExecutionAdapter
from kataflow.schemas import ExecutionManifest, ExecutionResult

RULE = "=" * 60


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def render_manifest(manifest: ExecutionManifest) -> str:
    flavor = f" ({manifest.stage_flavor})" if manifest.stage_flavor else ""
    lines = ["", RULE, f"  Stage: {manifest.stage_type}{flavor}", RULE, ""]
    lines += ["--- Prompt ---", "", manifest.prompt, ""]

    if manifest.artifacts:
        lines += ["--- Artifacts to Produce ---", ""]
        for artifact in manifest.artifacts:
            tag = " [required]" if artifact.required else " [optional]"
            desc = f" - {artifact.description}" if artifact.description else ""
            lines.append(f"  * {artifact.name}{tag}{desc}")
        lines.append("")

    if manifest.entry_gate or manifest.exit_gate:
        lines += ["--- Gate Requirements ---", ""]
        for label, gate in (("Entry gate", manifest.entry_gate), ("Exit gate", manifest.exit_gate)):
            if gate is None:
                continue
            lines.append(f"  {label}:")
            for condition in gate.conditions:
                desc = f" - {condition.description}" if condition.description else ""
                lines.append(f"    * [{condition.type}]{desc}")
        lines.append("")

    if manifest.learnings:
        lines += ["--- Injected Learnings ---", ""]
        for learning in manifest.learnings:
            lines.append(f"  * [{learning.tier}/{learning.category}] {learning.content}")
            lines.append(f"    Confidence: {round(learning.confidence * 100)}%")
        lines.append("")

    lines += [RULE, "  Complete the above stage manually, then continue.", RULE, ""]
    return "\n".join(lines)


class ManualAdapter(ExecutionAdapter):
    """Render the manifest as instructions; the human does the work.

    Always succeeds with no artifacts, since presenting the instructions is
    the whole job.
    """

    name = "manual"

    def __init__(self, output: Callable[[str], None] | None = None) -> None:
        self.output = output or _write_stdout

    def execute(self, manifest: ExecutionManifest) -> ExecutionResult:
        self.output(render_manifest(manifest))
        return ExecutionResult(
            success=True,
            artifacts=[],
            notes="Manual execution: instructions displayed to user.",
        )
