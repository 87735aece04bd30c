"""Compose execution manifests from step definitions."""

from __future__ import annotations

from pathlib import Path

from kataflow.definitions import Step, StepResources
from kataflow.errors import RefResolutionError
from kataflow.schemas import ExecutionContext, ExecutionManifest, Learning

LEARNINGS_HEADING = "## Learnings from Previous Executions"
RESOURCES_HEADING = "## Suggested Resources"


def format_learnings(learnings: list[Learning]) -> str:
    if not learnings:
        return ""
    lines = [LEARNINGS_HEADING, ""]
    for learning in learnings:
        pct = round(learning.confidence * 100)
        lines.append(f"- [{learning.tier}/{learning.category}] {learning.content} (confidence: {pct}%)")
    return "\n".join(lines)


def format_resources(resources: StepResources | None) -> str:
    """Render tools, agents, and skills; empty string when there are none."""
    if resources is None or not (resources.tools or resources.agents or resources.skills):
        return ""
    lines = [RESOURCES_HEADING, ""]
    if resources.tools:
        lines.append("### Tools")
        for tool in resources.tools:
            cmd = f" (`{tool.command}`)" if tool.command else ""
            lines.append(f"- {tool.name}: {tool.purpose}{cmd}")
        lines.append("")
    if resources.agents:
        lines.append("### Agents")
        for agent in resources.agents:
            when = f": {agent.when}" if agent.when else ""
            lines.append(f"- {agent.name}{when}")
        lines.append("")
    if resources.skills:
        lines.append("### Skills")
        for skill in resources.skills:
            when = f": {skill.when}" if skill.when else ""
            lines.append(f"- {skill.name}{when}")
        lines.append("")
    return "\n".join(lines).rstrip()


class ManifestBuilder:
    """Build the self-contained manifest an adapter executes."""

    @staticmethod
    def build(
        step: Step,
        context: ExecutionContext,
        learnings: list[Learning] | None = None,
    ) -> ExecutionManifest:
        learnings = list(learnings or [])
        sections = [step.prompt_template or f'Execute the "{step.type}" stage.']
        learnings_text = format_learnings(learnings)
        if learnings_text:
            sections.append(learnings_text)
        resources_text = format_resources(step.resources)
        if resources_text:
            sections.append(resources_text)

        return ExecutionManifest(
            stage_type=step.type,
            stage_flavor=step.flavor,
            prompt="\n\n".join(sections),
            context=context,
            entry_gate=step.entry_gate,
            exit_gate=step.exit_gate,
            artifacts=list(step.artifacts),
            learnings=learnings,
            resources=step.resources,
        )


def is_template_ref(template: str) -> bool:
    """True when *template* looks like a relative ``.md`` path rather than prompt text."""
    text = template.strip()
    return text.endswith(".md") and "\n" not in text and not Path(text).is_absolute()


def resolve_ref(template: str, base_dir: str | Path) -> str:
    """Read the prompt file *template* relative to *base_dir*."""
    path = Path(base_dir) / template.strip()
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RefResolutionError(f"Prompt template not found: {path}") from exc
    except OSError as exc:
        raise RefResolutionError(f"Could not read prompt template {path}: {exc}") from exc
