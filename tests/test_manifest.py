from __future__ import annotations

from pathlib import Path

import pytest

from kataflow.definitions import Artifact, Gate, GateCondition, Step, StepAgentHint, StepResources, StepTool
from kataflow.errors import RefResolutionError
from kataflow.manifest import ManifestBuilder, format_resources, is_template_ref, resolve_ref
from kataflow.schemas import ExecutionContext, Learning

pytestmark = pytest.mark.unit


def _context() -> ExecutionContext:
    return ExecutionContext(pipeline_id="pipe-1", stage_index=2)


def test_default_prompt_names_stage_type() -> None:
    manifest = ManifestBuilder.build(Step(type="research"), _context())

    assert manifest.prompt == 'Execute the "research" stage.'
    assert manifest.learnings == []
    assert manifest.context.stage_index == 2


def test_manifest_carries_gates_and_artifacts() -> None:
    step = Step(
        type="build",
        flavor="tdd",
        prompt_template="Write the failing tests first.",
        entry_gate=Gate(type="entry", conditions=[GateCondition(type="artifact-exists", artifact_name="plan")]),
        artifacts=[Artifact(name="test-suite", extension=".py")],
    )

    manifest = ManifestBuilder.build(step, _context())

    assert manifest.stage_type == "build"
    assert manifest.stage_flavor == "tdd"
    assert manifest.prompt == "Write the failing tests first."
    assert manifest.entry_gate.conditions[0].artifact_name == "plan"
    assert [a.name for a in manifest.artifacts] == ["test-suite"]


def test_learnings_are_appended_as_section() -> None:
    learnings = [
        Learning(tier="stage", category="testing", content="Mock the clock", confidence=0.85, stage_type="build"),
        Learning(tier="category", category="architecture", content="Prefer small modules", confidence=0.5),
    ]

    manifest = ManifestBuilder.build(Step(type="build", prompt_template="Go."), _context(), learnings)

    assert manifest.prompt == (
        "Go.\n\n"
        "## Learnings from Previous Executions\n\n"
        "- [stage/testing] Mock the clock (confidence: 85%)\n"
        "- [category/architecture] Prefer small modules (confidence: 50%)"
    )
    assert len(manifest.learnings) == 2


def test_resources_section_lists_tools_agents_and_skills() -> None:
    resources = StepResources(
        tools=[StepTool(name="pytest", purpose="run the suite", command="pytest -q")],
        agents=[StepAgentHint(name="reviewer", when="after implementation")],
        skills=[StepAgentHint(name="refactoring")],
    )

    text = format_resources(resources)

    assert text.startswith("## Suggested Resources")
    assert "- pytest: run the suite (`pytest -q`)" in text
    assert "- reviewer: after implementation" in text
    assert text.endswith("- refactoring")


def test_empty_resources_render_nothing() -> None:
    assert format_resources(None) == ""
    assert format_resources(StepResources()) == ""


@pytest.mark.parametrize(
    ("template", "expected"),
    [
        ("prompts/build.md", True),
        ("  review.md ", True),
        ("Write tests.\nThen see notes.md", False),
        ("/etc/prompt.md", False),
        ("Implement the plan.", False),
    ],
)
def test_is_template_ref(template: str, expected: bool) -> None:
    assert is_template_ref(template) is expected


def test_resolve_ref_reads_relative_to_base(tmp_path: Path) -> None:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "build.md").write_text("Build carefully.", encoding="utf-8")

    assert resolve_ref("prompts/build.md", tmp_path) == "Build carefully."


def test_resolve_ref_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(RefResolutionError, match="not found"):
        resolve_ref("missing.md", tmp_path)
