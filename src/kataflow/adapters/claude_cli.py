"""Adapter that runs a manifest through the Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from kataflow.adapters.base import ExecutionAdapter
from kataflow.schemas import ExecutionManifest, ExecutionResult, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300
_NOTES_LIMIT = 4000


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    try:
        return int(str(value).strip().replace(",", ""))
    except (TypeError, ValueError):
        return 0


def extract_usage(data: dict[str, Any]) -> TokenUsage | None:
    """Pull token counts out of a ``--output-format json`` payload."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        return None
    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens")))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens")))
    cache_creation = max(0, coerce_int(usage_raw.get("cache_creation_input_tokens")))
    cache_read = max(0, coerce_int(usage_raw.get("cache_read_input_tokens")))
    total = max(0, coerce_int(usage_raw.get("total_tokens")))
    if total <= 0:
        total = input_tokens + output_tokens + cache_creation + cache_read
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        total=total,
    )


def build_prompt(manifest: ExecutionManifest) -> str:
    flavor = f" ({manifest.stage_flavor})" if manifest.stage_flavor else ""
    sections = [f"# Stage: {manifest.stage_type}{flavor}", "", manifest.prompt]
    if manifest.artifacts:
        sections += ["", "## Artifacts to Produce", ""]
        for artifact in manifest.artifacts:
            req = "required" if artifact.required else "optional"
            desc = f" - {artifact.description}" if artifact.description else ""
            sections.append(f"- {artifact.name} ({req}){desc}")
    return "\n".join(sections)


def _truncate(text: str) -> str:
    text = (text or "").strip()
    return text if len(text) <= _NOTES_LIMIT else text[:_NOTES_LIMIT] + "..."


class ClaudeCliAdapter(ExecutionAdapter):
    """Spawn ``claude -p`` and parse its single JSON result.

    Parameters
    ----------
    binary:
        Path or name of the Claude Code CLI binary.
    timeout_seconds:
        Wall-clock limit for one invocation. The child is killed on expiry
        and the step reported as failed.
    extra_args:
        Additional CLI flags forwarded verbatim.
    cwd:
        Working directory for the child process (defaults to the current one).
    run:
        Replacement for :func:`subprocess.run`, used by tests.
    """

    name = "claude-cli"

    def __init__(
        self,
        binary: str = "claude",
        timeout_seconds: int = DEFAULT_TIMEOUT,
        extra_args: list[str] | None = None,
        cwd: str | Path | None = None,
        run: Callable[..., subprocess.CompletedProcess] | None = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = max(1, coerce_int(timeout_seconds))
        self.extra_args = list(extra_args or [])
        self.cwd = Path(cwd) if cwd else None
        self._run = run or subprocess.run

    def build_command(self, prompt: str) -> list[str]:
        return [resolve_binary(self.binary), "-p", prompt, "--output-format", "json", *self.extra_args]

    def execute(self, manifest: ExecutionManifest) -> ExecutionResult:
        prompt = build_prompt(manifest)
        cmd = self.build_command(prompt)
        logger.info(
            "Running Claude CLI for %s (prompt_len=%d, timeout=%ss)",
            manifest.stage_type,
            len(prompt),
            self.timeout_seconds,
        )
        start = time.monotonic()

        def _elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            proc = self._run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
                cwd=str(self.cwd) if self.cwd else None,
            )
        except FileNotFoundError:
            return ExecutionResult(
                success=False,
                duration_ms=_elapsed_ms(),
                notes=(
                    f'Claude CLI binary not found at "{self.binary}". '
                    'Install it or use the "manual" adapter instead.'
                ),
            )
        except subprocess.TimeoutExpired:
            return ExecutionResult(
                success=False,
                duration_ms=_elapsed_ms(),
                notes=f"Claude CLI timed out after {self.timeout_seconds}s",
            )
        except OSError as exc:
            return ExecutionResult(
                success=False,
                duration_ms=_elapsed_ms(),
                notes=f"Failed to execute claude: {exc}",
            )

        duration_ms = _elapsed_ms()
        if proc.returncode != 0:
            detail = _truncate(proc.stderr or proc.stdout)
            return ExecutionResult(
                success=False,
                duration_ms=duration_ms,
                notes=f"Claude CLI exited with code {proc.returncode}: {detail}",
            )

        try:
            data = json.loads(proc.stdout or "")
        except json.JSONDecodeError:
            logger.warning("Claude CLI returned non-JSON output; keeping raw text")
            return ExecutionResult(success=True, duration_ms=duration_ms, notes=_truncate(proc.stdout))
        if not isinstance(data, dict):
            return ExecutionResult(success=True, duration_ms=duration_ms, notes=_truncate(proc.stdout))

        is_error = bool(data.get("is_error"))
        result_text = data.get("result")
        if isinstance(result_text, str):
            notes = result_text
        else:
            notes = "" if result_text is None else json.dumps(result_text)
        return ExecutionResult(
            success=not is_error,
            token_usage=extract_usage(data),
            duration_ms=max(0, coerce_int(data.get("duration_ms"))) or duration_ms,
            notes=_truncate(notes),
        )
