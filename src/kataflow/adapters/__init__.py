"""Execution adapters and the resolver that picks one from configuration."""

from __future__ import annotations

from typing import Any

from kataflow.adapters.base import (
    ExecutionAdapter,
    get_adapter_factory,
    list_adapters,
    register_adapter,
    unregister_adapter,
)
from kataflow.adapters.claude_cli import ClaudeCliAdapter
from kataflow.adapters.manual import ManualAdapter

DEFAULT_ADAPTER = "manual"


def _manual_factory(config: Any) -> ExecutionAdapter:
    return ManualAdapter()


def _claude_factory(config: Any) -> ExecutionAdapter:
    if config is None:
        return ClaudeCliAdapter()
    claude = config.execution.claude
    return ClaudeCliAdapter(
        binary=claude.binary,
        timeout_seconds=claude.timeout_seconds,
        extra_args=claude.extra_args,
    )


register_adapter("manual", _manual_factory)
register_adapter("claude-cli", _claude_factory)


class AdapterResolver:
    """Resolve the configured execution adapter.

    ``config.execution.adapter`` names the adapter; without a config the
    ``manual`` adapter is used. Unknown names raise ``KeyError`` listing the
    registered keys.
    """

    def __init__(self, config: Any = None) -> None:
        self.config = config

    def resolve(self, name: str | None = None) -> ExecutionAdapter:
        if name is None:
            name = self.config.execution.adapter if self.config is not None else DEFAULT_ADAPTER
        return get_adapter_factory(name)(self.config)


__all__ = [
    "AdapterResolver",
    "ClaudeCliAdapter",
    "ExecutionAdapter",
    "ManualAdapter",
    "get_adapter_factory",
    "list_adapters",
    "register_adapter",
    "unregister_adapter",
]
