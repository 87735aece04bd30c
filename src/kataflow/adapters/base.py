"""Abstract base class and registry for execution adapters.

Every adapter (manual, Claude CLI, anything registered later) implements the
same interface so executors and the pipeline runner can dispatch to any of
them interchangeably.
"""

from __future__ import annotations

import abc
from collections.abc import Callable
from typing import Any

from kataflow.schemas import ExecutionManifest, ExecutionResult


class ExecutionAdapter(abc.ABC):
    """Common interface for execution back-ends.

    Subclasses implement :meth:`execute`, which receives a fully built
    manifest and returns an :class:`ExecutionResult`. Expected failures
    (missing binary, timeout, non-zero exit) are reported as
    ``success=False`` rather than raised.
    """

    #: Registry key and the value recorded in execution history.
    name: str = "base"

    @abc.abstractmethod
    def execute(self, manifest: ExecutionManifest) -> ExecutionResult:
        """Perform the work described by *manifest*."""


AdapterFactory = Callable[[Any], ExecutionAdapter]


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, AdapterFactory] = {}


def register_adapter(key: str, factory: AdapterFactory) -> None:
    """Register an adapter factory under a lookup key.

    The factory receives the active :class:`~kataflow.config.KataConfig`
    (or ``None``) and returns a ready adapter.
    """
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Adapter key must be a non-empty string")
    if not callable(factory):
        raise TypeError("Registered adapter factory must be callable")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not factory:
        raise ValueError(f"Adapter '{normalized_key}' is already registered")

    _REGISTRY[normalized_key] = factory


def unregister_adapter(key: str) -> None:
    _REGISTRY.pop((key or "").strip(), None)


def get_adapter_factory(key: str) -> AdapterFactory:
    """Look up a registered adapter factory by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown adapter '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_adapters() -> list[str]:
    """Return all registered adapter keys."""
    return sorted(_REGISTRY)
