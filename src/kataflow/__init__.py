"""kataflow - run stage pipelines and keep a ledger of every orchestration decision."""

from importlib.metadata import PackageNotFoundError, version

from kataflow.schemas import DecisionEntry, Run, StageState

__all__ = ["DecisionEntry", "Run", "StageState"]

try:
    __version__ = version("kataflow")
except PackageNotFoundError:
    __version__ = "0.0.0"
