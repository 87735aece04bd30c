"""Schema-validated JSON documents and append-only JSONL logs.

Every write validates first; a failing record raises
:class:`~kataflow.errors.ValidationError` and leaves the file untouched.
JSON documents are replaced atomically. JSONL reads are forgiving: lines that
fail to parse or validate are skipped with a warning so one corrupt line never
hides the rest of a log.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from kataflow.errors import JsonlStoreError, JsonStoreError, JsonStoreNotFoundError, ValidationError
from kataflow.file_io import append_line, atomic_write_text

logger = logging.getLogger(__name__)

_ADAPTERS_GUARD = threading.Lock()
_ADAPTERS: dict[type, TypeAdapter] = {}
_ANY_ADAPTER: TypeAdapter = TypeAdapter(Any)


def _adapter(schema: type | TypeAdapter) -> TypeAdapter:
    if isinstance(schema, TypeAdapter):
        return schema
    with _ADAPTERS_GUARD:
        adapter = _ADAPTERS.get(schema)
        if adapter is None:
            adapter = TypeAdapter(schema)
            _ADAPTERS[schema] = adapter
    return adapter


def _schema_label(schema: type | TypeAdapter) -> str:
    return getattr(schema, "__name__", "record")


def format_issues(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic error into ``"loc: message"`` strings."""
    issues = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        issues.append(f"{loc}: {err.get('msg', 'invalid')}")
    return issues


def validate(record: Any, schema: type | TypeAdapter) -> Any:
    """Round-trip *record* through *schema* and return the validated value.

    Model instances are dumped first so that fields mutated after
    construction are checked again.
    """
    adapter = _adapter(schema)
    try:
        data = _ANY_ADAPTER.dump_python(record, mode="json", warnings=False)
        return adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {_schema_label(schema)}", format_issues(exc)) from exc


# ---------------------------------------------------------------------------
# JSON documents
# ---------------------------------------------------------------------------


def write_json(path: Path, record: Any, schema: type | TypeAdapter) -> Any:
    """Validate *record* and atomically replace the document at *path*."""
    adapter = _adapter(schema)
    validated = validate(record, schema)
    payload = adapter.dump_json(validated, indent=2).decode("utf-8")
    atomic_write_text(Path(path), payload + "\n")
    return validated


def read_json(path: Path, schema: type | TypeAdapter) -> Any:
    """Read and validate a JSON document.

    Raises :class:`JsonStoreNotFoundError` when missing and
    :class:`JsonStoreError` when the content is unparseable or off-schema.
    """
    path = Path(path)
    if not path.is_file():
        raise JsonStoreNotFoundError(path)
    try:
        raw = path.read_bytes().decode("utf-8")
    except OSError as exc:
        raise JsonStoreError(f"Could not read file: {exc}", path) from exc
    except UnicodeDecodeError as exc:
        raise JsonStoreError(f"File is not valid UTF-8: {exc}", path) from exc
    try:
        return _adapter(schema).validate_json(raw)
    except PydanticValidationError as exc:
        issues = "; ".join(format_issues(exc))
        raise JsonStoreError(f"Invalid {_schema_label(schema)}: {issues}", path) from exc


def json_exists(path: Path) -> bool:
    return Path(path).is_file()


def list_json(directory: Path, schema: type | TypeAdapter) -> list[Any]:
    """Read every ``*.json`` file in *directory*, skipping invalid ones."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    results: list[Any] = []
    for path in sorted(directory.glob("*.json")):
        try:
            results.append(read_json(path, schema))
        except JsonStoreError as exc:
            logger.warning("Skip invalid document %s: %s", path, exc)
    return results


# ---------------------------------------------------------------------------
# JSONL logs
# ---------------------------------------------------------------------------


def append_jsonl(path: Path, record: Any, schema: type | TypeAdapter) -> Any:
    """Validate *record* and append it as one line; parents are created lazily."""
    adapter = _adapter(schema)
    validated = validate(record, schema)
    line = adapter.dump_json(validated).decode("utf-8")
    try:
        append_line(Path(path), line)
    except OSError as exc:
        raise JsonlStoreError(f"Could not append record: {exc}", path) from exc
    return validated


def read_jsonl(path: Path, schema: type | TypeAdapter) -> list[Any]:
    """Return every valid record in *path*; a missing file yields ``[]``."""
    path = Path(path)
    if not path.is_file():
        return []
    adapter = _adapter(schema)
    records: list[Any] = []
    # Binary mode: a line with broken UTF-8 is skipped like any other bad line.
    with open(path, "rb") as f:
        for lineno, raw in enumerate(f, start=1):
            try:
                line = raw.decode("utf-8").strip()
                if not line:
                    continue
                records.append(adapter.validate_python(json.loads(line)))
            except (UnicodeDecodeError, json.JSONDecodeError, PydanticValidationError) as ex:
                logger.warning("Skip invalid line %s:%d: %s", path, lineno, ex)
    return records
