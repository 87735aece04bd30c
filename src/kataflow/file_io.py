"""Low-level file helpers: atomic replace, locked appends, and run-directory leases."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from kataflow.errors import RunLockedError

logger = logging.getLogger(__name__)

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01
_LEASE_POLL_SECONDS = 0.02

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}

_HELD_LEASES_GUARD = threading.Lock()
_HELD_LEASES: dict[str, list[int]] = {}  # key -> [owner thread ident, depth]


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize in-process access to *path* (appends from parallel flavors)."""
    with _path_lock(path):
        yield


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """Replace *dst* with *src*, retrying on transient Windows file-lock races."""
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file beside *path* and swap it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        with locked_path(path):
            _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def append_line(path: Path, line: str, *, encoding: str = "utf-8") -> None:
    """Append a single newline-terminated line under a per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = line if line.endswith("\n") else line + "\n"
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(text)


def _lease_owner(lock_file: Path) -> int | None:
    try:
        return int(lock_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    # Signal 0 only probes on POSIX; on Windows os.kill would terminate the target.
    if os.name == "nt" or pid <= 0:
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


@contextmanager
def exclusive_lease(lock_file: Path, *, timeout_seconds: float = 3.0) -> Iterator[None]:
    """Hold an inter-process lease by creating *lock_file* with ``O_EXCL``.

    The file records the owning pid. Raises :class:`RunLockedError` when the
    lease is still held by a live owner after *timeout_seconds*; a lock left
    behind by a dead pid is taken over with a warning. Nested acquisition from
    the thread that holds the lease only bumps a counter; other threads wait
    like any other process would.
    """
    key = str(lock_file.resolve())
    me = threading.get_ident()
    with _HELD_LEASES_GUARD:
        held = _HELD_LEASES.get(key)
        nested = held is not None and held[0] == me
        if nested:
            held[1] += 1
    if nested:
        try:
            yield
        finally:
            with _HELD_LEASES_GUARD:
                held[1] -= 1
        return

    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if time.monotonic() - start > timeout_seconds:
                owner = _lease_owner(lock_file)
                if owner is not None and not _pid_alive(owner):
                    logger.warning("Taking over stale lease %s left by dead pid %d", lock_file, owner)
                    with suppress(FileNotFoundError):
                        lock_file.unlink()
                    start = time.monotonic()
                    continue
                held_by = f" (held by pid {owner})" if owner is not None else ""
                raise RunLockedError(f"Timed out waiting for lease {lock_file}{held_by}") from exc
            time.sleep(_LEASE_POLL_SECONDS)

    with _HELD_LEASES_GUARD:
        _HELD_LEASES[key] = [me, 1]
    try:
        yield
    finally:
        with _HELD_LEASES_GUARD:
            _HELD_LEASES.pop(key, None)
        with suppress(FileNotFoundError):
            lock_file.unlink()
