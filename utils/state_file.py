"""Locked, atomic JSON state files shared by the position store and the journal."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_STATE_CORRUPT = "E_STATE_CORRUPT"

_RETRYABLE_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 6
_REPLACE_BASE_DELAY_SECONDS = 0.03

_MISSING = object()


class StateFileError(RuntimeError):
    code = "E_STATE_IO"


class StateFileLockError(StateFileError):
    """The `<state>.lock` file stayed locked past the timeout."""

    code = E_STATE_LOCKED


class StateFileCorruptError(StateFileError):
    code = E_STATE_CORRUPT


def _lock_nonblocking(handle: Any) -> bool:
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            return False
        return True
    if msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True
    return True


def _release(handle: Any) -> None:
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    elif msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


@contextmanager
def state_file_lock(path: str, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> Iterator[None]:
    lock_path = f"{path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        # msvcrt locks a byte range, so the file must not be empty.
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        handle.seek(0)
        while not _lock_nonblocking(handle):
            if time.monotonic() >= deadline:
                raise StateFileLockError(f"{E_STATE_LOCKED}: lock timeout path={path}")
            time.sleep(poll)
        try:
            yield
        finally:
            try:
                _release(handle)
            except OSError:
                pass


def atomic_write_json(path: str, payload: Any, *, indent: int = 2) -> None:
    """Dump to a sibling temp file, fsync, then `os.replace` over the target."""
    target_dir = os.path.dirname(str(path)) or "."
    os.makedirs(target_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=target_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        for attempt in range(_REPLACE_RETRIES + 1):
            try:
                os.replace(tmp_path, path)
                return
            except OSError as exc:
                # Windows readers can hold the target open for a few ms.
                if exc.errno not in _RETRYABLE_REPLACE_ERRNOS or attempt >= _REPLACE_RETRIES:
                    raise
                time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def write_json_atomic_locked(path: str, payload: Any, *, timeout_seconds: float = 2.0, indent: int = 2) -> None:
    with state_file_lock(path, timeout_seconds=timeout_seconds):
        atomic_write_json(path, payload, indent=indent)


def read_json_locked(path: str, *, timeout_seconds: float = 2.0, default: Any = _MISSING) -> Any:
    """Read a JSON state file under its lock.

    A missing file returns `default` when one is given, otherwise raises
    FileNotFoundError. Unparseable content raises StateFileCorruptError.
    """
    if not os.path.exists(path):
        if default is _MISSING:
            raise FileNotFoundError(path)
        return default
    with state_file_lock(path, timeout_seconds=timeout_seconds):
        with open(path, "r", encoding="utf-8-sig") as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as exc:
                raise StateFileCorruptError(f"{E_STATE_CORRUPT}: {path}: {exc}") from exc


def append_jsonl(path: str, row: dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(str(path)) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")
