"""Inter-process file locking and atomic JSON persistence for ledger files."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_STATE_IO = "E_STATE_IO"

_TRANSIENT_REPLACE_WINERRORS = {5, 32, 33}
_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}


class StateFileLockError(RuntimeError):
    """Raised when the `<path>.lock` file cannot be acquired in time."""

    code = E_STATE_LOCKED


@dataclass(frozen=True)
class ReplacePolicy:
    retries: int = 8
    base_delay_seconds: float = 0.03

    def delay(self, attempt: int) -> float:
        return max(0.01, self.base_delay_seconds) * (1.5**attempt)


DEFAULT_REPLACE_POLICY = ReplacePolicy()


def _prime_lock_file(handle: Any) -> None:
    # msvcrt locks a byte range, so the file must hold at least one byte.
    handle.seek(0, os.SEEK_END)
    if handle.tell() == 0:
        handle.write(b"0")
        handle.flush()
    handle.seek(0)


def _acquire(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
        return
    if fcntl is not None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _release(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive lock on `<target_path>.lock` for the duration of the block.

    The lock serialises read-modify-write sequences between processes that share
    the same state file. It does not make concurrent writers safe on its own;
    callers still go through :func:`atomic_write_json`.
    """

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    handle = open(lock_path, "a+b")
    locked = False
    try:
        _prime_lock_file(handle)
        while not locked:
            try:
                _acquire(handle)
                locked = True
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(
                        f"{E_STATE_LOCKED}: state lock timeout path={target_path}"
                    ) from exc
                time.sleep(poll)
        yield
    finally:
        if locked:
            try:
                _release(handle)
            except OSError:
                pass
        handle.close()


def _replace_with_retry(tmp_path: str, final_path: str, policy: ReplacePolicy) -> None:
    attempts = max(0, int(policy.retries))
    for attempt in range(attempts + 1):
        try:
            os.replace(tmp_path, final_path)
            return
        except OSError as exc:
            winerror = int(getattr(exc, "winerror", 0) or 0)
            transient = winerror in _TRANSIENT_REPLACE_WINERRORS or exc.errno in _TRANSIENT_REPLACE_ERRNOS
            if not transient or attempt >= attempts:
                raise
            time.sleep(policy.delay(attempt))


def atomic_write_json(
    path: str,
    payload: Any,
    *,
    indent: int = 2,
    policy: ReplacePolicy = DEFAULT_REPLACE_POLICY,
) -> None:
    """Serialise `payload` to a sibling temp file, fsync it, then rename it over `path`.

    Readers observe either the previous file or the complete new one, never a
    truncated write.
    """

    final_path = str(path)
    state_dir = os.path.dirname(final_path) or "."
    os.makedirs(state_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        prefix=f"{os.path.basename(final_path)}.",
        suffix=".tmp",
        dir=state_dir,
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        _replace_with_retry(tmp_path, final_path, policy)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def read_json_file(path: str) -> Any:
    """Load JSON from `path`; tolerates a UTF-8 BOM written by hand editors."""

    with open(path, "r", encoding="utf-8-sig") as f:
        return json.load(f)


def write_json_atomic_locked(
    path: str,
    payload: Any,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> None:
    with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
        atomic_write_json(path, payload)
