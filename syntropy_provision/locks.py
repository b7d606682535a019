"""Advisory file locks for shared operator state"""

import os
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

if os.name == 'nt':
    import msvcrt
else:
    import fcntl


class LockBusy(Exception):
    """Raised when a non-blocking lock is held by another session"""


def lock_name(value: str) -> str:
    """Turn a device path or node name into a safe lock file stem"""
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', value).strip('_') or 'lock'


def _try_lock(handle) -> bool:
    try:
        if os.name == 'nt':
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (BlockingIOError, PermissionError, OSError):
        return False


def _unlock(handle) -> None:
    if os.name == 'nt':
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def file_lock(path: Path, blocking: bool = True, timeout: Optional[float] = None,
              poll_interval: float = 0.1) -> Iterator[Path]:
    """Hold an exclusive lock on path for the duration of the block"""
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = None if timeout is None else time.monotonic() + timeout

    with open(path, 'a+') as handle:
        while not _try_lock(handle):
            if not blocking:
                raise LockBusy(f"{path} is held by another session")
            if deadline is not None and time.monotonic() >= deadline:
                raise LockBusy(f"timed out waiting for {path}")
            time.sleep(poll_interval)
        try:
            yield path
        finally:
            _unlock(handle)
