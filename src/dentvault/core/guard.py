"""Single-flight guard serializing backup and restore operations"""

import fcntl
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import OperationInProgress

logger = logging.getLogger("DentVault.Guard")

_process_lock = threading.Lock()


@contextmanager
def single_flight(lock_file: Path, operation: str) -> Iterator[None]:
    """Hold the process lock and an exclusive flock on ``lock_file``

    Neither lock is waited for: if another thread or process holds one,
    OperationInProgress is raised immediately.
    """
    if not _process_lock.acquire(blocking=False):
        raise OperationInProgress(f"Cannot start {operation}: another operation is running in this process")
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_file, "a+") as f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise OperationInProgress(
                    f"Cannot start {operation}: another process holds {lock_file}"
                ) from e
            logger.debug(f"Acquired operation lock for {operation}")
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    finally:
        _process_lock.release()
