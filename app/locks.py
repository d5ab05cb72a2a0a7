"""
Process-wide script lock guarding spreadsheet writes.

One lock for the whole service, not per row or per sheet: reaction toggles,
highlight toggles and user-table writes all serialize on it. Waiting is
bounded; a timeout raises LockTimeout and is never retried.
"""
import logging
import threading
from contextlib import contextmanager

from errors import LockTimeout

logger = logging.getLogger(__name__)


class ScriptLock:
    def __init__(self):
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, timeout: float, operation: str = "operation"):
        """Acquire within `timeout` seconds; the lock is released on every exit path."""
        if not self._lock.acquire(timeout=timeout):
            logger.warning("%s: lock wait of %ss exceeded", operation, timeout)
            raise LockTimeout(operation, timeout)
        try:
            yield
        finally:
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


script_lock = ScriptLock()


def get_script_lock() -> ScriptLock:
    """FastAPI dependency: the shared script lock."""
    return script_lock
