"""Non-blocking mutual exclusion for mutating backup operations."""

from __future__ import annotations

import contextlib
import threading
from collections.abc import Iterator

from backup_gateway.core.exceptions import LockContentionError


class OperationLock:
    """Binary lock with no wait queue.

    A caller that finds the lock held is rejected immediately instead of
    waiting its turn.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            LockContentionError: If another operation holds the lock.
        """
        if not self.try_acquire():
            raise LockContentionError("Another operation is currently running")
        try:
            yield
        finally:
            self.release()
