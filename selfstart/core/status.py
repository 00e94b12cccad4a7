from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Callable


class BackendStatus(str, Enum):
    DISABLED = "disabled"
    WAITING = "waiting"
    LOADING = "loading"
    RUNNING = "running"
    ERRORED = "errored"


ACTIVE_STATUSES = frozenset({BackendStatus.LOADING, BackendStatus.RUNNING})


class StatusChannel:
    """Synchronization point for one worker's status.

    Reads and compare-and-set writes go through a lock so a host that revises
    status from another thread cannot interleave with the monitor. The monitor
    posts the process exit through an event that the poll loop waits on.
    """

    def __init__(self, getter: Callable[[], BackendStatus], setter: Callable[[BackendStatus], None]) -> None:
        self._get = getter
        self._set = setter
        self._lock = threading.Lock()
        self._exit_event = asyncio.Event()
        self.exit_code: int | None = None

    def current(self) -> BackendStatus:
        with self._lock:
            return self._get()

    def revise(self, status: BackendStatus) -> None:
        with self._lock:
            self._set(status)

    def force_errored_if_active(self) -> BackendStatus:
        """Returns the status observed before the (possible) override."""
        with self._lock:
            observed = self._get()
            if observed in ACTIVE_STATUSES:
                self._set(BackendStatus.ERRORED)
            return observed

    def post_exit(self, exit_code: int | None) -> None:
        self.exit_code = exit_code
        self._exit_event.set()

    @property
    def exited(self) -> bool:
        return self._exit_event.is_set()

    async def wait_exit(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._exit_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_closed(self) -> int | None:
        await self._exit_event.wait()
        return self.exit_code
