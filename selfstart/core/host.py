from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from selfstart.core.status import BackendStatus


class SelfStartHost(Protocol):
    """Capabilities a host backend hands to the supervisor for one launch."""

    def get_status(self) -> BackendStatus: ...

    def revise_status(self, status: BackendStatus) -> None: ...

    async def probe(self) -> bool: ...

    def on_output_line(self, line: str) -> None: ...

    def take_process(self, port: int, process: asyncio.subprocess.Process) -> None: ...


@dataclass
class CallbackHost:
    """Adapts plain callables to the host protocol."""

    getter: Callable[[], BackendStatus]
    setter: Callable[[BackendStatus], None]
    is_alive: Callable[[], Awaitable[bool] | bool]
    take_output: Callable[[int, Any], None] | None = None
    output_sink: Callable[[str], None] | None = None

    def get_status(self) -> BackendStatus:
        return self.getter()

    def revise_status(self, status: BackendStatus) -> None:
        self.setter(status)

    async def probe(self) -> bool:
        result = self.is_alive()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def on_output_line(self, line: str) -> None:
        if self.output_sink:
            self.output_sink(line)

    def take_process(self, port: int, process: asyncio.subprocess.Process) -> None:
        if self.take_output:
            self.take_output(port, process)


@dataclass
class StatusChange:
    status: BackendStatus
    at: float


@dataclass
class WorkerRecord:
    """In-memory host for a single worker.

    Keeps the status, the assigned port and pid, a tail of the launcher output
    and every status change. ``readiness`` is awaited with the record itself and
    is expected to revise the status to RUNNING when the worker answers.
    ``on_change`` is called after each status change is recorded.
    """

    name: str
    status: BackendStatus = BackendStatus.WAITING
    port: int | None = None
    pid: int | None = None
    last_error: str | None = None
    readiness: Callable[["WorkerRecord"], Awaitable[bool]] | None = None
    output: deque[str] = field(default_factory=lambda: deque(maxlen=200))
    history: list[StatusChange] = field(default_factory=list)
    process: Any | None = field(default=None, repr=False)
    on_change: Callable[[StatusChange], None] | None = field(default=None, repr=False)

    def get_status(self) -> BackendStatus:
        return self.status

    def revise_status(self, status: BackendStatus) -> None:
        self.status = status
        change = StatusChange(status=status, at=time.time())
        self.history.append(change)
        if status == BackendStatus.ERRORED and self.last_error is None:
            self.last_error = self.output[-1] if self.output else "errored"
        if self.on_change is not None:
            self.on_change(change)

    async def probe(self) -> bool:
        if self.readiness is None:
            return False
        return await self.readiness(self)

    def on_output_line(self, line: str) -> None:
        self.output.append(line)

    def take_process(self, port: int, process: asyncio.subprocess.Process) -> None:
        self.port = port
        self.pid = process.pid
        self.process = process

    def as_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "port": self.port,
            "pid": self.pid,
            "last_error": self.last_error,
            "history": [{"status": change.status.value, "at": change.at} for change in self.history],
        }
