from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from selfstart.core.config import SelfStartConfig
from selfstart.core.errors import SpawnError
from selfstart.core.host import SelfStartHost
from selfstart.core.launch import LaunchRequest, LaunchSpec, LaunchSpecBuilder, PortAllocator, script_extension
from selfstart.core.logging import log_context
from selfstart.core.status import ACTIVE_STATUSES, BackendStatus, StatusChannel
from selfstart.core.validation import is_valid_start_path

log = logging.getLogger("selfstart.supervisor")

OUTPUT_LINE_LIMIT = 1024 * 1024


@dataclass
class SupervisedProcess:
    label: str
    port: int
    spec: LaunchSpec
    process: asyncio.subprocess.Process
    channel: StatusChannel
    monitor_task: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self.channel.exited

    def terminate(self) -> None:
        """Kills the worker. The monitor then reports it as an unexpected exit."""
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    async def wait_closed(self) -> int | None:
        if self.monitor_task is not None:
            await self.monitor_task
        return self.channel.exit_code


class SelfStartSupervisor:
    """Launches external workers and tracks them until they are ready.

    One instance owns the port counter and the launcher settings, so separate
    instances never share ports or shell overrides.
    """

    def __init__(
        self,
        builder: LaunchSpecBuilder | None = None,
        ports: PortAllocator | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.builder = builder or LaunchSpecBuilder()
        self.ports = ports or PortAllocator()
        self.poll_interval = poll_interval
        self.launched: dict[int, SupervisedProcess] = {}

    @classmethod
    def from_config(cls, config: SelfStartConfig) -> "SelfStartSupervisor":
        return cls(
            builder=LaunchSpecBuilder(config.launcher_dir, config.explicit_shell),
            ports=PortAllocator(config.base_port),
            poll_interval=config.poll_interval_sec,
        )

    async def self_start(self, request: LaunchRequest, host: SelfStartHost) -> SupervisedProcess | None:
        """Starts ``request`` and returns once the worker is no longer loading.

        Returns None when nothing was launched (no script configured, or the
        script path was rejected). Raises SpawnError if the process cannot be
        started.
        """
        if request.disabled:
            host.revise_status(BackendStatus.DISABLED)
            return None
        with log_context(worker=request.label):
            return await self._launch(request, host)

    async def _launch(self, request: LaunchRequest, host: SelfStartHost) -> SupervisedProcess | None:
        log.debug(
            "selfstart.requested",
            extra={"script": request.script, "gpu_id": request.gpu_id},
        )
        path = request.path
        if not is_valid_start_path(request.label, path, script_extension(path)):
            host.revise_status(BackendStatus.ERRORED)
            return None

        port = self.ports.next()
        spec = self.builder.build(request, port)
        channel = StatusChannel(host.get_status, host.revise_status)
        channel.revise(BackendStatus.LOADING)
        try:
            process = await asyncio.create_subprocess_exec(
                spec.program,
                *spec.args,
                cwd=spec.cwd,
                stdout=asyncio.subprocess.PIPE,
                limit=OUTPUT_LINE_LIMIT,
            )
        except (OSError, ValueError) as exc:
            channel.revise(BackendStatus.ERRORED)
            log.error(
                "selfstart.spawn_failed",
                extra={"port": port, "program": spec.program, "error": str(exc)},
            )
            raise SpawnError(request.label, spec.program, str(exc)) from exc
        host.take_process(port, process)

        with log_context(port=port):
            supervised = SupervisedProcess(
                label=request.label, port=port, spec=spec, process=process, channel=channel
            )
            self.launched[port] = supervised
            log.info("selfstart.loading", extra={"pid": process.pid, "argv": spec.argv})
            supervised.monitor_task = asyncio.create_task(
                self._monitor(supervised, host), name=f"selfstart-{request.label}-{port}-monitor"
            )
            await self._poll_until_settled(supervised, host)
        return supervised

    async def _poll_until_settled(self, supervised: SupervisedProcess, host: SelfStartHost) -> None:
        channel = supervised.channel
        status = channel.current()
        while status == BackendStatus.LOADING:
            if await channel.wait_exit(self.poll_interval):
                break
            log.debug("selfstart.probe")
            try:
                alive = await host.probe()
            except Exception as exc:
                log.debug("selfstart.probe_failed", extra={"error": repr(exc)})
                alive = False
            if channel.exited:
                # the probe may have revised status after the monitor saw the exit
                channel.force_errored_if_active()
                break
            if alive:
                log.info("selfstart.started")
            status = channel.current()
        log.debug("selfstart.poll_done", extra={"status": channel.current().value})

    async def _monitor(self, supervised: SupervisedProcess, host: SelfStartHost) -> None:
        process = supervised.process
        try:
            await self._drain_output(supervised, host)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("selfstart.monitor_error")
        exit_code = await process.wait()
        observed = supervised.channel.force_errored_if_active()
        log.debug("selfstart.status_after_exit", extra={"status": observed.value})
        if observed in ACTIVE_STATUSES:
            log.warning(
                "selfstart.unexpected_exit",
                extra={"exit_code": exit_code, "previous_status": observed.value},
            )
        supervised.channel.post_exit(exit_code)
        self.launched.pop(supervised.port, None)
        log.info("selfstart.exited", extra={"exit_code": exit_code})

    @staticmethod
    async def _drain_output(supervised: SupervisedProcess, host: SelfStartHost) -> None:
        stream = supervised.process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                log.debug("selfstart.output_overlong")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            log.debug("selfstart.output", extra={"line": line})
            try:
                host.on_output_line(line)
            except Exception:
                log.exception("selfstart.output_sink_failed")

    def status(self) -> list[dict]:
        return [
            {"label": item.label, "port": item.port, "pid": item.pid, "exited": item.exited}
            for item in self.launched.values()
        ]

    async def shutdown(self) -> None:
        running = list(self.launched.values())
        for item in running:
            item.terminate()
        await asyncio.gather(*(item.wait_closed() for item in running))
