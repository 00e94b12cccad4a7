from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from selfstart.core.config import SelfStartConfig
from selfstart.core import doctor
from selfstart.core.host import StatusChange, WorkerRecord
from selfstart.core.launch import LaunchRequest
from selfstart.core.logging import configure_logging, shutdown_logging, write_diagnostic_report
from selfstart.core.status import BackendStatus
from selfstart.core.supervisor import SelfStartSupervisor
from selfstart.helpers.http import HttpReadinessProbe, make_http_client


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="selfstart", description="Launch and supervise an external worker.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log launcher output and probes")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a worker and follow it until it exits")
    run.add_argument("script", help="Start script (.sh, .bat or .py)")
    run.add_argument("--gpu", type=int, default=0)
    run.add_argument("--args", dest="extra_args", default="", help="Extra arguments, {PORT} is substituted")
    run.add_argument("--label", default="worker")
    run.add_argument(
        "--health-url",
        default=None,
        help="Readiness URL, e.g. http://127.0.0.1:{port}/health. Without it the worker stays loading.",
    )

    sub.add_parser("doctor", help="Check the launcher setup")
    return parser


def _print_change(record: WorkerRecord, change: StatusChange) -> None:
    port = f" (port={record.port})" if record.port is not None else ""
    print(f"[selfstart] {record.name}: {change.status.value}{port}", flush=True)


async def run_worker(args: argparse.Namespace, config: SelfStartConfig) -> int:
    supervisor = SelfStartSupervisor.from_config(config)
    record = WorkerRecord(name=args.label)
    record.on_change = lambda change: _print_change(record, change)
    async with make_http_client(config.http_timeout_sec) as client:
        if args.health_url:
            record.readiness = HttpReadinessProbe(client, args.health_url)
        request = LaunchRequest(script=args.script, gpu_id=args.gpu, extra_args=args.extra_args, label=args.label)
        try:
            supervised = await supervisor.self_start(request, record)
            if supervised is not None:
                await supervised.wait_closed()
        except asyncio.CancelledError:
            await supervisor.shutdown()
            raise
    if record.status == BackendStatus.ERRORED:
        report = write_diagnostic_report("selfstart", record.as_payload(), worker=record.name)
        print(f"[selfstart] {record.name}: errored, report written to {report}")
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = SelfStartConfig.load(args.config)
    if args.command == "doctor":
        return doctor.main(config)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO, config.log_dir)
    try:
        return asyncio.run(run_worker(args, config))
    except KeyboardInterrupt:
        return 130
    finally:
        shutdown_logging()


if __name__ == "__main__":
    raise SystemExit(main())
