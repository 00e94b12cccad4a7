from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

from selfstart.core.launch import LaunchRequest, LaunchSpecBuilder, PortAllocator
from selfstart.core.supervisor import SelfStartSupervisor

# Stands in for launchtools/generic-launcher.sh; run with the current interpreter as the explicit shell.
FAKE_LAUNCHER = """
import sys
import time

gpu, script_dir, script_name, extra, mode, interpreter = sys.argv[1:7]
print(f"launch gpu={gpu} script={script_name} mode={mode} args={extra}", flush=True)
tokens = extra.split()
opts = dict(zip(tokens[::2], tokens[1::2]))
for i in range(int(opts.get("--lines", "0"))):
    print(f"line {i}", flush=True)
time.sleep(float(opts.get("--exit-after", "30")))
sys.exit(int(opts.get("--code", "0")))
"""

POLL_INTERVAL = 0.05
BASE_PORT = 7820


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SELFSTART_CONFIG", raising=False)
    monkeypatch.delenv("SELFSTART_EXPLICIT_SHELL", raising=False)
    monkeypatch.delenv("SELFSTART_LOG_DIR", raising=False)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def launcher_dir(tmp_path: Path) -> Path:
    target = tmp_path / "launchtools"
    target.mkdir()
    (target / "generic-launcher.sh").write_text(FAKE_LAUNCHER, encoding="utf-8")
    return target


@pytest.fixture
def start_script(tmp_path: Path) -> Path:
    script_dir = tmp_path / "worker"
    script_dir.mkdir()
    script = script_dir / "run.sh"
    script.write_text("#!/bin/sh\necho never run directly\n", encoding="utf-8")
    return script


@pytest.fixture
def supervisor(launcher_dir: Path) -> SelfStartSupervisor:
    builder = LaunchSpecBuilder(str(launcher_dir), explicit_shell=sys.executable)
    return SelfStartSupervisor(builder=builder, ports=PortAllocator(BASE_PORT), poll_interval=POLL_INTERVAL)


@pytest.fixture
def make_request(start_script: Path):
    def factory(extra_args: str = "", script: str | None = None, label: str = "test-worker") -> LaunchRequest:
        return LaunchRequest(
            script=str(start_script) if script is None else script,
            gpu_id=0,
            extra_args=extra_args,
            label=label,
            platform_id="linux-x64",
        )

    return factory

