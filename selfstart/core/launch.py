from __future__ import annotations

import logging
import os
import posixpath
import threading
from dataclasses import dataclass, field

from selfstart.core.config import DEFAULT_BASE_PORT, DEFAULT_LAUNCHER_DIR
from selfstart.core.platform import current_platform, is_windows

log = logging.getLogger("selfstart.launch")

PORT_PLACEHOLDER = "{PORT}"
WINDOWS_LAUNCHER = "generic-launcher.bat"
POSIX_LAUNCHER = "generic-launcher.sh"


def normalize_script_path(script: str) -> str:
    return script.strip().replace("\\", "/")


def script_extension(path: str) -> str:
    return path.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class LaunchRequest:
    script: str
    gpu_id: int = 0
    extra_args: str = ""
    label: str = "backend"
    platform_id: str = field(default_factory=current_platform)

    @property
    def disabled(self) -> bool:
        return not self.script or not self.script.strip()

    @property
    def path(self) -> str:
        return normalize_script_path(self.script)


@dataclass(frozen=True)
class LaunchSpec:
    program: str
    args: tuple[str, ...]
    port: int
    cwd: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def mode(self) -> str:
        return self.args[-2]


class PortAllocator:
    """Hands out ports from a base, one per launch, never reusing one."""

    def __init__(self, base: int = DEFAULT_BASE_PORT) -> None:
        self._next = base
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            port = self._next
            self._next += 1
            return port

    def peek(self) -> int:
        with self._lock:
            return self._next


class LaunchSpecBuilder:
    def __init__(
        self,
        launcher_dir: str = DEFAULT_LAUNCHER_DIR,
        explicit_shell: str | None = None,
        cwd: str | None = None,
    ) -> None:
        self.launcher_dir = launcher_dir.replace("\\", "/").rstrip("/") or "."
        self.explicit_shell = explicit_shell
        self.cwd = cwd

    def launcher_for(self, platform_id: str) -> str:
        name = WINDOWS_LAUNCHER if is_windows(platform_id) else POSIX_LAUNCHER
        return f"{self.launcher_dir}/{name}"

    def build(self, request: LaunchRequest, port: int) -> LaunchSpec:
        path = request.path
        launcher = self.launcher_for(request.platform_id)
        args: list[str] = []
        if self.explicit_shell is not None:
            program = self.explicit_shell
            args.append(launcher)
        else:
            program = launcher
        script_dir = posixpath.dirname(path)
        args.append(str(request.gpu_id))
        args.append(script_dir)
        args.append(path.rsplit("/", 1)[-1])
        args.append(request.extra_args.replace(PORT_PLACEHOLDER, str(port)).strip())
        if script_extension(path) == "py":
            args.append("py")
            args.append(self._resolve_python(script_dir, request.platform_id))
            log.debug("launch.python", extra={"interpreter": args[-1], "label": request.label})
        else:
            args.append("shellexec")
            args.append("none")
            log.debug("launch.shellexec", extra={"label": request.label})
        return LaunchSpec(program=program, args=tuple(args), port=port, cwd=self.cwd)

    @staticmethod
    def _resolve_python(script_dir: str, platform_id: str) -> str:
        if is_windows(platform_id):
            venv_python = posixpath.join(script_dir, "venv/Scripts/python.exe")
            if os.path.isfile(venv_python):
                return os.path.abspath(venv_python)
            embedded = posixpath.join(script_dir, "../python_embeded/python.exe")
            if os.path.isfile(embedded):
                return os.path.abspath(embedded)
            return "python"
        venv_python = posixpath.join(script_dir, "venv/bin/python")
        if os.path.isfile(venv_python):
            return os.path.abspath(venv_python)
        return "python3"
