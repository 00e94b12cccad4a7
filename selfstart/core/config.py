from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

log = logging.getLogger("selfstart.config")

DEFAULT_BASE_PORT = 7820
DEFAULT_LAUNCHER_DIR = "./launchtools"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


class SelfStartConfig(BaseModel):
    explicit_shell: str | None = None
    launcher_dir: str = DEFAULT_LAUNCHER_DIR
    base_port: int = Field(default=DEFAULT_BASE_PORT, ge=1, le=65535)
    poll_interval_sec: float = Field(default=1.0, gt=0)
    http_timeout_sec: float = Field(default=600.0, gt=0)
    log_dir: str | None = None

    @field_validator("explicit_shell")
    @classmethod
    def _blank_shell_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @classmethod
    def default_config_path(cls) -> Path:
        return Path.home() / ".selfstart" / "config.json"

    @classmethod
    def _resolve_path(cls, path: Path | None) -> Path:
        if path is not None:
            return Path(path).expanduser()
        raw = os.getenv("SELFSTART_CONFIG", "").strip()
        if not raw:
            return cls.default_config_path()
        candidate = Path(raw).expanduser()
        if raw.endswith(("/", "\\")) or candidate.is_dir():
            return candidate / "config.json"
        return candidate

    @classmethod
    def _write_config_file(cls, config_path: Path, config: "SelfStartConfig") -> None:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(config.model_dump(), indent=2) + "\n", encoding="utf-8")

    @classmethod
    def _move_aside(cls, config_path: Path, tag: str, reason: Any) -> None:
        backup = config_path.with_name(f"{config_path.name}.{tag}-{_utc_stamp()}")
        try:
            config_path.rename(backup)
            cls._write_config_file(config_path, cls())
            log.warning("Config %s was %s; moved aside to %s (%s)", config_path, tag, backup, reason)
        except OSError as exc:
            log.warning("Failed to repair %s config %s: %s", tag, config_path, exc)

    @classmethod
    def load(cls, path: Path | None = None, *, create: bool = True) -> "SelfStartConfig":
        """
        Load the self-start config.

        Never raises on path, IO, JSON or schema problems: a missing file is
        created with defaults (when create=True) and an unreadable one is moved
        aside and replaced. ``SELFSTART_EXPLICIT_SHELL`` overrides the file.
        """
        config = cls._load_file(cls._resolve_path(path), create)
        shell_override = os.getenv("SELFSTART_EXPLICIT_SHELL")
        if shell_override is not None:
            config.explicit_shell = shell_override.strip() or None
        return config

    @classmethod
    def _load_file(cls, config_path: Path, create: bool) -> "SelfStartConfig":
        if not config_path.exists():
            if create:
                try:
                    cls._write_config_file(config_path, cls())
                except OSError as exc:
                    log.warning("Failed to create config file at %s: %s", config_path, exc)
            return cls()

        if not config_path.is_file():
            log.warning("Config path %s is not a file; using defaults", config_path)
            return cls()

        try:
            raw_text = config_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            log.warning("Failed to read config file %s: %s", config_path, exc)
            return cls()

        try:
            data: dict[str, Any] = json.loads(raw_text or "{}")
        except json.JSONDecodeError as exc:
            if create:
                cls._move_aside(config_path, "corrupt", exc)
            return cls()

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            if create:
                cls._move_aside(config_path, "invalid", exc)
            return cls()
