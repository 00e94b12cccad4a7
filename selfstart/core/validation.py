from __future__ import annotations

import logging
import os

log = logging.getLogger("selfstart.validation")

SCRIPT_EXTENSIONS = frozenset({"sh", "bat", "py"})
# wrong entry point -> script to use instead
RESERVED_SCRIPT_NAMES = {"webui-user": "webui"}
FORBIDDEN_PATH_CHARS = frozenset('<>:"|?*')


def forbidden_chars_in(path: str) -> list[str]:
    found: list[str] = []
    for char in path:
        if (ord(char) < 32 or char in FORBIDDEN_PATH_CHARS) and char not in found:
            found.append(char)
    return found


def _strip_drive(path: str) -> str:
    if len(path) > 1 and path[1] == ":":
        return path[2:]
    return path


def is_valid_start_path(label: str, path: str, ext: str) -> bool:
    """Checks a start-script path before anything is spawned.

    ``path`` is expected with forward slashes. Every rejection except the
    length check is logged; nothing is raised.
    """
    if len(path) < 5:
        return False
    if ext not in SCRIPT_EXTENSIONS:
        log.error(
            "Refusing init of %s with non-script target. Please verify your start script location. "
            "Path was '%s', which does not end in the expected 'py', 'bat', or 'sh'.",
            label,
            path,
        )
        return False
    base_name = path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
    if base_name in RESERVED_SCRIPT_NAMES:
        log.error(
            "Refusing init of %s with '%s' target script. Please use the '%s' script instead.",
            label,
            base_name,
            RESERVED_SCRIPT_NAMES[base_name],
        )
        return False
    bad_chars = forbidden_chars_in(_strip_drive(path))
    if bad_chars:
        log.error(
            "Failed init of %s with script target '%s' because that file path contains invalid characters ( %s ). "
            "Please verify your start script location.",
            label,
            path,
            "".join(char if ord(char) >= 32 else repr(char) for char in bad_chars),
        )
        return False
    if not os.path.isfile(path):
        log.error(
            "Failed init of %s with script target '%s' because that file does not exist. "
            "Please verify your start script location.",
            label,
            path,
        )
        return False
    return True
