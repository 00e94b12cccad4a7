from __future__ import annotations


class SelfStartError(Exception):
    """Base class for self-start failures."""


class SpawnError(SelfStartError):
    def __init__(self, label: str, program: str, reason: str):
        super().__init__(f"Failed to start {label} via '{program}': {reason}")
        self.label = label
        self.program = program
        self.reason = reason


class DecodeError(SelfStartError):
    """Raised when a response body does not match the requested shape."""


class ServerFaultError(DecodeError):
    """Raised when a worker answers with its internal-error sentinel text."""
