"""Error taxonomy for the conversion supervisor.

Per-job failures (spawn, runtime, probe) never escape the scheduler; they are
turned into ``JobFailed`` events or metadata-unavailable UI state. Only
``SpawnExhaustedError`` is treated as a system-level condition.
"""

from typing import Optional


class ConvqError(Exception):
    """Base class for all convq errors."""

    def __init__(self, message: str, command=None, output: Optional[str] = None):
        self.message = message
        self.command = command
        self.output = output
        super().__init__(message)


class SpawnError(ConvqError):
    """The executable is missing or cannot be executed."""


class SpawnExhaustedError(SpawnError):
    """The OS refused to create any more processes (fds, memory, pids)."""


class RuntimeFailure(ConvqError):
    """The encoder exited with a nonzero code."""

    def __init__(self, message: str, return_code: Optional[int] = None, command=None, output: Optional[str] = None):
        super().__init__(message, command=command, output=output)
        self.return_code = return_code


class ProbeError(ConvqError):
    """Metadata for a source file is unavailable."""


class InvalidJobError(ConvqError, ValueError):
    """A submission was rejected before it reached the queue."""
