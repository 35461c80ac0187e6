"""Exception taxonomy for the backup engine.

Only ConfigurationError and ConnectivityError are fatal, and only at startup.
The others are caught inside an attempt, logged, and turned into a settled
record or a skipped deletion.
"""

from __future__ import annotations


class BackupEngineError(Exception):
    """Base class for errors raised by the backup engine."""


class ConfigurationError(BackupEngineError):
    """Invalid or missing configuration; the process must not start scheduling."""


class ConnectivityError(BackupEngineError):
    """The database could not be reached by the startup probe."""


class ExecutionError(BackupEngineError):
    """The dump tool could not be launched, exited non-zero, or timed out."""

    def __init__(self, message: str, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class PersistenceError(BackupEngineError):
    """A metadata store write failed."""


class RetentionError(BackupEngineError):
    """A single retention deletion failed."""
