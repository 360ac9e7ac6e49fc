"""
Exception taxonomy.

Fatal stage errors abort the whole run; database errors are isolated to
one database and end up in the summary.
"""


class MigrationError(RuntimeError):
    """Base class for every error raised by pg2pg."""


class ConfigError(MigrationError):
    """Invalid connection details or run settings."""


class CommandError(MigrationError):
    """An external utility exited with a non-zero status."""

    def __init__(self, message: str, command=None, returncode: int = -1, stderr: str = ""):
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self):
        base = super().__str__()
        tail = self.stderr.strip().splitlines()[-1:] if self.stderr else []
        if tail:
            return f"{base} (exit {self.returncode}): {tail[0]}"
        return f"{base} (exit {self.returncode})"


class FatalStageError(MigrationError):
    """A stage failed in a way that makes every later stage unsafe."""

    stage = "unknown"

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class DiscoveryError(FatalStageError):
    stage = "discovered"


class GlobalsError(FatalStageError):
    stage = "globals"


class TuningError(FatalStageError):
    stage = "tuning-applied"


class DatabaseMigrationError(MigrationError):
    """One database failed; sibling databases are unaffected."""

    def __init__(self, message: str, database: str, step: str):
        super().__init__(message)
        self.database = database
        self.step = step


class DatabaseExistsError(DatabaseMigrationError):
    """Target already holds a non-empty database with the same name."""
