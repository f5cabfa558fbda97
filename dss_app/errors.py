"""Exception types raised by the space management layers.

Each error also derives from the builtin exception callers have always
caught for that situation (``ValueError`` for bad input and lookups,
``RuntimeError`` for failing external programs), so existing ``except``
clauses keep working.
"""

from typing import Optional, Sequence


class DssError(Exception):
    """Base class for errors reported to the operator as plain messages."""


class ConfigReadError(DssError, ValueError):
    """The spaces config (or an import file) is not valid JSON of the expected shape."""


class DuplicateNameError(DssError, ValueError):
    """A space with the same name (or slug) already exists."""


class NotFoundError(DssError, ValueError):
    """The requested space does not exist or lacks required data."""


class ActiveSpaceError(DssError, ValueError):
    """The operation is not allowed on the currently active space."""


class KeyGenerationError(DssError, RuntimeError):
    """Creating an SSH key pair failed."""


class UnsupportedPlatformError(DssError, RuntimeError):
    """The current operating system has no known clipboard program."""


class ExternalCommandError(DssError, RuntimeError):
    """An external program was missing or exited with a failure status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        cmd = " ".join(self.command)
        if returncode is not None:
            message = f"Command '{cmd}' failed with exit code {returncode}"
        elif self.stderr:
            message = f"Command '{cmd}' not run"
        else:
            message = f"Command not found: {cmd}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)
