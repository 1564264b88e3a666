"""Exception hierarchy for vmshuttle.

All exceptions inherit from ShuttleError.

Hierarchy:
    ShuttleError (base)
    ├── InputValidationError (caller-bug marker base)
    │   └── ArgValidationError          ← bad QEMU arg key/value
    ├── TransientError (retryable marker base)
    │   └── SerialTimeoutError          ← no status sentinel before deadline
    ├── SessionCancelledError           ← instance closed while waiting
    ├── KeyGenerationError              ← ephemeral identity could not be built
    ├── SerialError
    │   ├── SerialConsoleBusyError      ← second command while one is in flight
    │   ├── SerialConsoleClosedError    ← console stream ended or not connected
    │   └── SerialCommandError          ← non-zero in-guest status
    │       └── SerialStatusMissingError ← sentinel carried no status character
    ├── HostKeyFormatError              ← malformed key-scan record
    ├── HostKeyVerificationError        ← unknown key type or key mismatch
    ├── SSHConnectError                 ← SSH transport/auth failure
    └── RemoteCommandError              ← remote command failed
"""

from __future__ import annotations

from typing import Any


def format_log_suffix(log: str) -> str:
    """Render captured console/stderr text for embedding in an error message."""
    log = log.strip()
    if not log:
        return "(no log available)"
    return f"(log: {log!r})"


class ShuttleError(Exception):
    """Base exception for all vmshuttle errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InputValidationError(ShuttleError):
    """Base for input validation errors (caller bugs, not guest failures)."""


class ArgValidationError(InputValidationError):
    """QEMU argument key or value rejected at construction.

    Raised for unknown flags, value-type mismatches, empty item keys or
    values, and characters outside the argument allowlist.
    """


class TransientError(ShuttleError):
    """Base for errors that may succeed on retry with a fresh instance."""


class SerialTimeoutError(TransientError):
    """The guest did not report a status sentinel before the deadline.

    Attributes:
        console_log: Console output captured before the deadline
    """

    def __init__(self, message: str, console_log: str = "", context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.console_log = console_log


class SessionCancelledError(ShuttleError):
    """The instance was closed while an operation was waiting on it."""


class KeyGenerationError(ShuttleError):
    """Ephemeral SSH identity could not be generated."""


class SerialError(ShuttleError):
    """Serial console failure."""


class SerialConsoleBusyError(SerialError):
    """A serial command was issued while another one still owns the console."""


class SerialConsoleClosedError(SerialError):
    """The serial console is not connected or its stream reached EOF."""


class SerialCommandError(SerialError):
    """A command sent over the serial console reported failure.

    Attributes:
        status: Status character reported by the guest ("" if missing)
        console_log: Console output accumulated while the command ran
    """

    def __init__(
        self,
        message: str,
        status: str = "",
        console_log: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"status": status})
        super().__init__(message, ctx)
        self.status = status
        self.console_log = console_log


class SerialStatusMissingError(SerialCommandError):
    """The status sentinel arrived without a status character.

    Usually means console output was truncated rather than the guest
    command having failed.
    """


class HostKeyFormatError(ShuttleError):
    """A host-key record could not be parsed. No partial table is built."""


class HostKeyVerificationError(ShuttleError):
    """The SSH server presented a host key that is not pinned."""


class SSHConnectError(ShuttleError):
    """SSH connection or authentication to the guest failed."""


class RemoteCommandError(ShuttleError):
    """A command run over SSH failed.

    Attributes:
        command: The command that was run
        stderr: Captured error stream text
        exit_status: Remote exit status, or None for transport failures
    """

    def __init__(
        self,
        message: str,
        command: str,
        stderr: str = "",
        exit_status: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"command": command, "exit_status": exit_status})
        super().__init__(message, ctx)
        self.command = command
        self.stderr = stderr
        self.exit_status = exit_status
