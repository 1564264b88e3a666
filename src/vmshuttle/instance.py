"""Guest VM session: serial bootstrap, host-key scan and SSH.

A freshly booted guest has no network and no credentials, only a serial
console with a root shell on it. Instance turns that into a pinned SSH
connection in three steps:

1. ssh_setup(): over serial, bring up networking, install an ephemeral
   public key and start sshd
2. scan_ssh_identity(): over serial, run ssh-keyscan against the guest's own
   sshd and capture its host keys
3. connect_ssh(): connect through the forwarded port, accepting only the
   scanned host keys and authenticating with the ephemeral key

Serial command protocol:
    Every command is a single shell line ending in `echo "SERIAL STATUS: $?"`.
    Completion is recognized only by a console line starting with that
    prefix; the character after it is the exit status. Each command is
    bounded by a deadline measured from the serial write and by the
    instance's cancellation event.

The QEMU process itself is started and stopped by the caller.
"""

from __future__ import annotations

import asyncio
import shlex
import types
from collections.abc import Callable
from dataclasses import dataclass
from typing import Self

import paramiko

from vmshuttle import constants
from vmshuttle._logging import get_logger
from vmshuttle.exceptions import (
    SerialCommandError,
    SerialStatusMissingError,
    SerialTimeoutError,
    SessionCancelledError,
    SSHConnectError,
    format_log_suffix,
)
from vmshuttle.host_keys import HostKeyCallback, PinnedHostKeyPolicy, parse_ssh_keyscan
from vmshuttle.models import CommandResult
from vmshuttle.serial_console import SerialConsole
from vmshuttle.settings import Settings
from vmshuttle.ssh_exec import run_ssh_cmd
from vmshuttle.ssh_keys import SSHIdentity, generate_ssh_key

logger = get_logger(__name__)

KEYSCAN_COMMAND = 'ssh-keyscan -H localhost; echo "SERIAL STATUS: $?"; rm /root/.ash_history\n'


def build_ssh_setup_command(authorized_key: bytes) -> str:
    """Build the composite sshd setup line for the guest shell.

    The inner `sh -c` runs with `set -e`, so the trailing status echo reports
    the first failing step. The key is shell-quoted inside the script, and the
    script is quoted again as the single `sh -c` argument.
    """
    inner = (
        "set -ex; ifconfig eth0 up; ifconfig lo up; udhcpc; mkdir -p ~/.ssh; "
        f"echo {shlex.quote(authorized_key.decode().strip())} > ~/.ssh/authorized_keys; "
        "rc-update add sshd; service sshd start"
    )
    return f'set -ex; do_setup () {{ sh -c {shlex.quote(inner)}; echo "SERIAL STATUS: $?"; }}; do_setup\n'


def _log_serial_failure(operation: str, status: str, console_log: str) -> None:
    logger.warning(
        "Serial command failed",
        extra={"operation": operation, "status": status, "console_log": console_log},
    )


@dataclass(frozen=True, slots=True)
class SerialCommandResult:
    """Output of a serial command that reported status 0.

    Attributes:
        output: Retained lines (per the command's filter), newline-joined
        console_log: Every line seen while the command ran
    """

    output: bytes
    console_log: str


class Instance:
    """One running guest VM session.

    Only the task that owns an Instance may issue serial commands on it; the
    console raises SerialConsoleBusyError if two commands overlap.

    Usage:
        console = await SerialConsole.open_unix(config.serial_socket_path, timeout=5.0)
        async with Instance(console, settings, ssh_port=config.ssh_forward_port) as vm:
            await vm.bootstrap()
            result = await vm.run_ssh_cmd("lsblk -J")
    """

    def __init__(
        self,
        console: SerialConsole,
        settings: Settings | None = None,
        *,
        ssh_host: str = constants.DEFAULT_SSH_FORWARD_HOST,
        ssh_port: int,
    ) -> None:
        self._console = console
        self._settings = settings or Settings()
        self._ssh_host = ssh_host
        self._ssh_port = ssh_port
        self._closed = asyncio.Event()
        self._identity: SSHIdentity | None = None
        self._ssh_client: paramiko.SSHClient | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def identity(self) -> SSHIdentity | None:
        return self._identity

    @property
    def ssh_client(self) -> paramiko.SSHClient | None:
        return self._ssh_client

    async def close(self) -> None:
        """Cancel in-flight waits and release the SSH client and console."""
        self._closed.set()
        if self._ssh_client is not None:
            await asyncio.to_thread(self._ssh_client.close)
            self._ssh_client = None
        await self._console.close()

    async def _run_serial_command(
        self,
        command: str,
        *,
        operation: str,
        timeout: float,
        retain: Callable[[bytes], bool] | None = None,
    ) -> SerialCommandResult:
        """Write one command line to the console and wait for its status sentinel.

        Args:
            command: Shell line, newline-terminated, ending with the status echo
            operation: Short name used in errors and logs
            timeout: Seconds from the write until the sentinel must arrive
            retain: Selects lines returned as output (default: none)

        Raises:
            SerialCommandError: Guest reported a non-zero status
            SerialStatusMissingError: Sentinel had no status character
            SerialTimeoutError: No sentinel before the deadline
            SessionCancelledError: Instance closed while waiting
        """
        async with self._console.exclusive():
            if self._closed.is_set():
                raise SessionCancelledError(f"instance closed before {operation} command was sent")
            self._console.reset()
            await self._console.write(command.encode())

            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            log_lines: list[str] = []
            retained: list[bytes] = []
            prefix = constants.SERIAL_STATUS_PREFIX

            try:
                async with asyncio.timeout_at(deadline):
                    while True:
                        chunk = await self._console.next_chunk(self._closed)
                        log_lines.append(chunk.decode("utf-8", errors="replace"))

                        if chunk.startswith(prefix):
                            status = chunk[len(prefix) : len(prefix) + 1]
                            break
                        if retain is not None and retain(chunk):
                            retained.append(chunk)
            except TimeoutError as e:
                console_log = "\n".join(log_lines)
                _log_serial_failure(operation, "timeout", console_log)
                raise SerialTimeoutError(
                    f"{operation} command timed out after {timeout}s {format_log_suffix(console_log)}",
                    console_log=console_log,
                    context={"operation": operation, "timeout": timeout},
                ) from e

        console_log = "\n".join(log_lines)
        if not status:
            _log_serial_failure(operation, "missing", console_log)
            raise SerialStatusMissingError(
                f"{operation} command status code did not show up {format_log_suffix(console_log)}",
                console_log=console_log,
                context={"operation": operation},
            )
        if status != constants.SERIAL_STATUS_OK:
            status_char = status.decode("utf-8", errors="replace")
            _log_serial_failure(operation, status_char, console_log)
            raise SerialCommandError(
                f"non-zero {operation} command status code: '{status_char}' {format_log_suffix(console_log)}",
                status=status_char,
                console_log=console_log,
                context={"operation": operation},
            )

        logger.debug(
            "Serial command succeeded",
            extra={"operation": operation, "console_lines": len(log_lines), "retained_lines": len(retained)},
        )
        return SerialCommandResult(output=b"\n".join(retained), console_log=console_log)

    async def ssh_setup(self) -> SSHIdentity:
        """Install a fresh public key in the guest and start sshd.

        Returns:
            The generated identity; its signer authenticates connect_ssh().

        Raises:
            KeyGenerationError: Identity could not be generated
            SerialCommandError: Setup failed inside the guest (log attached)
            SerialTimeoutError: Guest did not report within the timeout
            SessionCancelledError: Instance closed while waiting
        """
        identity = await asyncio.to_thread(generate_ssh_key)
        await self._run_serial_command(
            build_ssh_setup_command(identity.authorized_key),
            operation="setup",
            timeout=self._settings.serial_command_timeout_seconds,
        )
        self._identity = identity
        logger.info("Guest sshd configured over serial console")
        return identity

    async def scan_ssh_identity(self) -> bytes:
        """Run ssh-keyscan in the guest and return its hashed host-key lines.

        Only lines starting with "|" are kept; shell echo and ssh-keyscan's
        comment lines share the console and are dropped.
        """
        result = await self._run_serial_command(
            KEYSCAN_COMMAND,
            operation="keyscan",
            timeout=self._settings.keyscan_timeout_seconds,
            retain=lambda chunk: chunk.startswith(constants.KEYSCAN_LINE_PREFIX),
        )
        return result.output

    async def connect_ssh(self, identity: SSHIdentity, host_keys: HostKeyCallback) -> paramiko.SSHClient:
        """Open an SSH connection pinned to host_keys and authenticated with identity.

        Raises:
            HostKeyVerificationError: Server key is not pinned
            SSHConnectError: Connection or authentication failed
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(PinnedHostKeyPolicy(host_keys))

        def _connect() -> None:
            client.connect(
                hostname=self._ssh_host,
                port=self._ssh_port,
                username=self._settings.ssh_user,
                pkey=identity.signer,
                timeout=self._settings.ssh_connect_timeout_seconds,
                allow_agent=False,
                look_for_keys=False,
            )

        try:
            await asyncio.to_thread(_connect)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHConnectError(
                f"connect to vm ssh: {e}",
                {"host": self._ssh_host, "port": self._ssh_port},
            ) from e
        except BaseException:
            client.close()
            raise

        logger.info("SSH connection to guest established", extra={"host": self._ssh_host, "port": self._ssh_port})
        return client

    async def bootstrap(self) -> paramiko.SSHClient:
        """Run the full serial-to-SSH bootstrap and keep the resulting client."""
        identity = await self.ssh_setup()
        scanned = await self.scan_ssh_identity()
        host_keys = parse_ssh_keyscan(scanned)
        client = await self.connect_ssh(identity, host_keys)
        if self._closed.is_set():
            await asyncio.to_thread(client.close)
            raise SessionCancelledError("instance closed while connecting ssh")
        self._ssh_client = client
        return client

    async def run_ssh_cmd(self, cmd: str) -> CommandResult:
        """Run cmd over the bootstrapped SSH connection.

        Raises:
            SSHConnectError: bootstrap() has not completed
            RemoteCommandError: Command failed (stderr attached)
            SessionCancelledError: Instance closed before or while running
        """
        if self._closed.is_set():
            raise SessionCancelledError("instance is closed")
        if self._ssh_client is None:
            raise SSHConnectError("ssh is not connected; call bootstrap() first")
        return await run_ssh_cmd(self._ssh_client, cmd, cancelled=self._closed)
