"""Single-command execution over an established SSH connection.

paramiko is blocking, so each command runs on a worker thread
(asyncio.to_thread) while the event loop races it against the instance's
cancellation event. One session channel is opened per command and closed on
every exit path; closing it is also how a cancelled command is unblocked.
"""

from __future__ import annotations

import asyncio
import select

import paramiko

from vmshuttle import constants
from vmshuttle._logging import get_logger
from vmshuttle.exceptions import RemoteCommandError, SessionCancelledError, format_log_suffix
from vmshuttle.models import CommandResult

logger = get_logger(__name__)


def _collect_output(channel: paramiko.Channel, cmd: str) -> tuple[bytes, bytes, int]:
    """Run cmd on channel and read stdout/stderr until the exit status arrives.

    Both streams are drained in one loop so a full stderr window cannot stall
    the command while stdout is being read.
    """
    stdout = bytearray()
    stderr = bytearray()
    channel.exec_command(cmd)
    while True:
        if channel.recv_ready():
            stdout.extend(channel.recv(constants.SSH_RECV_CHUNK_SIZE))
            continue
        if channel.recv_stderr_ready():
            stderr.extend(channel.recv_stderr(constants.SSH_RECV_CHUNK_SIZE))
            continue
        if channel.exit_status_ready():
            break
        if channel.closed:
            raise paramiko.SSHException("channel closed before exit status was received")
        select.select([channel], [], [], constants.SSH_POLL_INTERVAL_SECONDS)

    # The transport thread may buffer the last data packets together with the
    # exit status, after the ready checks above ran.
    while channel.recv_ready():
        stdout.extend(channel.recv(constants.SSH_RECV_CHUNK_SIZE))
    while channel.recv_stderr_ready():
        stderr.extend(channel.recv_stderr(constants.SSH_RECV_CHUNK_SIZE))
    return bytes(stdout), bytes(stderr), channel.recv_exit_status()


async def run_ssh_cmd(
    client: paramiko.SSHClient,
    cmd: str,
    *,
    cancelled: asyncio.Event | None = None,
) -> CommandResult:
    """Run cmd in a fresh session on client and capture its output.

    Args:
        client: Connected, host-key-verified SSH client
        cmd: Command line executed by the remote shell
        cancelled: Aborts the command when set

    Returns:
        CommandResult with stdout, stderr and exit status 0

    Raises:
        RemoteCommandError: Session could not be opened, transport failed,
            or the command exited non-zero. Message includes captured stderr.
        SessionCancelledError: cancelled was set before the command finished
    """
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise RemoteCommandError("create new vm ssh session: transport is not connected", command=cmd)

    try:
        channel = await asyncio.to_thread(transport.open_session)
    except (paramiko.SSHException, OSError) as e:
        raise RemoteCommandError(f"create new vm ssh session: {e}", command=cmd) from e

    try:
        run_task = asyncio.ensure_future(asyncio.to_thread(_collect_output, channel, cmd))
        waiters: set[asyncio.Future[object]] = {run_task}
        cancel_task: asyncio.Future[object] | None = None
        if cancelled is not None:
            cancel_task = asyncio.ensure_future(cancelled.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if run_task not in done:
            # Closing the channel makes the worker's select()/recv() return.
            channel.close()
            await asyncio.gather(run_task, return_exceptions=True)
            raise SessionCancelledError("instance closed while running ssh command", {"command": cmd})

        try:
            stdout, stderr, exit_status = run_task.result()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandError(f"run cmd: {e}", command=cmd) from e
    finally:
        channel.close()

    stderr_text = stderr.decode("utf-8", errors="replace")
    if exit_status != 0:
        raise RemoteCommandError(
            f"run cmd: exit status {exit_status} {format_log_suffix(stderr_text)}",
            command=cmd,
            stderr=stderr_text,
            exit_status=exit_status,
        )

    logger.debug("SSH command finished", extra={"command": cmd, "stdout_bytes": len(stdout)})
    return CommandResult(stdout=stdout, stderr=stderr, exit_status=exit_status)
