"""Guest serial console channel.

QEMU exposes the guest's first serial port on a host unix socket
(`-chardev socket,...,server=on` + `-serial chardev:<id>`). A background
reader task splits the stream into lines and feeds them to a bounded queue;
the bootstrap and key-scan commands are the only consumers.

Ownership:
    Only one command may consume the queue at a time. exclusive() raises
    SerialConsoleBusyError instead of letting a second command interleave
    with the first one's output.

Reset:
    reset() discards every line received so far, so output from an earlier
    command can never satisfy a later command's completion check.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Self

from vmshuttle import constants
from vmshuttle._logging import get_logger
from vmshuttle.exceptions import SerialConsoleBusyError, SerialConsoleClosedError, SessionCancelledError

logger = get_logger(__name__)


def _log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback logging a reader task failure instead of losing it."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Serial reader task failed", extra={"task_name": task.get_name()}, exc_info=exc)


class SerialConsole:
    """Line-oriented serial console over an asyncio stream pair.

    Usage:
        console = await SerialConsole.open_unix(path, timeout=5.0)
        async with console.exclusive():
            console.reset()
            await console.write(b"echo hi\\n")
            line = await console.next_chunk(cancelled)
    """

    __slots__ = ("_eof", "_owner_lock", "_queue", "_read_task", "_reader", "_writer")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=constants.CONSOLE_QUEUE_DEPTH)
        self._eof = asyncio.Event()
        self._owner_lock = asyncio.Lock()
        self._read_task: asyncio.Task[None] | None = None

    @classmethod
    async def open_unix(cls, path: Path, timeout: float) -> Self:
        """Connect to QEMU's serial chardev socket and start reading.

        Raises:
            SerialConsoleClosedError: Connection failed or timed out
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(path), limit=constants.CONSOLE_READ_LIMIT),
                timeout=timeout,
            )
        except (OSError, TimeoutError) as e:
            raise SerialConsoleClosedError(f"connect to serial socket: {e}", {"path": str(path)}) from e

        console = cls(reader, writer)
        console.start()
        logger.debug("Serial console connected", extra={"path": str(path)})
        return console

    def start(self) -> None:
        """Start the background reader task."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop(), name="serial-console-reader")
            self._read_task.add_done_callback(_log_task_exception)

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    raw = await self._reader.readline()
                except ValueError:
                    # Line longer than the stream limit; the remainder is dropped.
                    logger.warning("Dropping oversized serial console line")
                    continue
                if not raw:
                    break
                line = raw.rstrip(b"\r\n")
                if self._queue.full():
                    with contextlib.suppress(asyncio.QueueEmpty):
                        self._queue.get_nowait()
                self._queue.put_nowait(line)
        except (ConnectionError, OSError) as e:
            logger.warning("Serial console read failed", extra={"error": str(e)})
        finally:
            self._eof.set()
            logger.debug("Serial console stream ended")

    @property
    def at_eof(self) -> bool:
        return self._eof.is_set() and self._queue.empty()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Claim the console for one command.

        Raises:
            SerialConsoleBusyError: Another command already owns the console
        """
        if self._owner_lock.locked():
            raise SerialConsoleBusyError("serial console is already owned by another command")
        async with self._owner_lock:
            yield

    def reset(self) -> int:
        """Discard all buffered console lines. Returns how many were dropped."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        if dropped:
            logger.debug("Discarded stale serial output", extra={"lines": dropped})
        return dropped

    async def write(self, data: bytes) -> None:
        """Write raw bytes to the guest.

        Raises:
            SerialConsoleClosedError: The stream is closed
        """
        if self._writer.is_closing():
            raise SerialConsoleClosedError("serial console is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise SerialConsoleClosedError(f"write to serial console: {e}") from e

    async def next_chunk(self, cancelled: asyncio.Event) -> bytes:
        """Wait for the next console line.

        Races the queue against the cancellation event and end of stream.
        Whichever resolves first wins; when several are ready at once,
        cancellation takes effect before data, and data before EOF.

        Raises:
            SessionCancelledError: cancelled was set
            SerialConsoleClosedError: The stream ended with nothing buffered
        """
        get_task = asyncio.ensure_future(self._queue.get())
        cancel_task = asyncio.ensure_future(cancelled.wait())
        eof_task = asyncio.ensure_future(self._eof.wait())
        try:
            done, _ = await asyncio.wait({get_task, cancel_task, eof_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, cancel_task, eof_task):
                if not task.done():
                    task.cancel()

        if cancel_task in done:
            raise SessionCancelledError("instance closed while waiting for serial output")
        if get_task in done:
            return get_task.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        raise SerialConsoleClosedError("serial console stream ended")

    async def close(self) -> None:
        """Stop reading and close the stream. Safe to call more than once."""
        if self._read_task is not None:
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
            self._read_task = None
        if not self._writer.is_closing():
            self._writer.close()
            with contextlib.suppress(TimeoutError, OSError):
                await asyncio.wait_for(self._writer.wait_closed(), timeout=1.0)
