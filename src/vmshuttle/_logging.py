"""Centralized logging for vmshuttle.

The library root logger carries a NullHandler and nothing else; attaching real
handlers is left to the application. VMSHUTTLE_LOG_LEVEL sets the level, and
configure_logging() installs vmshuttle's own stderr output.

Guest console excerpts:
    Records about serial commands may carry the guest's console output as
    `extra={"console_log": ...}`. The stderr formatter prints its last lines
    under the message, indented with "| ", so a failed bootstrap shows what
    the guest printed:

        WARNING [2026-02-25 10:02:54] vmshuttle.instance - Serial command failed
            | udhcpc: sending discover
            | udhcpc: no lease, failing

Non-blocking output:
    The serial reader task and paramiko worker threads both log. Records go
    through a bounded queue to a listener thread; when the queue is full they
    are dropped instead of stalling the caller.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vmshuttle"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("VMSHUTTLE_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 1024
DEFAULT_CONSOLE_TAIL_LINES = 20

_LEVEL_COLORS = {logging.WARNING: "yellow", logging.ERROR: "red", logging.CRITICAL: "red"}


class GuestConsoleFormatter(logging.Formatter):
    """Formatter that appends the tail of a record's `console_log` attribute."""

    def __init__(self, tail_lines: int = DEFAULT_CONSOLE_TAIL_LINES) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)
        self.tail_lines = tail_lines

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        console_log = getattr(record, "console_log", "")
        if not console_log or self.tail_lines <= 0:
            return text
        lines = console_log.splitlines()
        skipped = len(lines) - self.tail_lines
        excerpt = [f"    | {line}" for line in lines[-self.tail_lines :]]
        if skipped > 0:
            excerpt.insert(0, f"    | ... {skipped} earlier console lines")
        return "\n".join([text, *excerpt])


class _ClickHandler(logging.Handler):
    """Writes records to stderr via click.echo, colored by level.

    Runs on the listener thread. click.echo() strips ANSI codes when stderr
    is not a TTY.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            color = _LEVEL_COLORS.get(record.levelno)
            click.echo(click.style(msg, fg=color, dim=color is None), err=True)
        except BlockingIOError:
            pass  # stderr buffer full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedHandler(logging.handlers.QueueHandler):
    """Bounded queue handler owning the listener that drains it."""

    def __init__(self, target: logging.Handler) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self.target = target
        self._listener = logging.handlers.QueueListener(q, target)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep the record intact so console_log reaches the formatter.
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the vmshuttle hierarchy."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
    console_tail_lines: int = DEFAULT_CONSOLE_TAIL_LINES,
) -> None:
    """Send vmshuttle logs to stderr.

    Idempotent: the stderr handler is installed once, and later calls only
    update the level and the console excerpt length.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only log errors. Takes precedence over level.
        console_tail_lines: Guest console lines shown under serial command
            records; 0 hides them.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    handler = next((h for h in lib_logger.handlers if isinstance(h, _QueuedHandler)), None)
    if handler is None:
        handler = _QueuedHandler(_ClickHandler())
        lib_logger.addHandler(handler)
    handler.target.setFormatter(GuestConsoleFormatter(console_tail_lines))

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
