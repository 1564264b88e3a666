"""Shared pytest fixtures for vmshuttle tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable

import pytest

from vmshuttle.serial_console import SerialConsole
from vmshuttle.settings import Settings
from vmshuttle.ssh_keys import SSHIdentity, generate_ssh_key

# ============================================================================
# Serial console fakes
# ============================================================================


class FakeWriter:
    """Drop-in for asyncio.StreamWriter. Captures written data.

    on_write, when set, is called with each write; guest simulations use it
    to feed the reader with the guest's response.
    """

    def __init__(self, on_write: Callable[[bytes], None] | None = None) -> None:
        self.data = bytearray()
        self.closed = False
        self.on_write = on_write

    def write(self, data: bytes) -> None:
        self.data.extend(data)
        if self.on_write is not None:
            self.on_write(data)

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    @property
    def lines(self) -> list[str]:
        return [line for line in self.data.decode().split("\n") if line]


class FakeGuest:
    """Scripted guest shell on the other end of a serial console.

    Each write to the console pops the next scripted response (a list of
    console lines) and feeds it to the reader. An empty script leaves the
    guest silent.
    """

    def __init__(self) -> None:
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(on_write=self._respond)
        self.responses: list[list[bytes]] = []

    def _respond(self, data: bytes) -> None:
        # Terminal echo of the typed command comes first, like a real tty.
        self.reader.feed_data(data.rstrip(b"\n") + b"\r\n")
        if self.responses:
            for line in self.responses.pop(0):
                self.reader.feed_data(line + b"\r\n")

    def emit(self, *lines: bytes) -> None:
        """Feed unsolicited console output (e.g. boot messages)."""
        for line in lines:
            self.reader.feed_data(line + b"\r\n")


@pytest.fixture
async def guest() -> FakeGuest:
    return FakeGuest()


@pytest.fixture
async def console(guest: FakeGuest) -> AsyncGenerator[SerialConsole]:
    con = SerialConsole(guest.reader, guest.writer)  # type: ignore[arg-type]
    con.start()
    yield con
    await con.close()


# ============================================================================
# Settings and identities
# ============================================================================


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short serial deadlines so timeout tests finish quickly."""
    return Settings(serial_command_timeout_seconds=0.3, keyscan_timeout_seconds=0.3)


@pytest.fixture(scope="session")
def small_identity() -> SSHIdentity:
    """A 2048-bit identity shared across tests; 4096-bit generation is slow."""
    return generate_ssh_key(bits=2048)
