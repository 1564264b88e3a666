"""Tests for the Instance serial bootstrap protocol.

A FakeGuest answers each serial write with scripted console lines, exercising
the full reset -> write -> timed read path without QEMU. SSH connections are
mocked at the paramiko boundary.
"""

import asyncio
import logging
import shlex
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import paramiko
import pytest

from vmshuttle.exceptions import (
    HostKeyVerificationError,
    SerialCommandError,
    SerialConsoleBusyError,
    SerialStatusMissingError,
    SerialTimeoutError,
    SessionCancelledError,
    SSHConnectError,
)
from vmshuttle.host_keys import HostKeyCallback, PinnedHostKeyPolicy
from vmshuttle.instance import KEYSCAN_COMMAND, Instance, build_ssh_setup_command
from vmshuttle.serial_console import SerialConsole
from vmshuttle.settings import Settings
from vmshuttle.ssh_keys import SSHIdentity

from tests.conftest import FakeGuest

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def instance(
    console: SerialConsole,
    fast_settings: Settings,
    small_identity: SSHIdentity,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[Instance]:
    monkeypatch.setattr("vmshuttle.instance.generate_ssh_key", lambda: small_identity)
    vm = Instance(console, fast_settings, ssh_port=2222)
    yield vm
    await vm.close()


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ============================================================================
# Setup command construction
# ============================================================================


class TestBuildSSHSetupCommand:
    """Tests for build_ssh_setup_command()."""

    def test_single_line_with_status_echo(self, small_identity: SSHIdentity) -> None:
        cmd = build_ssh_setup_command(small_identity.authorized_key)
        assert cmd.endswith("do_setup\n")
        assert cmd.count("\n") == 1
        assert 'echo "SERIAL STATUS: $?"' in cmd

    def test_key_reaches_authorized_keys_verbatim(self, small_identity: SSHIdentity) -> None:
        key = small_identity.authorized_key.decode().strip()
        inner = _inner_script(build_ssh_setup_command(small_identity.authorized_key))
        tokens = shlex.split(inner)
        assert tokens[tokens.index("echo") + 1] == key
        assert "udhcpc;" in tokens

    def test_hostile_key_material_stays_quoted(self) -> None:
        hostile = b"ssh-rsa AAAA'; reboot; echo '\"$(id)\"\n"
        inner = _inner_script(build_ssh_setup_command(hostile))
        tokens = shlex.split(inner)
        assert tokens[tokens.index("echo") + 1] == hostile.decode().strip()
        assert "reboot;" not in tokens


def _inner_script(cmd: str) -> str:
    tokens = shlex.split(cmd)
    return tokens[tokens.index("-c") + 1]


# ============================================================================
# ssh_setup()
# ============================================================================


class TestSSHSetup:
    """Tests for the serial sshd setup exchange."""

    async def test_success_returns_identity(
        self, guest: FakeGuest, instance: Instance, small_identity: SSHIdentity
    ) -> None:
        guest.responses.append([b"+ ifconfig eth0 up", b"udhcpc: lease of 10.0.2.15 obtained", b"SERIAL STATUS: 0"])
        identity = await instance.ssh_setup()
        assert identity is small_identity
        assert instance.identity is small_identity
        written = guest.writer.data.decode()
        assert written.startswith("set -ex; do_setup () {")
        assert small_identity.signer.get_base64() in written

    async def test_non_zero_status_embeds_console_log(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"udhcpc: no lease, failing", b"SERIAL STATUS: 1"])
        with pytest.raises(SerialCommandError, match="non-zero setup command status code: '1'") as exc_info:
            await instance.ssh_setup()
        assert exc_info.value.status == "1"
        assert "udhcpc: no lease, failing" in str(exc_info.value)
        assert "udhcpc: no lease, failing" in exc_info.value.console_log
        assert not isinstance(exc_info.value, SerialStatusMissingError)
        assert instance.identity is None

    async def test_failure_logged_with_console_log(
        self, guest: FakeGuest, instance: Instance, caplog: pytest.LogCaptureFixture
    ) -> None:
        guest.responses.append([b"udhcpc: no lease, failing", b"SERIAL STATUS: 1"])
        with caplog.at_level(logging.WARNING, logger="vmshuttle"), pytest.raises(SerialCommandError):
            await instance.ssh_setup()
        record = next(r for r in caplog.records if r.getMessage() == "Serial command failed")
        assert record.operation == "setup"
        assert record.status == "1"
        assert "udhcpc: no lease, failing" in record.console_log

    async def test_missing_status_character(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"SERIAL STATUS: "])
        with pytest.raises(SerialStatusMissingError, match="status code did not show up"):
            await instance.ssh_setup()

    async def test_timeout_without_sentinel(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"Starting sshd ..."])
        with pytest.raises(SerialTimeoutError, match="setup command timed out") as exc_info:
            await instance.ssh_setup()
        assert "Starting sshd ..." in exc_info.value.console_log

    async def test_stale_sentinel_is_ignored(self, guest: FakeGuest, instance: Instance) -> None:
        """A status line emitted before the command was sent never completes it."""
        guest.emit(b"SERIAL STATUS: 0")
        await _settle()
        with pytest.raises(SerialTimeoutError):
            await instance.ssh_setup()

    async def test_sentinel_only_recognized_at_line_start(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"+ echo SERIAL STATUS: 1", b"SERIAL STATUS: 0"])
        await instance.ssh_setup()

    async def test_close_cancels_wait(self, instance: Instance) -> None:
        task = asyncio.create_task(instance.ssh_setup())
        await asyncio.sleep(0.05)
        await instance.close()
        with pytest.raises(SessionCancelledError):
            await task

    async def test_concurrent_command_rejected(self, console: SerialConsole, instance: Instance) -> None:
        async with console.exclusive():
            with pytest.raises(SerialConsoleBusyError):
                await instance.scan_ssh_identity()


# ============================================================================
# scan_ssh_identity()
# ============================================================================


SCAN_OUTPUT = [
    b"# localhost:22 SSH-2.0-OpenSSH_9.7",
    b"|1|c2FsdDE=|aGFzaDE= ssh-ed25519 QUJD",
    b"# localhost:22 SSH-2.0-OpenSSH_9.7",
    b"|1|c2FsdDI=|aGFzaDI= ssh-rsa REVG",
]


class TestScanSSHIdentity:
    """Tests for the serial ssh-keyscan exchange."""

    async def test_returns_only_hashed_host_lines(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: 0"])
        scanned = await instance.scan_ssh_identity()
        assert scanned == b"|1|c2FsdDE=|aGFzaDE= ssh-ed25519 QUJD\n|1|c2FsdDI=|aGFzaDI= ssh-rsa REVG"
        assert guest.writer.data.decode() == KEYSCAN_COMMAND

    async def test_non_zero_status(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"ssh-keyscan: not found", b"SERIAL STATUS: 2"])
        with pytest.raises(SerialCommandError, match="non-zero keyscan command status code: '2'"):
            await instance.scan_ssh_identity()

    async def test_timeout(self, instance: Instance) -> None:
        with pytest.raises(SerialTimeoutError, match="keyscan command timed out"):
            await instance.scan_ssh_identity()

    async def test_missing_status_character(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: "])
        with pytest.raises(SerialStatusMissingError, match="keyscan command status code did not show up") as exc_info:
            await instance.scan_ssh_identity()
        assert "ssh-ed25519 QUJD" in exc_info.value.console_log

    async def test_close_cancels_wait(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([SCAN_OUTPUT[0]])
        task = asyncio.create_task(instance.scan_ssh_identity())
        await asyncio.sleep(0.05)
        await instance.close()
        with pytest.raises(SessionCancelledError):
            await task

    async def test_closed_instance_sends_nothing(self, guest: FakeGuest, instance: Instance) -> None:
        await instance.close()
        with pytest.raises(SessionCancelledError):
            await instance.scan_ssh_identity()
        assert guest.writer.data == b""


# ============================================================================
# connect_ssh() / bootstrap() / run_ssh_cmd()
# ============================================================================


class TestConnectSSH:
    """Tests for connect_ssh() at the paramiko boundary."""

    async def test_connect_uses_pinned_policy_and_identity(
        self, instance: Instance, small_identity: SSHIdentity
    ) -> None:
        with patch("vmshuttle.instance.paramiko.SSHClient") as client_cls:
            client = await instance.connect_ssh(small_identity, HostKeyCallback({}))
        assert client is client_cls.return_value
        policy = client.set_missing_host_key_policy.call_args.args[0]
        assert isinstance(policy, PinnedHostKeyPolicy)
        kwargs = client.connect.call_args.kwargs
        assert kwargs["pkey"] is small_identity.signer
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "root"
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False

    async def test_transport_failure_wrapped(self, instance: Instance, small_identity: SSHIdentity) -> None:
        with patch("vmshuttle.instance.paramiko.SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = paramiko.SSHException("Authentication failed.")
            with pytest.raises(SSHConnectError, match="Authentication failed"):
                await instance.connect_ssh(small_identity, HostKeyCallback({}))
        client_cls.return_value.close.assert_called_once()

    async def test_host_key_rejection_propagates(self, instance: Instance, small_identity: SSHIdentity) -> None:
        with patch("vmshuttle.instance.paramiko.SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = HostKeyVerificationError("public key mismatch")
            with pytest.raises(HostKeyVerificationError):
                await instance.connect_ssh(small_identity, HostKeyCallback({}))
        client_cls.return_value.close.assert_called_once()


class TestBootstrap:
    """Tests for the full bootstrap sequence."""

    async def test_setup_scan_connect(self, guest: FakeGuest, instance: Instance, small_identity: SSHIdentity) -> None:
        guest.responses.append([b"SERIAL STATUS: 0"])
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: 0"])
        client = MagicMock(spec=paramiko.SSHClient)

        with patch.object(Instance, "connect_ssh", new=AsyncMock(return_value=client)) as connect:
            assert await instance.bootstrap() is client

        identity, host_keys = connect.call_args.args
        assert identity is small_identity
        host_keys("ssh-ed25519", b"ABC")
        host_keys("ssh-rsa", b"DEF")
        assert instance.ssh_client is client

    async def test_setup_failure_stops_bootstrap(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"SERIAL STATUS: 1"])
        with patch.object(Instance, "connect_ssh", new=AsyncMock()) as connect:
            with pytest.raises(SerialCommandError):
                await instance.bootstrap()
        connect.assert_not_called()
        assert guest.writer.lines[-1].endswith("do_setup")

    async def test_run_before_bootstrap(self, instance: Instance) -> None:
        with pytest.raises(SSHConnectError, match="call bootstrap"):
            await instance.run_ssh_cmd("ls")

    async def test_close_releases_ssh_client(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"SERIAL STATUS: 0"])
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: 0"])
        client = MagicMock(spec=paramiko.SSHClient)
        with patch.object(Instance, "connect_ssh", new=AsyncMock(return_value=client)):
            await instance.bootstrap()
        await instance.close()
        client.close.assert_called_once()
        assert instance.closed
        assert instance.ssh_client is None

    async def test_close_during_connect_releases_client(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"SERIAL STATUS: 0"])
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: 0"])
        client = MagicMock(spec=paramiko.SSHClient)
        connecting = asyncio.Event()
        release = asyncio.Event()

        async def slow_connect(*args: object) -> MagicMock:
            connecting.set()
            await release.wait()
            return client

        with patch.object(Instance, "connect_ssh", new=slow_connect):
            task = asyncio.create_task(instance.bootstrap())
            await connecting.wait()
            await instance.close()
            release.set()
            with pytest.raises(SessionCancelledError):
                await task

        client.close.assert_called_once()
        assert instance.ssh_client is None

    async def test_run_after_close(self, guest: FakeGuest, instance: Instance) -> None:
        guest.responses.append([b"SERIAL STATUS: 0"])
        guest.responses.append([*SCAN_OUTPUT, b"SERIAL STATUS: 0"])
        with patch.object(Instance, "connect_ssh", new=AsyncMock(return_value=MagicMock(spec=paramiko.SSHClient))):
            await instance.bootstrap()
        await instance.close()
        with pytest.raises(SessionCancelledError, match="instance is closed"):
            await instance.run_ssh_cmd("ls")
