"""vmshuttle: drive a throwaway QEMU guest over its serial console and SSH.

Bootstraps a guest that has no network and no credentials into a
host-key-pinned SSH connection, so host tools can reach file systems the
host OS cannot mount natively.

Quick Start:
    ```python
    from vmshuttle import Instance, SerialConsole, Settings, VmConfig, build_qemu_cmd

    settings = Settings()
    config = VmConfig(boot_image=image, serial_socket_path=sock, ssh_forward_port=2222)
    argv = build_qemu_cmd(settings, config)  # start QEMU with this argv yourself

    console = await SerialConsole.open_unix(config.serial_socket_path, timeout=5.0)
    async with Instance(console, settings, ssh_port=config.ssh_forward_port) as vm:
        await vm.bootstrap()
        result = await vm.run_ssh_cmd("lsblk -J")
        print(result.stdout.decode())
    ```

Requirements:
    - QEMU on the host
    - A guest image with a root shell on ttyS0, BusyBox networking and OpenSSH
    - Python 3.12+
"""

from vmshuttle.exceptions import (
    ArgValidationError,
    HostKeyFormatError,
    HostKeyVerificationError,
    InputValidationError,
    KeyGenerationError,
    RemoteCommandError,
    SerialCommandError,
    SerialConsoleBusyError,
    SerialConsoleClosedError,
    SerialError,
    SerialStatusMissingError,
    SerialTimeoutError,
    SessionCancelledError,
    ShuttleError,
    SSHConnectError,
    TransientError,
)
from vmshuttle.host_keys import HostKeyCallback, PinnedHostKeyPolicy, load_host_keys, parse_ssh_keyscan
from vmshuttle.instance import Instance
from vmshuttle.models import Accel, CommandResult, DiskFormat, DiskSpec, VmConfig
from vmshuttle.qemu_args import (
    ArgAcceptedValue,
    FlagArg,
    KeyValueArg,
    KeyValueArgItem,
    StringArg,
    UintArg,
    encode_args,
    must_new_flag_arg,
    must_new_key_value_arg,
)
from vmshuttle.qemu_cmd import build_qemu_args, build_qemu_cmd
from vmshuttle.serial_console import SerialConsole
from vmshuttle.settings import Settings
from vmshuttle.ssh_exec import run_ssh_cmd
from vmshuttle.ssh_keys import SSHIdentity, generate_ssh_key

__all__ = [
    "Accel",
    "ArgAcceptedValue",
    "ArgValidationError",
    "CommandResult",
    "DiskFormat",
    "DiskSpec",
    "FlagArg",
    "HostKeyCallback",
    "HostKeyFormatError",
    "HostKeyVerificationError",
    "InputValidationError",
    "Instance",
    "KeyGenerationError",
    "KeyValueArg",
    "KeyValueArgItem",
    "PinnedHostKeyPolicy",
    "RemoteCommandError",
    "SSHConnectError",
    "SSHIdentity",
    "SerialCommandError",
    "SerialConsole",
    "SerialConsoleBusyError",
    "SerialConsoleClosedError",
    "SerialError",
    "SerialStatusMissingError",
    "SerialTimeoutError",
    "SessionCancelledError",
    "Settings",
    "ShuttleError",
    "StringArg",
    "TransientError",
    "UintArg",
    "VmConfig",
    "build_qemu_args",
    "build_qemu_cmd",
    "encode_args",
    "generate_ssh_key",
    "load_host_keys",
    "must_new_flag_arg",
    "must_new_key_value_arg",
    "parse_ssh_keyscan",
    "run_ssh_cmd",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vmshuttle")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
