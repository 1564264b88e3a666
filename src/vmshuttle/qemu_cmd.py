"""QEMU command line builder for a bootstrap guest.

The guest needs exactly two channels for the bootstrap protocol: a serial
console exposed on a host unix socket, and a user-mode network that forwards
a host port to the guest's sshd. Disks are attached as virtio drives.
"""

from vmshuttle import constants
from vmshuttle._logging import get_logger
from vmshuttle.models import Accel, VmConfig
from vmshuttle.qemu_args import (
    Arg,
    KeyValueArg,
    KeyValueArgItem,
    StringArg,
    UintArg,
    encode_args,
    must_new_flag_arg,
)
from vmshuttle.settings import Settings

logger = get_logger(__name__)


def build_qemu_args(config: VmConfig) -> list[Arg]:
    """Build validated QEMU arguments for config.

    Raises:
        ArgValidationError: A path or address in config contains characters
            outside the argument allowlist.
    """
    accel_items = [KeyValueArgItem("accel", config.accel.value)]
    if config.accel == Accel.TCG:
        # MTTCG spawns a translation thread per vCPU
        accel_items.append(KeyValueArgItem("thread", "single"))

    args: list[Arg] = [
        KeyValueArg("machine", [KeyValueArgItem("type", config.machine)]),
        KeyValueArg("accel", accel_items),
        UintArg("m", config.memory_mb),
        UintArg("smp", config.cpu_cores),
        must_new_flag_arg("nographic"),
        must_new_flag_arg("no-reboot"),
        KeyValueArg(
            "chardev",
            [
                KeyValueArgItem("backend", "socket"),
                KeyValueArgItem("id", constants.SERIAL_CHARDEV_ID),
                KeyValueArgItem("path", str(config.serial_socket_path)),
                KeyValueArgItem("server", "on"),
                KeyValueArgItem("wait", "off"),
            ],
        ),
        StringArg("serial", f"chardev:{constants.SERIAL_CHARDEV_ID}"),
        KeyValueArg(
            "netdev",
            [
                KeyValueArgItem("type", "user"),
                KeyValueArgItem("id", constants.NETDEV_ID),
                KeyValueArgItem(
                    "hostfwd",
                    f"tcp:{config.ssh_forward_host}:{config.ssh_forward_port}-:{constants.SSH_GUEST_PORT}",
                ),
            ],
        ),
        KeyValueArg(
            "device",
            [KeyValueArgItem("driver", "virtio-net-pci"), KeyValueArgItem("netdev", constants.NETDEV_ID)],
        ),
        KeyValueArg(
            "drive",
            [
                KeyValueArgItem("file", str(config.boot_image)),
                KeyValueArgItem("format", config.boot_image_format.value),
                KeyValueArgItem("if", "virtio"),
                KeyValueArgItem("snapshot", "on"),
            ],
        ),
    ]

    for disk in config.disks:
        items = [
            KeyValueArgItem("file", str(disk.path)),
            KeyValueArgItem("format", disk.format.value),
            KeyValueArgItem("if", "virtio"),
        ]
        if disk.read_only:
            items.append(KeyValueArgItem("readonly", "on"))
        if disk.snapshot:
            items.append(KeyValueArgItem("snapshot", "on"))
        args.append(KeyValueArg("drive", items))

    logger.debug(
        "Built QEMU args",
        extra={"arg_count": len(args), "disks": len(config.disks), "accel": config.accel.value},
    )
    return args


def build_qemu_cmd(settings: Settings, config: VmConfig) -> list[str]:
    """Build the full QEMU argv (binary first) for config."""
    return [str(settings.qemu_bin), *encode_args(build_qemu_args(config))]
