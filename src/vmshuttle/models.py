"""Data models for vmshuttle."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from vmshuttle import constants


class Accel(str, Enum):
    """QEMU accelerator."""

    KVM = "kvm"
    HVF = "hvf"
    TCG = "tcg"


class DiskFormat(str, Enum):
    """Image format passed to -drive format=."""

    RAW = "raw"
    QCOW2 = "qcow2"


class DiskSpec(BaseModel):
    """One block device attached to the guest."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: Path = Field(description="Image file or host block device")
    format: DiskFormat = DiskFormat.RAW
    read_only: bool = False
    snapshot: bool = Field(default=False, description="Discard guest writes on exit (-drive snapshot=on)")


class VmConfig(BaseModel):
    """Inputs for the QEMU argv of one guest session.

    Attributes:
        serial_socket_path: Unix socket QEMU listens on for the guest's serial console.
        ssh_forward_host: Host address forwarded to the guest's sshd.
        ssh_forward_port: Host port forwarded to the guest's sshd.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=constants.MIN_MEMORY_MB)
    cpu_cores: int = Field(default=constants.DEFAULT_CPU_CORES, ge=1, le=64)
    accel: Accel = Accel.KVM
    machine: str = "q35"
    boot_image: Path = Field(description="Guest OS image booted from the first drive")
    boot_image_format: DiskFormat = DiskFormat.QCOW2
    disks: tuple[DiskSpec, ...] = ()
    serial_socket_path: Path
    ssh_forward_host: str = constants.DEFAULT_SSH_FORWARD_HOST
    ssh_forward_port: int = Field(ge=1, le=65535)


class CommandResult(BaseModel):
    """Captured output of a command run over SSH."""

    model_config = ConfigDict(frozen=True)

    stdout: bytes
    stderr: bytes = b""
    exit_status: int = 0
