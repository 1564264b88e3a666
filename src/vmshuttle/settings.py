"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmshuttle import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VMSHUTTLE_ prefix.
    Example: VMSHUTTLE_SERIAL_COMMAND_TIMEOUT_SECONDS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="VMSHUTTLE_",
        extra="ignore",
    )

    # QEMU
    qemu_bin: Path = Path("/usr/bin/qemu-system-x86_64")

    # Serial bootstrap
    serial_command_timeout_seconds: float = Field(default=constants.DEFAULT_SERIAL_COMMAND_TIMEOUT_SECONDS, gt=0)
    keyscan_timeout_seconds: float = Field(default=constants.DEFAULT_KEYSCAN_TIMEOUT_SECONDS, gt=0)

    # SSH
    ssh_user: str = constants.DEFAULT_SSH_USER
    ssh_connect_timeout_seconds: float = Field(default=constants.DEFAULT_SSH_CONNECT_TIMEOUT_SECONDS, gt=0)
