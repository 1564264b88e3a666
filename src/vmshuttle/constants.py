"""Constants for the vmshuttle serial protocol and guest defaults."""

from typing import Final

# ============================================================================
# Serial Console Protocol
# ============================================================================

SERIAL_STATUS_PREFIX: Final[bytes] = b"SERIAL STATUS: "
"""Sentinel prefix echoed by the guest after each composite command.
Followed by a single status character ("0" on success)."""

SERIAL_STATUS_OK: Final[bytes] = b"0"
"""Status character reported by the guest when the composite command succeeded."""

KEYSCAN_LINE_PREFIX: Final[bytes] = b"|"
"""Leading byte of hashed ssh-keyscan result lines (`ssh-keyscan -H`)."""

DEFAULT_SERIAL_COMMAND_TIMEOUT_SECONDS: Final[float] = 5.0
"""Deadline for the sshd setup command, measured from the serial write."""

DEFAULT_KEYSCAN_TIMEOUT_SECONDS: Final[float] = 5.0
"""Deadline for the in-guest ssh-keyscan command."""

CONSOLE_QUEUE_DEPTH: Final[int] = 4096
"""Maximum number of undelivered console lines held between commands.
Oldest lines are dropped past this; reset() discards them anyway."""

CONSOLE_READ_LIMIT: Final[int] = 64 * 1024
"""StreamReader buffer limit for a single console line."""

# ============================================================================
# SSH
# ============================================================================

SSH_KEY_BITS: Final[int] = 4096
"""RSA modulus size of the ephemeral bootstrap identity."""

SSH_GUEST_PORT: Final[int] = 22
"""Port sshd listens on inside the guest."""

DEFAULT_SSH_FORWARD_HOST: Final[str] = "127.0.0.1"
"""Host address QEMU's user-mode network forwards to the guest's sshd."""

DEFAULT_SSH_USER: Final[str] = "root"

DEFAULT_SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0

SSH_RECV_CHUNK_SIZE: Final[int] = 32 * 1024

SSH_POLL_INTERVAL_SECONDS: Final[float] = 0.05
"""select() timeout between channel readiness checks in the SSH worker thread."""

# ============================================================================
# QEMU
# ============================================================================

DEFAULT_MEMORY_MB: Final[int] = 512
MIN_MEMORY_MB: Final[int] = 128
DEFAULT_CPU_CORES: Final[int] = 1
SERIAL_CHARDEV_ID: Final[str] = "serial0"
NETDEV_ID: Final[str] = "net0"
