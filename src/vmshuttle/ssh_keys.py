"""Ephemeral SSH identity for the bootstrap hop."""

from __future__ import annotations

from dataclasses import dataclass

import paramiko

from vmshuttle import constants
from vmshuttle._logging import get_logger
from vmshuttle.exceptions import KeyGenerationError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SSHIdentity:
    """A freshly generated keypair.

    Attributes:
        signer: Private key used to authenticate to the guest (memory only)
        authorized_key: Public key as an authorized_keys line, newline-terminated
    """

    signer: paramiko.RSAKey
    authorized_key: bytes

    def __repr__(self) -> str:
        return f"SSHIdentity(fingerprint={self.signer.fingerprint!r})"


def generate_ssh_key(bits: int = constants.SSH_KEY_BITS) -> SSHIdentity:
    """Generate an RSA identity from the OS CSPRNG.

    Not retried on failure: a key that failed to generate cleanly is never used.

    Raises:
        KeyGenerationError: Key generation or public key encoding failed
    """
    try:
        signer = paramiko.RSAKey.generate(bits)
    except (paramiko.SSHException, ValueError) as e:
        raise KeyGenerationError(f"generate rsa private key: {e}", {"bits": bits}) from e

    try:
        authorized_key = f"{signer.get_name()} {signer.get_base64()}\n".encode()
    except (paramiko.SSHException, ValueError) as e:
        raise KeyGenerationError(f"encode public key: {e}", {"bits": bits}) from e

    logger.debug("Generated ephemeral SSH identity", extra={"bits": bits, "fingerprint": signer.fingerprint})
    return SSHIdentity(signer=signer, authorized_key=authorized_key)
