"""Host-key pinning from ssh-keyscan output.

The guest's host keys are scanned over the serial console right before the
first SSH connection, so the scanned keys are the root of trust for that
connection. There is no trust-on-first-use fallback: a key type that was not
scanned, or bytes that differ from the scan, fail the connection.

Record format (one per line, exactly three space-separated fields):
    <host> <key-type> <base64-public-key>
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

import paramiko

from vmshuttle._logging import get_logger
from vmshuttle.exceptions import HostKeyFormatError, HostKeyVerificationError

logger = get_logger(__name__)

_RECORD_FIELDS = 3


class HostKeyCallback:
    """Verification predicate over a fixed table of pinned host keys.

    Call with the key type and marshaled key bytes presented by the server.
    Returns None when the key is pinned, raises HostKeyVerificationError otherwise.
    """

    __slots__ = ("_known",)

    def __init__(self, known: Mapping[str, bytes]) -> None:
        self._known: Mapping[str, bytes] = MappingProxyType(dict(known))

    @property
    def key_types(self) -> frozenset[str]:
        return frozenset(self._known)

    def __call__(self, key_type: str, key_bytes: bytes) -> None:
        known_key = self._known.get(key_type)
        if known_key is None:
            raise HostKeyVerificationError(f"unknown key type '{key_type}'", {"key_type": key_type})
        if key_bytes != known_key:
            raise HostKeyVerificationError("public key mismatch", {"key_type": key_type})

    def verify_key(self, key: paramiko.PKey) -> None:
        """Verify a paramiko public key."""
        self(key.get_name(), key.asbytes())


def parse_ssh_keyscan(known_hosts: bytes) -> HostKeyCallback:
    """Parse ssh-keyscan output into a HostKeyCallback.

    Blank lines are skipped. Any malformed record fails the whole parse.

    Raises:
        HostKeyFormatError: Wrong field count or invalid base64
    """
    known: dict[str, bytes] = {}
    for raw_line in known_hosts.decode("utf-8", errors="replace").split("\n"):
        line = raw_line.rstrip("\r")
        if not line:
            continue

        fields = line.split(" ")
        if len(fields) != _RECORD_FIELDS:
            raise HostKeyFormatError(
                f"bad split ssh identity string length: want {_RECORD_FIELDS}, have {len(fields)} ({line!r})",
                {"line": line},
            )

        try:
            key_bytes = base64.b64decode(fields[2], validate=True)
        except binascii.Error as e:
            raise HostKeyFormatError(f"decode base64 public key: {e}", {"line": line}) from e

        known[fields[1]] = key_bytes

    logger.debug("Parsed host keys", extra={"key_types": sorted(known)})
    return HostKeyCallback(known)


def load_host_keys(path: Path) -> HostKeyCallback:
    """Load pinned host keys from a file in ssh-keyscan format."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise HostKeyFormatError(f"read host key file: {e}", {"path": str(path)}) from e
    return parse_ssh_keyscan(data)


class PinnedHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """paramiko policy that accepts only keys pinned in a HostKeyCallback.

    The SSHClient using this policy must not load any known_hosts file, so
    every server key reaches missing_host_key().
    """

    def __init__(self, callback: HostKeyCallback) -> None:
        self._callback = callback

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        try:
            self._callback.verify_key(key)
        except HostKeyVerificationError:
            logger.warning(
                "Rejected SSH host key",
                extra={"hostname": hostname, "key_type": key.get_name()},
            )
            raise
