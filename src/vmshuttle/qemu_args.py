"""Typed, validated QEMU command-line arguments.

Every argument is validated when it is constructed, so an argument object is
always safe to render. Rendered values are concatenated unescaped into QEMU's
argv, which is why keys and values go through one conservative allowlist:

- the argument key must be a known QEMU flag accepting that kind of value
  (validate_arg_key)
- every string that ends up in a value must match SAFE_VALUE_PATTERN
  (validate_arg_str_value)

Usage:
    drive = KeyValueArg("drive", [KeyValueArgItem("file", "/images/disk.qcow2"), KeyValueArgItem("if", "virtio")])
    argv = encode_args([must_new_flag_arg("nographic"), drive])
    # ["-nographic", "-drive", "file=/images/disk.qcow2,if=virtio"]
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Final, Protocol, runtime_checkable

from vmshuttle.exceptions import ArgValidationError


class ArgAcceptedValue(str, Enum):
    """Kind of value a QEMU flag takes."""

    NONE = "none"
    KEY_VALUE = "key_value"
    STRING = "string"
    UINT = "uint"


SAFE_ARGS: Final[dict[str, ArgAcceptedValue]] = {
    "accel": ArgAcceptedValue.KEY_VALUE,
    "bios": ArgAcceptedValue.STRING,
    "boot": ArgAcceptedValue.KEY_VALUE,
    "chardev": ArgAcceptedValue.KEY_VALUE,
    "cpu": ArgAcceptedValue.STRING,
    "device": ArgAcceptedValue.KEY_VALUE,
    "display": ArgAcceptedValue.STRING,
    "drive": ArgAcceptedValue.KEY_VALUE,
    "m": ArgAcceptedValue.UINT,
    "machine": ArgAcceptedValue.KEY_VALUE,
    "monitor": ArgAcceptedValue.STRING,
    "netdev": ArgAcceptedValue.KEY_VALUE,
    "no-reboot": ArgAcceptedValue.NONE,
    "nodefaults": ArgAcceptedValue.NONE,
    "nographic": ArgAcceptedValue.NONE,
    "serial": ArgAcceptedValue.STRING,
    "smp": ArgAcceptedValue.UINT,
}
"""QEMU flags vmshuttle may emit, and the value kind each one accepts."""

SAFE_VALUE_PATTERN: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_.:/@+-]+")
"""Allowed characters for keys and values. Excludes ',', '=', whitespace,
quotes and shell metacharacters, which could break out of QEMU's
key=value syntax or the surrounding argv."""


def validate_arg_key(key: str, value_type: ArgAcceptedValue) -> None:
    """Check that key is a known QEMU flag that takes value_type values.

    Raises:
        ArgValidationError: Unknown flag or value kind mismatch
    """
    allowed = SAFE_ARGS.get(key)
    if allowed is None:
        raise ArgValidationError(f"unknown safe arg '{key}'", {"key": key})
    if allowed is not value_type:
        raise ArgValidationError(
            f"bad value type for arg '{key}': want {allowed.value}, have {value_type.value}",
            {"key": key, "want": allowed.value, "have": value_type.value},
        )


def validate_arg_str_value(value: str) -> None:
    """Check that value only contains allowlisted characters.

    Raises:
        ArgValidationError: Empty value or disallowed characters
    """
    if not value:
        raise ArgValidationError("empty value is not allowed")
    if SAFE_VALUE_PATTERN.fullmatch(value) is None:
        bad = sorted({c for c in value if SAFE_VALUE_PATTERN.fullmatch(c) is None})
        raise ArgValidationError(
            f"value '{value}' contains disallowed characters: {''.join(bad)!r}",
            {"value": value},
        )


@runtime_checkable
class Arg(Protocol):
    """A single QEMU command-line argument."""

    def string_key(self) -> str: ...

    def string_value(self) -> str: ...

    def value_type(self) -> ArgAcceptedValue: ...


class FlagArg:
    """Boolean flag with no value, e.g. -nographic."""

    __slots__ = ("_key",)

    def __init__(self, key: str) -> None:
        try:
            validate_arg_key(key, ArgAcceptedValue.NONE)
        except ArgValidationError as e:
            raise ArgValidationError(f"validate arg key: {e.message}", e.context) from e
        self._key = key

    def string_key(self) -> str:
        return self._key

    def string_value(self) -> str:
        return ""

    def value_type(self) -> ArgAcceptedValue:
        return ArgAcceptedValue.NONE

    def __repr__(self) -> str:
        return f"FlagArg({self._key!r})"


@dataclass(frozen=True, slots=True)
class KeyValueArgItem:
    """One sub-key/sub-value pair inside a key/value argument."""

    key: str
    value: str


class KeyValueArg:
    """Flag whose value is a comma-joined list of k=v items, e.g. -drive file=x,if=virtio.

    Items are copied into a tuple at construction. Mutating the list passed in
    afterwards does not affect the argument.
    """

    __slots__ = ("_items", "_key")

    def __init__(self, key: str, items: Iterable[KeyValueArgItem]) -> None:
        try:
            validate_arg_key(key, ArgAcceptedValue.KEY_VALUE)
        except ArgValidationError as e:
            raise ArgValidationError(f"validate arg key: {e.message}", e.context) from e

        copied: list[KeyValueArgItem] = []
        for item in items:
            if not item.key:
                raise ArgValidationError("empty key not allowed", {"arg": key})
            if not item.value:
                # QEMU accepts bare keys, but they are rejected for consistency.
                raise ArgValidationError(f"empty value for key '{item.key}' is not allowed", {"arg": key})

            try:
                validate_arg_str_value(item.key)
            except ArgValidationError as e:
                raise ArgValidationError(f"validate key '{item.key}': {e.message}", {"arg": key}) from e

            try:
                validate_arg_str_value(item.value)
            except ArgValidationError as e:
                raise ArgValidationError(f"validate map value '{item.value}': {e.message}", {"arg": key}) from e

            copied.append(KeyValueArgItem(item.key, item.value))

        self._key = key
        self._items: tuple[KeyValueArgItem, ...] = tuple(copied)

    @property
    def items(self) -> tuple[KeyValueArgItem, ...]:
        return self._items

    def string_key(self) -> str:
        return self._key

    def string_value(self) -> str:
        parts: list[str] = []
        for item in self._items:
            if not item.key:
                # Cannot happen after construction; a blank key would be bad syntax.
                continue
            parts.append(f"{item.key}={item.value}" if item.value else item.key)
        return ",".join(parts)

    def value_type(self) -> ArgAcceptedValue:
        return ArgAcceptedValue.KEY_VALUE

    def __repr__(self) -> str:
        return f"KeyValueArg({self._key!r}, {list(self._items)!r})"


class StringArg:
    """Flag with one allowlisted string value, e.g. -serial chardev:serial0."""

    __slots__ = ("_key", "_value")

    def __init__(self, key: str, value: str) -> None:
        try:
            validate_arg_key(key, ArgAcceptedValue.STRING)
        except ArgValidationError as e:
            raise ArgValidationError(f"validate arg key: {e.message}", e.context) from e
        try:
            validate_arg_str_value(value)
        except ArgValidationError as e:
            raise ArgValidationError(f"validate value for '{key}': {e.message}", {"arg": key}) from e
        self._key = key
        self._value = value

    def string_key(self) -> str:
        return self._key

    def string_value(self) -> str:
        return self._value

    def value_type(self) -> ArgAcceptedValue:
        return ArgAcceptedValue.STRING

    def __repr__(self) -> str:
        return f"StringArg({self._key!r}, {self._value!r})"


class UintArg:
    """Flag with a non-negative integer value, e.g. -m 512."""

    __slots__ = ("_key", "_value")

    def __init__(self, key: str, value: int) -> None:
        try:
            validate_arg_key(key, ArgAcceptedValue.UINT)
        except ArgValidationError as e:
            raise ArgValidationError(f"validate arg key: {e.message}", e.context) from e
        # bool is an int subclass; "-m True" is never intended
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ArgValidationError(f"value for '{key}' must be a non-negative integer, got {value!r}", {"arg": key})
        self._key = key
        self._value = value

    def string_key(self) -> str:
        return self._key

    def string_value(self) -> str:
        return str(self._value)

    def value_type(self) -> ArgAcceptedValue:
        return ArgAcceptedValue.UINT

    def __repr__(self) -> str:
        return f"UintArg({self._key!r}, {self._value!r})"


def must_new_flag_arg(key: str) -> FlagArg:
    """Build a FlagArg from a literal key, aborting on a programming error.

    Only for keys written in source code, never for external input.
    """
    try:
        return FlagArg(key)
    except ArgValidationError as e:
        raise RuntimeError(f"invalid built-in flag arg '{key}': {e.message}") from e


def must_new_key_value_arg(key: str, items: Sequence[KeyValueArgItem]) -> KeyValueArg:
    """Build a KeyValueArg from literal items, aborting on a programming error.

    Only for keys/items written in source code, never for external input.
    """
    try:
        return KeyValueArg(key, items)
    except ArgValidationError as e:
        raise RuntimeError(f"invalid built-in key/value arg '{key}': {e.message}") from e


def encode_args(args: Iterable[Arg]) -> list[str]:
    """Render arguments as an argv fragment.

    Each argument becomes "-key", followed by its rendered value unless the
    argument is a flag.
    """
    argv: list[str] = []
    for arg in args:
        argv.append(f"-{arg.string_key()}")
        if arg.value_type() is not ArgAcceptedValue.NONE:
            argv.append(arg.string_value())
    return argv
