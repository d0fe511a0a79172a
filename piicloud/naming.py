"""Stored-name generation and owner partition keys.

Stored names are unique by construction: a millisecond timestamp plus a
random component drawn from a CSPRNG. Nothing here reads the blob area.

Owner keys use a small escape encoding so that distinct identities can never
share a partition. Characters from ``[A-Za-z0-9-]`` are kept as-is, anything
else becomes ``_`` followed by the two-digit hex of each UTF-8 byte::

    alice@example.com -> alice_40example_2ecom
"""

import os
import re
import secrets
import time
from typing import Callable, Optional

from .errors import ValidationError

DEFAULT_NAME_PREFIX = "file"
RANDOM_SPACE = 10 ** 12  # ~40 bits
RANDOM_DIGITS = 12
ESCAPE_CHAR = "_"
MAX_EXTENSION_LENGTH = 32  # bytes, dot included
MAX_PREFIX_LENGTH = 32

_SAFE_KEY_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-"
)
_OWNER_KEY_PATTERN = re.compile(r"^(?:[A-Za-z0-9-]|_[0-9a-f]{2})+$")


def file_extension(original_name: Optional[str]) -> str:
    """Return the extension of *original_name* verbatim, or ``""``."""

    if not original_name:
        return ""
    basename = os.path.basename(original_name.replace("\\", "/"))
    return os.path.splitext(basename)[1]


def checked_extension(original_name: Optional[str]) -> str:
    """Return the extension of *original_name*, rejecting overlong ones.

    The extension is carried into the stored name, so its length bounds the
    length of the blob file name on disk.
    """

    extension = file_extension(original_name)
    if len(extension.encode("utf-8")) > MAX_EXTENSION_LENGTH:
        raise ValidationError(
            f"File extension exceeds maximum length of {MAX_EXTENSION_LENGTH} bytes"
        )
    return extension


def generate_stored_name(
    original_name: Optional[str],
    prefix: str = DEFAULT_NAME_PREFIX,
    *,
    now_ms: Optional[Callable[[], int]] = None,
) -> str:
    timestamp = now_ms() if now_ms is not None else time.time_ns() // 1_000_000
    extension = checked_extension(original_name)
    random_part = secrets.randbelow(RANDOM_SPACE)
    return (
        f"{prefix[:MAX_PREFIX_LENGTH]}-{timestamp}-{random_part:0{RANDOM_DIGITS}d}"
        f"{extension}"
    )


def normalize_identity(identity: Optional[str]) -> str:
    """Strip surrounding whitespace, rejecting missing identities."""

    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError("User ID is required")
    return identity.strip()


def derive_owner_key(identity: str) -> str:
    identity = normalize_identity(identity)
    parts = []
    for char in identity:
        if char in _SAFE_KEY_CHARS:
            parts.append(char)
            continue
        parts.extend(f"{ESCAPE_CHAR}{byte:02x}" for byte in char.encode("utf-8"))
    return "".join(parts)


def is_owner_key(value: str) -> bool:
    return bool(value) and _OWNER_KEY_PATTERN.match(value) is not None


def identity_from_owner_key(owner_key: str) -> str:
    """Invert :func:`derive_owner_key`."""

    if not is_owner_key(owner_key):
        raise ValidationError("Malformed owner key")
    decoded = bytearray()
    index = 0
    while index < len(owner_key):
        char = owner_key[index]
        if char == ESCAPE_CHAR:
            decoded.append(int(owner_key[index + 1:index + 3], 16))
            index += 3
        else:
            decoded.extend(char.encode("ascii"))
            index += 1
    try:
        return decoded.decode("utf-8")
    except UnicodeDecodeError as error:
        raise ValidationError("Malformed owner key") from error


def parse_owner_key(value: Optional[str]) -> str:
    """Accept *value* only if it is exactly the key of some identity."""

    if not isinstance(value, str) or not value:
        raise ValidationError("Owner key is required")
    if derive_owner_key(identity_from_owner_key(value)) != value:
        raise ValidationError("Malformed owner key")
    return value
