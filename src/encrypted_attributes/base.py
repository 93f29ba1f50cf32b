"""Base classes, constants, and types for encrypted attributes.

This module defines the exception hierarchy, the envelope version enum,
the wire-format constants shared by every envelope engine and the small
encoding helpers (canonical JSON, base64) they rely on.

Wire Format:
    Every envelope is a plain mapping carrying two tags plus
    version-specific fields::

        {
            "x_json_class": "Chef::EncryptedAttribute::EncryptedMash::Version1",
            "chef_type": "encrypted_attribute",
            "encrypted_data": {...},
            ...
        }

Example:
    >>> from encrypted_attributes.base import EnvelopeVersion
    >>>
    >>> version = EnvelopeVersion.from_value("2")
    >>> version.json_class
    'Chef::EncryptedAttribute::EncryptedMash::Version2'
"""

from __future__ import annotations

import base64
import binascii
import json
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# =============================================================================
# Constants
# =============================================================================

JSON_CLASS = "x_json_class"
CHEF_TYPE = "chef_type"
CHEF_TYPE_VALUE = "encrypted_attribute"
JSON_CLASS_PREFIX = "Chef::EncryptedAttribute::EncryptedMash::"

# Line length used by the platform's base64 encoder
BASE64_LINE_LENGTH = 60


# =============================================================================
# Exceptions
# =============================================================================


class EncryptedAttributeError(Exception):
    """Base exception for encrypted attribute errors."""

    def __init__(self, message: str, version: str | None = None) -> None:
        self.version = version
        super().__init__(f"[Version{version}] {message}" if version else message)


class FormatError(EncryptedAttributeError):
    """The envelope wire format or version is not usable."""

    pass


class UnsupportedFormat(FormatError):
    """No engine is registered for the envelope version."""

    def __init__(self, version: str, available: list[str] | None = None) -> None:
        self.available = available or []
        msg = f"Unsupported encrypted attribute format version: {version!r}"
        if self.available:
            msg += f". Supported: {', '.join(self.available)}"
        super().__init__(msg)


class UnacceptableFormat(FormatError):
    """The data is not an encrypted attribute (bad tags or empty version)."""

    pass


class KeyError_(EncryptedAttributeError):
    """Error related to RSA key material (invalid, missing half)."""

    pass


class InvalidKey(KeyError_):
    """The key cannot be parsed as an RSA key."""

    pass


class InvalidPublicKey(InvalidKey):
    """A valid RSA public key was expected."""

    pass


class InvalidPrivateKey(InvalidKey):
    """A valid RSA private key (public and private halves) was expected."""

    pass


class CryptoFailure(EncryptedAttributeError):
    """Base class for failures in a cryptographic phase."""

    pass


class EncryptionFailure(CryptoFailure):
    """Error while encrypting the value or wrapping its secrets."""

    pass


class DecryptionFailure(CryptoFailure):
    """Error while decrypting, or the envelope failed authentication."""

    pass


class MessageAuthenticationFailure(CryptoFailure):
    """Error while computing a message authentication code."""

    pass


class RequirementsFailure(EncryptedAttributeError):
    """The cryptography provider lacks a capability the format requires."""

    pass


# =============================================================================
# Enums
# =============================================================================


class EnvelopeVersion(str, Enum):
    """Supported envelope format versions.

    Version0 is the legacy RSA-only format without integrity protection.
    Version1 and Version2 wrap a per-message secret for each recipient.
    """

    V0 = "0"
    V1 = "1"
    V2 = "2"

    @classmethod
    def from_value(cls, value: "int | str | EnvelopeVersion") -> "EnvelopeVersion":
        """Resolve a version from an int, a numeral string or an enum value.

        Raises:
            UnacceptableFormat: If the version is empty.
            UnsupportedFormat: If the version is unknown.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise UnacceptableFormat(f"Bad encrypted attribute version: {value!r}")
        text = str(value)
        if not text:
            raise UnacceptableFormat(f"Bad encrypted attribute version: {value!r}")
        try:
            return cls(text)
        except ValueError:
            raise UnsupportedFormat(text, available=[v.value for v in cls])

    @classmethod
    def from_json_class(cls, json_class: str) -> "EnvelopeVersion":
        """Resolve a version from its ``x_json_class`` tag.

        Raises:
            UnsupportedFormat: If the class name is not a known version.
        """
        for version in cls:
            if version.json_class == json_class:
                return version
        raise UnsupportedFormat(json_class, available=[v.json_class for v in cls])

    @property
    def json_class(self) -> str:
        """Get the ``x_json_class`` tag value for this version."""
        return f"{JSON_CLASS_PREFIX}Version{self.value}"

    @property
    def is_authenticated(self) -> bool:
        """Check if envelopes of this version detect tampering."""
        return self != EnvelopeVersion.V0


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class Envelope(Protocol):
    """Protocol for envelope engines."""

    @property
    def version(self) -> EnvelopeVersion:
        """Get the envelope format version."""
        ...

    def encrypt(self, value: Any, public_keys: Any) -> "Envelope":
        """Encrypt a JSON-representable value for the given recipients."""
        ...

    def decrypt(self, private_key: Any) -> Any:
        """Decrypt the value with a recipient private key."""
        ...

    def can_be_decrypted_by(self, keys: Any) -> bool:
        """Check if every key in ``keys`` can decrypt the envelope."""
        ...

    def needs_update(self, keys: Any) -> bool:
        """Check if the envelope recipients differ from ``keys``."""
        ...

    def to_dict(self) -> dict[str, Any]:
        """Serialize the envelope with its tags."""
        ...


# =============================================================================
# Utility Functions
# =============================================================================


def json_encode(value: Any) -> str:
    """Encode a value as canonical JSON text wrapped in a one-element array.

    Wrapping avoids ambiguous encodings of bare scalars.

    Raises:
        EncryptionFailure: If the value is not JSON-representable.
    """
    try:
        return json.dumps([value], separators=(",", ":"), sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncryptionFailure(f"Value is not JSON-representable: {e}") from e


def json_decode(text: str | bytes) -> Any:
    """Decode text produced by :func:`json_encode`.

    Raises:
        DecryptionFailure: If the text is not a one-element JSON array.
    """
    try:
        decoded = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DecryptionFailure(f"{type(e).__name__}: {e}") from e
    if not isinstance(decoded, list) or len(decoded) != 1:
        raise DecryptionFailure("Decrypted JSON is not a one-element array")
    return decoded[0]


def b64encode(data: bytes) -> str:
    """Base64-encode bytes as newline-wrapped text.

    Lines are 60 characters long and the text ends with a newline.
    """
    encoded = base64.b64encode(data).decode("ascii")
    lines = [
        encoded[i : i + BASE64_LINE_LENGTH]
        for i in range(0, len(encoded), BASE64_LINE_LENGTH)
    ]
    return "".join(f"{line}\n" for line in lines)


def b64decode(text: Any, error: type[EncryptedAttributeError] = DecryptionFailure) -> bytes:
    """Decode base64 text, ignoring line breaks.

    Raises:
        ``error``: If the value is not a string or is not valid base64.
    """
    if not isinstance(text, str):
        raise error(f"Expected base64 text, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise error(f"Invalid base64 data: {e}") from e


def canonical_encoding(fields: dict[str, Any]) -> bytes:
    """Encode a mapping as JSON of its items sorted by key.

    This is the byte string the Version1 HMAC is computed over.
    """
    items = [[key, fields[key]] for key in sorted(fields)]
    return json.dumps(items, separators=(",", ":")).encode("utf-8")
