"""RSA key handling and recipient authorization.

This module parses recipient keys, computes their fingerprints and decides
whether a stored recipient map matches a target recipient set.

Recipients are always compared by fingerprint: the lowercase hex SHA-1 digest
of the DER-encoded SubjectPublicKeyInfo. Two keys are the same recipient when
their fingerprints match, regardless of whether they were given as PEM text,
PEM bytes, a public key object or a private key object.

Example:
    >>> from encrypted_attributes.keys import RecipientSet, key_fingerprint
    >>>
    >>> recipients = RecipientSet([alice_pem, bob_public_key, alice_private_key])
    >>> len(recipients)  # alice is deduplicated
    2
    >>> recipients.matches_exactly(envelope_recipients)
    True
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from encrypted_attributes.base import (
    InvalidKey,
    InvalidPrivateKey,
    InvalidPublicKey,
)

RSAKey = Union[rsa.RSAPublicKey, rsa.RSAPrivateKey]
KeyLike = Union[RSAKey, str, bytes]


# =============================================================================
# Key Parsing
# =============================================================================


def load_key(key: KeyLike) -> RSAKey:
    """Load an RSA key from a key object or PEM text/bytes.

    Private keys are tried first so that a private PEM keeps both halves.

    Raises:
        InvalidKey: If the input is not an RSA key.
    """
    if isinstance(key, (rsa.RSAPublicKey, rsa.RSAPrivateKey)):
        return key
    if isinstance(key, str):
        data = key.encode("utf-8")
    elif isinstance(key, bytes):
        data = key
    else:
        raise InvalidKey(f"The provided key is invalid: {type(key).__name__}")

    loaded: Any = None
    if b"PRIVATE KEY" in data:
        try:
            loaded = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKey(f"The provided key is invalid: {e}") from e
    else:
        try:
            loaded = serialization.load_pem_public_key(data)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise InvalidKey(f"The provided key is invalid: {e}") from e

    if not isinstance(loaded, (rsa.RSAPublicKey, rsa.RSAPrivateKey)):
        raise InvalidKey(f"Only RSA keys are supported, got {type(loaded).__name__}")
    return loaded


def parse_public_key(key: KeyLike) -> rsa.RSAPublicKey:
    """Parse a recipient key and return its public half.

    Raises:
        InvalidPublicKey: If the input is not a usable RSA key.
    """
    try:
        loaded = load_key(key)
    except InvalidKey as e:
        raise InvalidPublicKey(f"Invalid public key provided: {e}") from e
    if isinstance(loaded, rsa.RSAPrivateKey):
        return loaded.public_key()
    return loaded


def parse_private_key(key: KeyLike) -> rsa.RSAPrivateKey:
    """Parse a decryption key, which must carry the private half.

    Raises:
        InvalidPrivateKey: If the input is not an RSA private key.
    """
    try:
        loaded = load_key(key)
    except InvalidKey as e:
        raise InvalidPrivateKey(str(e)) from e
    if not isinstance(loaded, rsa.RSAPrivateKey):
        raise InvalidPrivateKey(
            "The provided key for decryption is invalid, a valid public "
            "and private key is required."
        )
    return loaded


def load_private_key_file(path: str | Path) -> rsa.RSAPrivateKey:
    """Read a PEM private key from disk.

    Raises:
        InvalidPrivateKey: If the file cannot be read or parsed.
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise InvalidPrivateKey(f"Cannot read private key file {path}: {e}") from e
    return parse_private_key(data)


def public_key_pem(key: KeyLike) -> str:
    """Serialize the public half of a key as SubjectPublicKeyInfo PEM."""
    public_key = parse_public_key(key)
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


# =============================================================================
# Fingerprints
# =============================================================================


def key_fingerprint(key: KeyLike) -> str:
    """Compute the recipient fingerprint of a key.

    Returns:
        Lowercase hex SHA-1 of the DER SubjectPublicKeyInfo.
    """
    public_key = parse_public_key(key)
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha1(der).hexdigest()


def _as_key_list(keys: KeyLike | Iterable[KeyLike] | None) -> list[KeyLike]:
    """Accept a single key or any iterable of keys."""
    if keys is None:
        return []
    if isinstance(keys, (str, bytes, rsa.RSAPublicKey, rsa.RSAPrivateKey)):
        return [keys]
    return list(keys)


# =============================================================================
# Recipient Sets
# =============================================================================


class RecipientSet:
    """Ordered, fingerprint-deduplicated set of recipient public keys.

    Every key is parsed and fingerprinted once when the set is built, so
    authorization checks never re-derive fingerprints per comparison.

    Example:
        >>> recipients = RecipientSet([key_a, key_b])
        >>> recipients.fingerprints
        ['3f1c...', '9a0b...']
        >>> recipients.matches_exactly({"3f1c...": "...", "9a0b...": "..."})
        True
    """

    def __init__(self, keys: KeyLike | Iterable[KeyLike] | None = None) -> None:
        """Initialize the recipient set.

        Args:
            keys: A key, or an iterable of keys, in any accepted form.

        Raises:
            InvalidPublicKey: If any key is invalid.
        """
        self._keys: dict[str, rsa.RSAPublicKey] = {}
        for key in _as_key_list(keys):
            public_key = parse_public_key(key)
            fingerprint = key_fingerprint(public_key)
            self._keys.setdefault(fingerprint, public_key)

    @property
    def fingerprints(self) -> list[str]:
        """Get recipient fingerprints in insertion order."""
        return list(self._keys)

    def items(self) -> Iterator[tuple[str, rsa.RSAPublicKey]]:
        """Iterate over (fingerprint, public key) pairs."""
        return iter(self._keys.items())

    def is_subset_of(self, stored: Mapping[str, Any]) -> bool:
        """Check if every recipient has an entry in ``stored``."""
        return all(fingerprint in stored for fingerprint in self._keys)

    def matches_exactly(self, stored: Mapping[str, Any]) -> bool:
        """Check if ``stored`` holds exactly this recipient set.

        Both containment and equal cardinality are required.
        """
        return self.is_subset_of(stored) and len(stored) == len(self._keys)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, str) and key in self._keys:
            return True
        try:
            return key_fingerprint(key) in self._keys  # type: ignore[arg-type]
        except InvalidKey:
            return False

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[rsa.RSAPublicKey]:
        return iter(self._keys.values())

    def __repr__(self) -> str:
        return f"RecipientSet({self.fingerprints!r})"
