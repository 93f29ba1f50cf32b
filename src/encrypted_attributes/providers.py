"""Envelope engine implementations and the version registry.

Each engine turns a JSON-representable value and a set of recipient RSA
public keys into a tagged envelope, and opens it again with one recipient's
private key.

Supported Versions:
    - Version0: value RSA-encrypted once per recipient (legacy, no integrity)
    - Version1: AES-256-CBC payload, HMAC-SHA256 (encrypt-then-MAC), RSA-wrapped
      secrets bundle per recipient
    - Version2: AES-256-GCM payload, RSA-wrapped raw key per recipient

Example:
    >>> from encrypted_attributes.providers import create_envelope, parse_envelope
    >>>
    >>> envelope = create_envelope(1).encrypt({"password": "s3cr3t"}, [public_pem])
    >>> stored = envelope.to_dict()
    >>>
    >>> parse_envelope(stored).decrypt(private_pem)
    {'password': 's3cr3t'}
"""

from __future__ import annotations

import copy
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, ClassVar

from cryptography.exceptions import InvalidSignature, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from encrypted_attributes.base import (
    CHEF_TYPE,
    CHEF_TYPE_VALUE,
    JSON_CLASS,
    JSON_CLASS_PREFIX,
    DecryptionFailure,
    EncryptionFailure,
    EnvelopeVersion,
    MessageAuthenticationFailure,
    RequirementsFailure,
    UnacceptableFormat,
    UnsupportedFormat,
    b64decode,
    b64encode,
    canonical_encoding,
    json_decode,
    json_encode,
)
from encrypted_attributes.keys import (
    KeyLike,
    RecipientSet,
    key_fingerprint,
    parse_private_key,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Base Envelope
# =============================================================================


class BaseEnvelope(ABC):
    """Base class for all envelope engines.

    An envelope owns a payload mapping holding the version-specific fields.
    The tags are not stored in the payload; :meth:`to_dict` adds them.
    Subclasses implement sealing and opening; recipient authorization is
    shared and always compares fingerprints.
    """

    VERSION: ClassVar[EnvelopeVersion]
    # Payload field whose keys are the recipient fingerprints
    RECIPIENTS_FIELD: ClassVar[str] = "encrypted_secret"

    def __init__(self, payload: Mapping[str, Any] | None = None) -> None:
        """Initialize envelope.

        Args:
            payload: Version-specific fields, deep-copied.
        """
        self._payload: dict[str, Any] = copy.deepcopy(dict(payload)) if payload else {}

    @property
    def version(self) -> EnvelopeVersion:
        """Get the envelope format version."""
        return self.VERSION

    @property
    def json_class(self) -> str:
        """Get the ``x_json_class`` tag value."""
        return self.VERSION.json_class

    @property
    def payload(self) -> dict[str, Any]:
        """Get a copy of the version-specific fields."""
        return copy.deepcopy(self._payload)

    @property
    def recipients(self) -> list[str]:
        """Get the fingerprints this envelope is encrypted for."""
        if not self.is_encrypted():
            return []
        return list(self._payload[self.RECIPIENTS_FIELD])

    def to_dict(self) -> dict[str, Any]:
        """Serialize the envelope, tags included."""
        return {
            JSON_CLASS: self.json_class,
            CHEF_TYPE: CHEF_TYPE_VALUE,
            **copy.deepcopy(self._payload),
        }

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def encrypt(self, value: Any, public_keys: Any) -> "BaseEnvelope":
        """Encrypt a value for a set of recipients.

        Any previous content is replaced only once sealing fully succeeds.

        Args:
            value: JSON-representable value.
            public_keys: A key or iterable of keys (objects or PEM).

        Returns:
            This envelope.

        Raises:
            InvalidPublicKey: If a recipient key is invalid.
            EncryptionFailure: If encryption fails.
        """
        value_json = json_encode(value)
        recipients = RecipientSet(public_keys)
        logger.debug(
            "Encrypting Version%s envelope for %d recipient(s)",
            self.VERSION.value,
            len(recipients),
        )
        self._payload = self._seal(value_json, recipients)
        return self

    def decrypt(self, private_key: KeyLike) -> Any:
        """Decrypt the value with a recipient private key.

        Raises:
            InvalidPrivateKey: If the key has no private half.
            DecryptionFailure: If the key is not a recipient or decryption fails.
        """
        key = self._parse_decryption_key(private_key)
        return json_decode(self._open(key))

    def can_be_decrypted_by(self, keys: Any) -> bool:
        """Check if every key in ``keys`` is a recipient of this envelope."""
        if not self.is_encrypted():
            return False
        return RecipientSet(keys).is_subset_of(self._payload[self.RECIPIENTS_FIELD])

    def needs_update(self, keys: Any) -> bool:
        """Check if the recipients differ from exactly ``keys``.

        The target fingerprint set is derived once, then compared for
        membership and cardinality against the stored recipients.
        """
        recipients = RecipientSet(keys)
        if not self.is_encrypted():
            return True
        return not recipients.matches_exactly(self._payload[self.RECIPIENTS_FIELD])

    def is_encrypted(self) -> bool:
        """Check if the payload has the fields this version requires."""
        return isinstance(self._payload.get(self.RECIPIENTS_FIELD), dict)

    # -------------------------------------------------------------------------
    # Engine hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _seal(self, value_json: str, recipients: RecipientSet) -> dict[str, Any]:
        """Build a complete payload for the encoded value.

        Args:
            value_json: Encoded value.
            recipients: Deduplicated recipients.

        Returns:
            New payload.
        """
        ...

    @abstractmethod
    def _open(self, private_key: rsa.RSAPrivateKey) -> bytes:
        """Recover the encoded value.

        Args:
            private_key: Recipient key, already checked to be a recipient.

        Returns:
            Encoded value bytes.
        """
        ...

    # -------------------------------------------------------------------------
    # Shared RSA helpers
    # -------------------------------------------------------------------------

    def _parse_decryption_key(self, private_key: KeyLike) -> rsa.RSAPrivateKey:
        key = parse_private_key(private_key)
        if not self.can_be_decrypted_by(key):
            raise DecryptionFailure(
                "Attribute data cannot be decrypted by the provided key.",
                self.VERSION.value,
            )
        return key

    def _rsa_encrypt(self, data: bytes, public_key: rsa.RSAPublicKey) -> str:
        try:
            return b64encode(public_key.encrypt(data, asym_padding.PKCS1v15()))
        except (ValueError, UnsupportedAlgorithm) as e:
            raise EncryptionFailure(f"RSA encryption failed: {e}", self.VERSION.value) from e

    def _rsa_decrypt(self, value: Any, private_key: rsa.RSAPrivateKey) -> bytes:
        ciphertext = b64decode(value)
        try:
            return private_key.decrypt(ciphertext, asym_padding.PKCS1v15())
        except ValueError as e:
            raise DecryptionFailure(f"RSA decryption failed: {e}", self.VERSION.value) from e

    def _rsa_encrypt_multi_key(self, data: bytes, recipients: RecipientSet) -> dict[str, str]:
        return {
            fingerprint: self._rsa_encrypt(data, public_key)
            for fingerprint, public_key in recipients.items()
        }

    def _rsa_decrypt_multi_key(
        self,
        encrypted: Mapping[str, Any],
        private_key: rsa.RSAPrivateKey,
    ) -> bytes:
        fingerprint = key_fingerprint(private_key)
        logger.debug("Opening Version%s envelope for %s", self.VERSION.value, fingerprint)
        return self._rsa_decrypt(encrypted[fingerprint], private_key)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(recipients={self.recipients!r})"


# =============================================================================
# Version0: RSA only
# =============================================================================


class Version0Envelope(BaseEnvelope):
    """Legacy multi-recipient RSA encryption.

    The encoded value is RSA-encrypted separately for each recipient, so the
    value must fit in a single RSA block (245 bytes for a 2048-bit key).

    WARNING: There is no integrity protection. A corrupted entry surfaces
    only as an RSA or JSON decoding error.
    """

    VERSION = EnvelopeVersion.V0
    RECIPIENTS_FIELD = "encrypted_data"

    def _seal(self, value_json: str, recipients: RecipientSet) -> dict[str, Any]:
        return {
            "encrypted_data": self._rsa_encrypt_multi_key(
                value_json.encode("utf-8"), recipients
            ),
        }

    def _open(self, private_key: rsa.RSAPrivateKey) -> bytes:
        return self._rsa_decrypt_multi_key(self._payload["encrypted_data"], private_key)


# =============================================================================
# Version1: shared secret + HMAC
# =============================================================================


class Version1Envelope(BaseEnvelope):
    """Hybrid encryption with a detached HMAC (encrypt-then-MAC).

    The value is encrypted once with AES-256-CBC. An HMAC-SHA256 is computed
    over the canonical encoding of the encrypted fields. Both random secrets
    are bundled as JSON and RSA-wrapped for each recipient. On decryption the
    HMAC is verified before any symmetric decryption happens.
    """

    VERSION = EnvelopeVersion.V1
    SYMMETRIC_ALGORITHM = "aes-256-cbc"
    HMAC_ALGORITHM = "sha256"

    # cipher name -> (key size, iv size)
    _SYMMETRIC_CIPHERS: ClassVar[dict[str, tuple[int, int]]] = {
        "aes-256-cbc": (32, 16),
    }
    _HMAC_DIGESTS: ClassVar[dict[str, type[hashes.HashAlgorithm]]] = {
        "sha256": hashes.SHA256,
    }

    def is_encrypted(self) -> bool:
        data = self._payload.get("encrypted_data")
        return (
            super().is_encrypted()
            and isinstance(data, dict)
            and isinstance(data.get("iv"), str)
            and isinstance(data.get("data"), str)
            and self._hmac_fields() is not None
        )

    def _seal(self, value_json: str, recipients: RecipientSet) -> dict[str, Any]:
        key_size, iv_size = self._SYMMETRIC_CIPHERS[self.SYMMETRIC_ALGORITHM]
        secret = os.urandom(key_size)
        iv = os.urandom(iv_size)
        encrypted_data = {
            "cipher": self.SYMMETRIC_ALGORITHM,
            "iv": b64encode(iv),
            "data": b64encode(self._cbc_encrypt(value_json.encode("utf-8"), secret, iv)),
        }

        hmac_secret = self._generate_hmac_secret(self.HMAC_ALGORITHM)
        digest = self._compute_hmac(
            canonical_encoding(encrypted_data), hmac_secret, self.HMAC_ALGORITHM
        )
        secrets = json_encode({"data": b64encode(secret), "hmac": b64encode(hmac_secret)})

        return {
            "encrypted_data": encrypted_data,
            "hmac": {"cipher": self.HMAC_ALGORITHM, "data": b64encode(digest)},
            "encrypted_secret": self._rsa_encrypt_multi_key(secrets.encode("utf-8"), recipients),
        }

    def _open(self, private_key: rsa.RSAPrivateKey) -> bytes:
        secrets = json_decode(
            self._rsa_decrypt_multi_key(self._payload["encrypted_secret"], private_key)
        )
        if not (
            isinstance(secrets, dict)
            and isinstance(secrets.get("data"), str)
            and isinstance(secrets.get("hmac"), str)
        ):
            raise DecryptionFailure("Malformed secrets bundle", self.VERSION.value)

        encrypted_data = self._payload["encrypted_data"]
        algorithm, expected = self._hmac_fields()  # type: ignore[misc]
        # mac-then-decrypt
        if not self._hmac_matches(
            b64decode(expected),
            canonical_encoding(encrypted_data),
            b64decode(secrets["hmac"]),
            algorithm,
        ):
            raise DecryptionFailure(
                "Error decrypting encrypted attribute: invalid hmac. "
                "Most likely the data is corrupted.",
                self.VERSION.value,
            )

        cipher_name = encrypted_data.get("cipher", self.SYMMETRIC_ALGORITHM)
        if cipher_name not in self._SYMMETRIC_CIPHERS:
            raise DecryptionFailure(f"Unsupported cipher: {cipher_name!r}", self.VERSION.value)
        return self._cbc_decrypt(
            b64decode(encrypted_data["data"]),
            b64decode(secrets["data"]),
            b64decode(encrypted_data["iv"]),
        )

    def _hmac_fields(self) -> tuple[str, str] | None:
        """Get (algorithm, base64 digest), accepting the bare-string form."""
        value = self._payload.get("hmac")
        if isinstance(value, str):
            return self.HMAC_ALGORITHM, value
        if isinstance(value, dict) and isinstance(value.get("data"), str):
            return value.get("cipher", self.HMAC_ALGORITHM), value["data"]
        return None

    def _cbc_encrypt(self, plaintext: bytes, key: bytes, iv: bytes) -> bytes:
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
            return encryptor.update(padded) + encryptor.finalize()
        except (ValueError, UnsupportedAlgorithm) as e:
            raise EncryptionFailure(f"{type(e).__name__}: {e}", self.VERSION.value) from e

    def _cbc_decrypt(self, ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except (ValueError, UnsupportedAlgorithm) as e:
            raise DecryptionFailure(f"{type(e).__name__}: {e}", self.VERSION.value) from e

    def _digest(self, algorithm: Any) -> hashes.HashAlgorithm:
        digest_class = self._HMAC_DIGESTS.get(algorithm) if isinstance(algorithm, str) else None
        if digest_class is None:
            raise MessageAuthenticationFailure(
                f"Unsupported HMAC algorithm: {algorithm!r}", self.VERSION.value
            )
        return digest_class()

    def _generate_hmac_secret(self, algorithm: str) -> bytes:
        digest = self._digest(algorithm)
        try:
            return os.urandom(digest.block_size)  # type: ignore[arg-type]
        except (NotImplementedError, OSError) as e:
            raise MessageAuthenticationFailure(
                f"Cannot generate HMAC secret: {e}", self.VERSION.value
            ) from e

    def _compute_hmac(self, data: bytes, secret: bytes, algorithm: str) -> bytes:
        try:
            mac = hmac.HMAC(secret, self._digest(algorithm))
            mac.update(data)
            return mac.finalize()
        except (UnsupportedAlgorithm, TypeError, ValueError) as e:
            raise MessageAuthenticationFailure(
                f"{type(e).__name__}: {e}", self.VERSION.value
            ) from e

    def _hmac_matches(self, expected: bytes, data: bytes, secret: bytes, algorithm: str) -> bool:
        try:
            mac = hmac.HMAC(secret, self._digest(algorithm))
            mac.update(data)
            mac.verify(expected)
        except InvalidSignature:
            return False
        except (UnsupportedAlgorithm, TypeError, ValueError) as e:
            raise MessageAuthenticationFailure(
                f"{type(e).__name__}: {e}", self.VERSION.value
            ) from e
        return True


# =============================================================================
# Version2: AEAD
# =============================================================================


@lru_cache(maxsize=None)
def _aead_supported(algorithm: str) -> bool:
    """Probe the cryptography backend for an AEAD cipher with explicit tags."""
    key_size, iv_size = Version2Envelope._AEAD_CIPHERS[algorithm]
    try:
        encryptor = Cipher(
            algorithms.AES(bytes(key_size)), modes.GCM(bytes(iv_size))
        ).encryptor()
        encryptor.finalize()
        tag = encryptor.tag
        decryptor = Cipher(
            algorithms.AES(bytes(key_size)), modes.GCM(bytes(iv_size), tag)
        ).decryptor()
        decryptor.finalize()
    except (UnsupportedAlgorithm, InvalidTag, ValueError, AttributeError):
        return False
    return True


def assert_aead_requirements(algorithm: str) -> None:
    """Fail fast if ``algorithm`` cannot be used with explicit tags.

    Raises:
        RequirementsFailure: If the algorithm is unknown or unsupported.
    """
    if algorithm not in Version2Envelope._AEAD_CIPHERS or not _aead_supported(algorithm):
        raise RequirementsFailure(
            "The used encrypted attributes protocol version requires a "
            f"cryptography backend with {algorithm!r} algorithm support"
        )


class Version2Envelope(BaseEnvelope):
    """Hybrid encryption with AES-256-GCM.

    The raw per-message key is RSA-wrapped for each recipient. The IV and the
    authentication tag travel next to the ciphertext; the GCM tag replaces
    the separate HMAC of Version1.
    """

    VERSION = EnvelopeVersion.V2
    ALGORITHM = "aes-256-gcm"

    # cipher name -> (key size, iv size)
    _AEAD_CIPHERS: ClassVar[dict[str, tuple[int, int]]] = {
        "aes-256-gcm": (32, 12),
    }

    def __init__(self, payload: Mapping[str, Any] | None = None) -> None:
        assert_aead_requirements(self.ALGORITHM)
        super().__init__(payload)

    def is_encrypted(self) -> bool:
        data = self._payload.get("encrypted_data")
        return (
            super().is_encrypted()
            and isinstance(data, dict)
            and isinstance(data.get("iv"), str)
            and isinstance(data.get("auth_tag"), str)
            and isinstance(data.get("data"), str)
        )

    def _seal(self, value_json: str, recipients: RecipientSet) -> dict[str, Any]:
        key_size, iv_size = self._AEAD_CIPHERS[self.ALGORITHM]
        secret = os.urandom(key_size)
        iv = os.urandom(iv_size)
        try:
            encryptor = Cipher(algorithms.AES(secret), modes.GCM(iv)).encryptor()
            ciphertext = encryptor.update(value_json.encode("utf-8")) + encryptor.finalize()
            tag = encryptor.tag
        except (ValueError, UnsupportedAlgorithm) as e:
            raise EncryptionFailure(f"{type(e).__name__}: {e}", self.VERSION.value) from e

        return {
            "encrypted_data": {
                "cipher": self.ALGORITHM,
                "iv": b64encode(iv),
                "auth_tag": b64encode(tag),
                "data": b64encode(ciphertext),
            },
            "encrypted_secret": self._rsa_encrypt_multi_key(secret, recipients),
        }

    def _open(self, private_key: rsa.RSAPrivateKey) -> bytes:
        secret = self._rsa_decrypt_multi_key(self._payload["encrypted_secret"], private_key)
        encrypted_data = self._payload["encrypted_data"]

        cipher_name = encrypted_data.get("cipher", self.ALGORITHM)
        if cipher_name not in self._AEAD_CIPHERS:
            raise DecryptionFailure(f"Unsupported cipher: {cipher_name!r}", self.VERSION.value)

        iv = b64decode(encrypted_data["iv"])
        tag = b64decode(encrypted_data["auth_tag"])
        ciphertext = b64decode(encrypted_data["data"])
        try:
            decryptor = Cipher(algorithms.AES(secret), modes.GCM(iv, tag)).decryptor()
            return decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise DecryptionFailure(
                "Authentication failed: data may be corrupted or tampered",
                self.VERSION.value,
            ) from e
        except (ValueError, UnsupportedAlgorithm) as e:
            raise DecryptionFailure(f"{type(e).__name__}: {e}", self.VERSION.value) from e


# =============================================================================
# Factory Functions
# =============================================================================

# Registry of envelope engines
_ENVELOPE_REGISTRY: dict[EnvelopeVersion, type[BaseEnvelope]] = {
    EnvelopeVersion.V0: Version0Envelope,
    EnvelopeVersion.V1: Version1Envelope,
    EnvelopeVersion.V2: Version2Envelope,
}


def list_supported_versions() -> list[str]:
    """List the envelope versions this package can read and write."""
    return [version.value for version in _ENVELOPE_REGISTRY]


def _engine_for(version: EnvelopeVersion) -> type[BaseEnvelope]:
    envelope_class = _ENVELOPE_REGISTRY.get(version)
    if envelope_class is None:
        raise UnsupportedFormat(version.value, available=list_supported_versions())
    return envelope_class


def create_envelope(version: int | str | EnvelopeVersion) -> BaseEnvelope:
    """Create an empty envelope for a format version.

    Args:
        version: Version as an int, a numeral string or an enum value.

    Raises:
        UnacceptableFormat: If the version is empty.
        UnsupportedFormat: If no engine is registered for the version.
        RequirementsFailure: If the runtime cannot support the version.

    Example:
        >>> envelope = create_envelope("2")
        >>> envelope.encrypt([1, 2, 3], public_pem).to_dict()["x_json_class"]
        'Chef::EncryptedAttribute::EncryptedMash::Version2'
    """
    return _engine_for(EnvelopeVersion.from_value(version))()


def envelope_exists(data: Any) -> bool:
    """Check if ``data`` is tagged as an encrypted attribute.

    Only the tags are inspected; the payload is not validated.
    """
    if not isinstance(data, Mapping):
        return False
    json_class = data.get(JSON_CLASS)
    return (
        isinstance(json_class, str)
        and json_class.startswith(JSON_CLASS_PREFIX)
        and data.get(CHEF_TYPE) == CHEF_TYPE_VALUE
    )


def parse_envelope(data: Any) -> BaseEnvelope:
    """Build an envelope from its serialized mapping.

    All fields except the tags are deep-copied into the new envelope.

    Raises:
        UnacceptableFormat: If the type tag is missing or mismatched, or the
            version tag is empty.
        UnsupportedFormat: If no engine is registered for the version tag.
    """
    if not isinstance(data, Mapping) or data.get(CHEF_TYPE) != CHEF_TYPE_VALUE:
        raise UnacceptableFormat(
            "Trying to construct invalid encrypted attribute. Maybe it is not encrypted?"
        )
    json_class = data.get(JSON_CLASS)
    if (
        not isinstance(json_class, str)
        or not json_class.startswith(JSON_CLASS_PREFIX)
        or not json_class[len(JSON_CLASS_PREFIX) :].removeprefix("Version")
    ):
        raise UnacceptableFormat(f"Bad encrypted attribute version tag: {json_class!r}")

    envelope_class = _engine_for(EnvelopeVersion.from_json_class(json_class))
    fields = {k: v for k, v in data.items() if k not in (JSON_CLASS, CHEF_TYPE)}
    return envelope_class(fields)
