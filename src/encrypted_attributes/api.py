"""High-level encrypted attribute API.

:class:`EncryptedAttribute` combines a configuration, the local private key
and an optional recipient source into create/load/update operations on
serialized envelope mappings.

Example:
    >>> from encrypted_attributes import EncryptedAttribute, load_private_key_file
    >>>
    >>> attr = EncryptedAttribute(private_key=load_private_key_file("client.pem"))
    >>> stored = attr.create({"user": "admin", "password": "s3cr3t"})
    >>> attr.load(stored)
    {'password': 's3cr3t', 'user': 'admin'}
    >>> attr.update(stored)  # recipients unchanged
    False
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any, Protocol

from cryptography.hazmat.primitives.asymmetric import rsa

from encrypted_attributes.base import InvalidPrivateKey
from encrypted_attributes.cache import LRUCache
from encrypted_attributes.config import EncryptedAttributeConfig
from encrypted_attributes.keys import KeyLike, RecipientSet, parse_private_key
from encrypted_attributes.providers import (
    create_envelope,
    envelope_exists,
    parse_envelope,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Recipient Discovery
# =============================================================================


class RecipientSource(Protocol):
    """Callable returning the public keys matched by discovery queries."""

    def __call__(self, queries: list[str], partial_search: bool) -> list[KeyLike]:
        ...


class CachedRecipientSource:
    """Memoize a recipient source in an injected LRU cache.

    Results are keyed by the OR-joined query string.
    """

    def __init__(self, source: RecipientSource, cache: LRUCache | None = None) -> None:
        self._source = source
        self._cache = cache if cache is not None else LRUCache()

    @property
    def cache(self) -> LRUCache:
        return self._cache

    @staticmethod
    def query_key(queries: list[str]) -> str:
        return " OR ".join(queries)

    def __call__(self, queries: list[str], partial_search: bool) -> list[KeyLike]:
        key = self.query_key(queries)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        keys = list(self._source(queries, partial_search))
        self._cache.put(key, keys)
        return keys


# =============================================================================
# Encrypted Attribute
# =============================================================================


class EncryptedAttribute:
    """Create, load and update encrypted attribute mappings.

    The recipients of a new envelope are the configured extra keys, the
    public half of the local private key and whatever the recipient source
    discovers for ``config.client_search``.
    """

    def __init__(
        self,
        config: EncryptedAttributeConfig | None = None,
        private_key: KeyLike | None = None,
        recipient_source: RecipientSource | None = None,
    ) -> None:
        """Initialize the attribute API.

        Args:
            config: Settings (uses defaults if None).
            private_key: Local private key used to load and update.
            recipient_source: Discovery callable for extra recipients.

        Raises:
            InvalidPrivateKey: If ``private_key`` has no private half.
        """
        self.config = config or EncryptedAttributeConfig()
        self._private_key = parse_private_key(private_key) if private_key is not None else None
        self._recipient_source = recipient_source

    def target_keys(self) -> list[rsa.RSAPublicKey]:
        """Get the deduplicated list of recipients for new envelopes."""
        keys: list[KeyLike] = list(self.config.keys.values())
        if self._private_key is not None:
            keys.append(self._private_key.public_key())
        if self._recipient_source is not None and self.config.client_search:
            keys.extend(
                self._recipient_source(list(self.config.client_search), self.config.partial_search)
            )
        return list(RecipientSet(keys))

    def create(self, value: Any) -> dict[str, Any]:
        """Encrypt ``value`` for the target recipients.

        Returns:
            Serialized envelope mapping.
        """
        envelope = create_envelope(self.config.version)
        envelope.encrypt(value, self.target_keys())
        logger.debug(
            "Created Version%s encrypted attribute for %d recipient(s)",
            envelope.version.value,
            len(envelope.recipients),
        )
        return envelope.to_dict()

    def load(self, enc_hs: Mapping[str, Any], private_key: KeyLike | None = None) -> Any:
        """Decrypt a serialized envelope.

        Args:
            enc_hs: Serialized envelope mapping.
            private_key: Key to use instead of the local private key.

        Raises:
            InvalidPrivateKey: If no usable private key is available.
            DecryptionFailure: If the key is not a recipient or decryption fails.
        """
        envelope = parse_envelope(enc_hs)
        value = envelope.decrypt(self._decryption_key(private_key))
        logger.debug("Loaded Version%s encrypted attribute", envelope.version.value)
        return value

    def update(self, enc_hs: MutableMapping[str, Any]) -> bool:
        """Re-encrypt ``enc_hs`` in place if its recipients are outdated.

        A re-encryption always uses fresh secrets and the configured version.

        Returns:
            True if the mapping was replaced, False if already up to date.
        """
        envelope = parse_envelope(enc_hs)
        keys = self.target_keys()
        if not envelope.needs_update(keys):
            logger.debug("Encrypted attribute not updated")
            return False

        value = envelope.decrypt(self._decryption_key(None))
        updated = create_envelope(self.config.version).encrypt(value, keys).to_dict()
        enc_hs.clear()
        enc_hs.update(updated)
        logger.debug("Encrypted attribute updated for %d recipient(s)", len(keys))
        return True

    @staticmethod
    def exists(enc_hs: Any) -> bool:
        """Check if ``enc_hs`` looks like an encrypted attribute."""
        result = envelope_exists(enc_hs)
        logger.debug("Encrypted attribute %sfound", "" if result else "not ")
        return result

    def _decryption_key(self, private_key: KeyLike | None) -> rsa.RSAPrivateKey:
        if private_key is not None:
            return parse_private_key(private_key)
        if self._private_key is None:
            raise InvalidPrivateKey("No private key available to decrypt the attribute.")
        return self._private_key
