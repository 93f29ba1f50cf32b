"""Versioned multi-recipient envelope encryption for structured values.

A JSON-representable value is encrypted for a set of RSA recipients and
stored as a tagged mapping that any one recipient can open with its private
key.

Architecture:
    Value (JSON)
        |
        v
    Envelope engine (Version0 / Version1 / Version2)
        |
        +---> symmetric cipher (AES-256-CBC + HMAC, AES-256-GCM)
        |
        +---> per-recipient RSA key wrap (by key fingerprint)
        |
        v
    Tagged mapping {"x_json_class": ..., "chef_type": ..., ...}

Example:
    >>> from encrypted_attributes import create_envelope, parse_envelope
    >>>
    >>> stored = create_envelope(2).encrypt("s3cr3t", [alice_pem, bob_pem]).to_dict()
    >>> parse_envelope(stored).decrypt(bob_private_pem)
    's3cr3t'
"""

from encrypted_attributes.api import (
    CachedRecipientSource,
    EncryptedAttribute,
    RecipientSource,
)
from encrypted_attributes.base import (
    CryptoFailure,
    DecryptionFailure,
    EncryptedAttributeError,
    EncryptionFailure,
    Envelope,
    EnvelopeVersion,
    FormatError,
    InvalidKey,
    InvalidPrivateKey,
    InvalidPublicKey,
    KeyError_,
    MessageAuthenticationFailure,
    RequirementsFailure,
    UnacceptableFormat,
    UnsupportedFormat,
)
from encrypted_attributes.cache import CacheConfig, LRUCache
from encrypted_attributes.config import (
    ConfigError,
    ConfigValidationError,
    EncryptedAttributeConfig,
)
from encrypted_attributes.keys import (
    RecipientSet,
    key_fingerprint,
    load_key,
    load_private_key_file,
    parse_private_key,
    parse_public_key,
    public_key_pem,
)
from encrypted_attributes.providers import (
    BaseEnvelope,
    Version0Envelope,
    Version1Envelope,
    Version2Envelope,
    assert_aead_requirements,
    create_envelope,
    envelope_exists,
    list_supported_versions,
    parse_envelope,
)

__version__ = "0.1.0"

__all__ = [
    # Exceptions
    "EncryptedAttributeError",
    "FormatError",
    "UnsupportedFormat",
    "UnacceptableFormat",
    "KeyError_",
    "InvalidKey",
    "InvalidPublicKey",
    "InvalidPrivateKey",
    "CryptoFailure",
    "EncryptionFailure",
    "DecryptionFailure",
    "MessageAuthenticationFailure",
    "RequirementsFailure",
    "ConfigError",
    "ConfigValidationError",
    # Types
    "EnvelopeVersion",
    "Envelope",
    # Envelopes
    "BaseEnvelope",
    "Version0Envelope",
    "Version1Envelope",
    "Version2Envelope",
    "create_envelope",
    "parse_envelope",
    "envelope_exists",
    "list_supported_versions",
    "assert_aead_requirements",
    # Keys
    "RecipientSet",
    "key_fingerprint",
    "load_key",
    "load_private_key_file",
    "parse_private_key",
    "parse_public_key",
    "public_key_pem",
    # Cache
    "LRUCache",
    "CacheConfig",
    # Config & API
    "EncryptedAttributeConfig",
    "EncryptedAttribute",
    "CachedRecipientSource",
    "RecipientSource",
]
