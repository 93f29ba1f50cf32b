"""Configuration for encrypted attributes.

Settings can be built from a mapping, from environment variables or from a
YAML/JSON file, and merged on top of each other:

    >>> from encrypted_attributes.config import EncryptedAttributeConfig
    >>>
    >>> config = EncryptedAttributeConfig.from_file("encrypted_attributes.yaml")
    >>> config = config.merge(EncryptedAttributeConfig.from_env().to_dict())
    >>> config.version
    1

Environment variables use the ``ENCRYPTED_ATTRIBUTE_`` prefix:

    ENCRYPTED_ATTRIBUTE_VERSION=2
    ENCRYPTED_ATTRIBUTE_PARTIAL_SEARCH=false
    ENCRYPTED_ATTRIBUTE_CLIENT_SEARCH='["admin:true", "role:web"]'
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from encrypted_attributes.base import EncryptedAttributeError, EnvelopeVersion

logger = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "ENCRYPTED_ATTRIBUTE"
DEFAULT_CLIENT_SEARCH = ("admin:true",)


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(EncryptedAttributeError):
    """Base configuration error."""

    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {', '.join(errors)}")


# =============================================================================
# Value Parsing
# =============================================================================


def _parse_env_value(value: str) -> Any:
    """Parse an environment string to the appropriate type."""
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    if value.lower() in ("null", "none", ""):
        return None

    try:
        return int(value)
    except ValueError:
        pass

    # JSON array/object
    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

    return value


def _normalize_version(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    return value


def _normalize_client_search(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    if isinstance(value, tuple):
        return list(value)
    return value


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class EncryptedAttributeConfig:
    """Encrypted attribute settings.

    Attributes:
        version: Envelope format version used when creating attributes.
        keys: Extra recipient public keys (name -> PEM), always included.
        client_search: Discovery queries handed to the recipient source.
        partial_search: Passed through to the recipient source.
    """

    version: int | str = 0
    keys: dict[str, str] = field(default_factory=dict)
    client_search: list[str] = field(default_factory=lambda: list(DEFAULT_CLIENT_SEARCH))
    partial_search: bool = True

    def __post_init__(self) -> None:
        self.version = _normalize_version(self.version)
        self.client_search = _normalize_client_search(self.client_search)

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigValidationError: If any value is invalid.
        """
        errors = []

        if isinstance(self.version, bool) or not isinstance(self.version, (int, str)):
            errors.append(f"version must be an integer or string, got {self.version!r}")
        else:
            try:
                EnvelopeVersion.from_value(self.version)
            except EncryptedAttributeError as e:
                errors.append(f"version is not usable: {e}")

        if not isinstance(self.keys, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.keys.items()
        ):
            errors.append("keys should be a valid mapping of names to PEM keys")

        if not isinstance(self.client_search, list) or not all(
            isinstance(query, str) for query in self.client_search
        ):
            errors.append("client_search should be a valid list of search patterns")

        if not isinstance(self.partial_search, bool):
            errors.append(f"partial_search must be a boolean, got {self.partial_search!r}")

        if errors:
            raise ConfigValidationError(errors)

    def key_add(self, name: str, key: str) -> None:
        """Add an extra recipient key; non-string arguments are ignored."""
        if isinstance(name, str) and isinstance(key, str):
            self.keys[name] = key

    def merge(self, overrides: Mapping[str, Any] | None) -> "EncryptedAttributeConfig":
        """Return a new config with ``overrides`` applied on top.

        ``None`` values in ``overrides`` are skipped.
        """
        data = self.to_dict()
        for key, value in _known_items(overrides or {}):
            if value is not None:
                data[key] = value
        return EncryptedAttributeConfig.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary."""
        return {
            "version": self.version,
            "keys": dict(self.keys),
            "client_search": list(self.client_search),
            "partial_search": self.partial_search,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EncryptedAttributeConfig":
        """Create from a mapping, logging and ignoring unknown keys.

        Raises:
            ConfigValidationError: If any value is invalid.
        """
        config = cls(**{k: v for k, v in _known_items(data) if v is not None})
        config.validate()
        return config

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> "EncryptedAttributeConfig":
        """Create from ``<PREFIX>_<FIELD>`` environment variables."""
        env_prefix = f"{prefix}_"
        data = {
            key[len(env_prefix) :].lower(): _parse_env_value(value)
            for key, value in os.environ.items()
            if key.startswith(env_prefix)
        }
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> "EncryptedAttributeConfig":
        """Create from a YAML or JSON file.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        suffix = path.suffix.lower()
        try:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(f"Unsupported file format: {suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        if not isinstance(data, Mapping):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)


_FIELD_NAMES = frozenset(f.name for f in fields(EncryptedAttributeConfig))


def _known_items(data: Mapping[str, Any]) -> list[tuple[str, Any]]:
    items = []
    for key, value in data.items():
        if key in _FIELD_NAMES:
            items.append((key, value))
        else:
            logger.warning("EncryptedAttributeConfig: configuration key not found: %s", key)
    return items
