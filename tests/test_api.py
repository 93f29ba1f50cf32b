"""Tests for the high-level EncryptedAttribute API."""

import pytest

from encrypted_attributes.api import CachedRecipientSource, EncryptedAttribute
from encrypted_attributes.base import DecryptionFailure, InvalidPrivateKey
from encrypted_attributes.cache import LRUCache
from encrypted_attributes.config import EncryptedAttributeConfig
from encrypted_attributes.keys import key_fingerprint
from encrypted_attributes.providers import parse_envelope


class FakeRecipientSource:
    """Recipient source returning a mutable key list and counting calls."""

    def __init__(self, keys=None):
        self.keys = list(keys or [])
        self.calls = []

    def __call__(self, queries, partial_search):
        self.calls.append((list(queries), partial_search))
        return list(self.keys)


class TestCachedRecipientSource:
    """Tests for CachedRecipientSource."""

    def test_memoizes_by_query(self, public_pem):
        source = FakeRecipientSource([public_pem])
        cached = CachedRecipientSource(source, LRUCache(max_size=4))

        assert cached(["admin:true"], True) == [public_pem]
        assert cached(["admin:true"], True) == [public_pem]
        assert len(source.calls) == 1
        assert "admin:true" in cached.cache

    def test_distinct_queries(self, public_pem):
        source = FakeRecipientSource([public_pem])
        cached = CachedRecipientSource(source)
        cached(["admin:true"], True)
        cached(["admin:true", "role:web"], True)
        assert len(source.calls) == 2
        assert "admin:true OR role:web" in cached.cache

    def test_disabled_cache(self, public_pem):
        source = FakeRecipientSource([public_pem])
        cached = CachedRecipientSource(source, LRUCache(max_size=0))
        cached(["q"], False)
        cached(["q"], False)
        assert len(source.calls) == 2


class TestEncryptedAttribute:
    """Tests for create/load/update/exists."""

    def test_defaults(self):
        attr = EncryptedAttribute()
        assert attr.config == EncryptedAttributeConfig()
        assert attr.target_keys() == []

    def test_create_and_load(self, private_pem):
        attr = EncryptedAttribute(private_key=private_pem)
        stored = attr.create({"password": "s3cr3t"})
        assert stored["x_json_class"].endswith("Version0")
        assert attr.load(stored) == {"password": "s3cr3t"}

    @pytest.mark.parametrize("version", [0, 1, 2])
    def test_configured_version(self, version, private_key):
        config = EncryptedAttributeConfig(version=version)
        attr = EncryptedAttribute(config, private_key=private_key)
        stored = attr.create("x")
        assert parse_envelope(stored).version.value == str(version)
        assert attr.load(stored) == "x"

    def test_target_keys(self, private_key, other_public_pem, third_public_pem, public_pem):
        config = EncryptedAttributeConfig(
            version=1, keys={"other": other_public_pem}, client_search=["role:web"]
        )
        source = FakeRecipientSource([third_public_pem, public_pem])
        attr = EncryptedAttribute(config, private_key=private_key, recipient_source=source)

        fingerprints = [key_fingerprint(key) for key in attr.target_keys()]
        assert fingerprints == [
            key_fingerprint(other_public_pem),
            key_fingerprint(private_key),
            key_fingerprint(third_public_pem),
        ]
        assert source.calls == [(["role:web"], True)]

    def test_empty_client_search_skips_source(self, private_key, public_pem):
        source = FakeRecipientSource([public_pem])
        config = EncryptedAttributeConfig(client_search=[])
        EncryptedAttribute(config, private_key=private_key, recipient_source=source).target_keys()
        assert source.calls == []

    def test_load_with_explicit_key(self, other_public_pem, other_private_pem):
        config = EncryptedAttributeConfig(version=2, keys={"other": other_public_pem})
        stored = EncryptedAttribute(config).create("x")
        assert EncryptedAttribute().load(stored, private_key=other_private_pem) == "x"

    def test_load_without_key(self, public_pem):
        stored = EncryptedAttribute(EncryptedAttributeConfig(keys={"a": public_pem})).create("x")
        with pytest.raises(InvalidPrivateKey):
            EncryptedAttribute().load(stored)

    def test_load_non_recipient(self, public_pem, other_private_pem):
        stored = EncryptedAttribute(EncryptedAttributeConfig(keys={"a": public_pem})).create("x")
        with pytest.raises(DecryptionFailure):
            EncryptedAttribute(private_key=other_private_pem).load(stored)

    def test_public_key_rejected(self, public_pem):
        with pytest.raises(InvalidPrivateKey):
            EncryptedAttribute(private_key=public_pem)

    def test_exists(self, private_key):
        stored = EncryptedAttribute(private_key=private_key).create("x")
        assert EncryptedAttribute.exists(stored)
        assert not EncryptedAttribute.exists({"password": "plain"})


class TestUpdate:
    """Tests for recipient drift handling in update."""

    def test_no_change(self, private_key, other_public_pem):
        source = FakeRecipientSource([other_public_pem])
        attr = EncryptedAttribute(
            EncryptedAttributeConfig(version=1), private_key=private_key, recipient_source=source
        )
        stored = attr.create("x")
        before = dict(stored)

        assert attr.update(stored) is False
        assert stored == before

    def test_new_recipient(self, private_key, other_public_pem, other_private_pem):
        source = FakeRecipientSource()
        attr = EncryptedAttribute(
            EncryptedAttributeConfig(version=1), private_key=private_key, recipient_source=source
        )
        stored = attr.create({"a": 1})
        old_hmac = stored["hmac"]["data"]

        source.keys.append(other_public_pem)
        assert attr.update(stored) is True
        assert stored["hmac"]["data"] != old_hmac
        assert attr.load(stored, private_key=other_private_pem) == {"a": 1}
        assert attr.update(stored) is False

    def test_removed_recipient(self, private_key, other_public_pem, other_private_pem):
        source = FakeRecipientSource([other_public_pem])
        attr = EncryptedAttribute(
            EncryptedAttributeConfig(version=2), private_key=private_key, recipient_source=source
        )
        stored = attr.create("x")

        source.keys.clear()
        assert attr.update(stored) is True
        assert len(parse_envelope(stored).recipients) == 1
        with pytest.raises(DecryptionFailure):
            attr.load(stored, private_key=other_private_pem)

    def test_migrates_version(self, private_key, other_public_pem):
        source = FakeRecipientSource()
        old = EncryptedAttribute(
            EncryptedAttributeConfig(version=0), private_key=private_key, recipient_source=source
        )
        stored = old.create("x")

        source.keys.append(other_public_pem)
        new = EncryptedAttribute(
            EncryptedAttributeConfig(version=2), private_key=private_key, recipient_source=source
        )
        assert new.update(stored) is True
        assert stored["x_json_class"].endswith("Version2")
        assert new.load(stored) == "x"

    def test_update_requires_private_key(self, public_pem, other_public_pem):
        stored = EncryptedAttribute(EncryptedAttributeConfig(keys={"a": public_pem})).create("x")
        attr = EncryptedAttribute(EncryptedAttributeConfig(keys={"b": other_public_pem}))
        with pytest.raises(InvalidPrivateKey):
            attr.update(stored)
