"""Shared fixtures for encrypted attribute tests."""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _generate_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _private_pem(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(key):
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture(scope="session")
def rsa_keys():
    """Three independent 2048-bit RSA private keys."""
    return [_generate_key() for _ in range(3)]


@pytest.fixture(scope="session")
def private_key(rsa_keys):
    return rsa_keys[0]


@pytest.fixture(scope="session")
def other_private_key(rsa_keys):
    return rsa_keys[1]


@pytest.fixture(scope="session")
def third_private_key(rsa_keys):
    return rsa_keys[2]


@pytest.fixture(scope="session")
def private_pem(private_key):
    return _private_pem(private_key)


@pytest.fixture(scope="session")
def public_pem(private_key):
    return _public_pem(private_key)


@pytest.fixture(scope="session")
def other_private_pem(other_private_key):
    return _private_pem(other_private_key)


@pytest.fixture(scope="session")
def other_public_pem(other_private_key):
    return _public_pem(other_private_key)


@pytest.fixture(scope="session")
def third_public_pem(third_private_key):
    return _public_pem(third_private_key)
