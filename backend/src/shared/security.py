"""Operator API key generation and Argon2id hashing.

Issuance and revocation are privileged calls made by the registration and
administration collaborators. They authenticate with a single operator key whose
Argon2id hash is configured via OPERATOR_API_KEY_HASH (or bootstrapped at start-up).
"""

import base64
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

API_KEY_PREFIX = "eca_"

_ph = PasswordHasher()


def generate_api_key() -> str:
    """Generate an operator API key: eca_<32 random bytes as base64url>."""
    random_bytes = secrets.token_bytes(32)
    encoded = base64.urlsafe_b64encode(random_bytes).decode("ascii").rstrip("=")
    return f"{API_KEY_PREFIX}{encoded}"


def hash_api_key(api_key: str) -> str:
    """Hash API key using Argon2id."""
    return _ph.hash(api_key)


def verify_api_key(api_key: str, api_key_hash: str) -> bool:
    """Verify an API key against a stored Argon2id hash.

    A malformed stored hash counts as a mismatch rather than an error so that a
    misconfigured deployment fails closed.
    """
    try:
        return _ph.verify(api_key_hash, api_key)
    except (VerificationError, InvalidHashError):
        return False
