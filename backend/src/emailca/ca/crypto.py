"""Key material utilities for the CA.

Provides RSA key generation, PEM encoding/decoding, serial-number handling,
thumbprint computation and at-rest encryption of the CA private key.

All CA error types derive from CryptoError so callers can catch the family.
"""

import base64
import hashlib
import logging
import re
import secrets

from cryptography import x509
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537
MIN_RSA_KEY_SIZE = 2048
SERIAL_BITS = 128
SERIAL_HEX_DIGITS = SERIAL_BITS // 4

PEM_CERTIFICATE_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_CERTIFICATE_END = "-----END CERTIFICATE-----"

# Longest serial RFC 5280 permits is 20 octets
_SERIAL_PATTERN = re.compile(r"^[0-9a-f]{1,40}$")


class CryptoError(Exception):
    """Raised when a cryptographic operation fails."""

    pass


class InputFormatError(CryptoError):
    """Input has the wrong type or shape (missing PEM markers, bad serial, ...)."""

    pass


class ParseError(CryptoError):
    """Input looked right but its structure could not be decoded."""

    pass


class InvalidPublicKey(ParseError):
    """The supplied PEM does not contain an RSA public key."""

    pass


class KeyGenerationError(CryptoError):
    """Key pair generation failed. Not retried."""

    pass


class SigningError(CryptoError):
    """Signing with the CA key failed. Not retried: a broken CA key is not transient."""

    pass


def generate_rsa_private_key(key_size: int = MIN_RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Raises:
        KeyGenerationError: If key_size is below 2048 bits or generation fails.
    """
    if key_size < MIN_RSA_KEY_SIZE:
        raise KeyGenerationError(
            f"RSA key size must be at least {MIN_RSA_KEY_SIZE} bits, got {key_size}"
        )
    try:
        return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    except Exception as e:
        logger.error("key_generation_failed", extra={"key_size": key_size, "error": str(e)})
        raise KeyGenerationError(f"Failed to generate RSA key pair: {e}") from e


def load_rsa_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    """Parse a PEM-encoded RSA public key.

    Accepts SubjectPublicKeyInfo ("BEGIN PUBLIC KEY") and PKCS#1
    ("BEGIN RSA PUBLIC KEY") encodings.

    Raises:
        InvalidPublicKey: If the PEM is not a parseable RSA public key.
    """
    if not isinstance(public_key_pem, str) or not public_key_pem.strip():
        raise InvalidPublicKey("Public key must be a non-empty PEM string")

    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    except (ValueError, TypeError) as e:
        raise InvalidPublicKey(f"Public key PEM could not be parsed: {e}") from e
    except Exception as e:
        raise InvalidPublicKey(f"Unsupported public key: {e}") from e

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise InvalidPublicKey(f"Expected an RSA public key, got {type(public_key).__name__}")

    return public_key


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    """Encode a public key as SubjectPublicKeyInfo PEM."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Encode a private key as unencrypted PKCS#8 PEM."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def load_private_key(key_pem: bytes) -> rsa.RSAPrivateKey:
    """Load an unencrypted PEM RSA private key.

    Raises:
        ParseError: If the PEM cannot be parsed or is not an RSA key.
    """
    try:
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise ParseError(f"Private key PEM could not be parsed: {e}") from e

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ParseError(f"Expected an RSA private key, got {type(private_key).__name__}")
    return private_key


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def load_certificate(cert_pem: bytes) -> x509.Certificate:
    """Load a PEM certificate.

    Raises:
        ParseError: If the PEM cannot be parsed.
    """
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise ParseError(f"Certificate PEM could not be parsed: {e}") from e


# =============================================================================
# Serial numbers
# =============================================================================


def generate_serial_number() -> int:
    """Generate a positive serial with 128 bits of entropy."""
    while True:
        serial = secrets.randbits(SERIAL_BITS)
        if serial > 0:
            return serial


def format_serial(serial_number: int) -> str:
    """Render a serial as lowercase hex without separators, zero-padded to 32 digits."""
    return format(serial_number, f"0{SERIAL_HEX_DIGITS}x")


def normalize_serial(serial: str) -> str:
    """Canonicalise a serial supplied by a caller.

    Surrounding whitespace and ':' separators are dropped and case is folded,
    so "0A:1B" and "0a1b" name the same certificate.

    Raises:
        InputFormatError: If the value is not a hex serial of at most 20 octets.
    """
    if not isinstance(serial, str):
        raise InputFormatError("Serial number must be a string")

    cleaned = serial.strip().replace(":", "").lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    if not _SERIAL_PATTERN.match(cleaned):
        raise InputFormatError(f"Serial number is not a hex string: {serial!r}")

    return format_serial(int(cleaned, 16))


# =============================================================================
# Thumbprints and at-rest encryption
# =============================================================================


def compute_thumbprint(certificate: x509.Certificate) -> str:
    """Compute the lowercase hex SHA-256 thumbprint of a certificate's DER encoding."""
    der_bytes = certificate.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der_bytes).hexdigest()


def encrypt_private_key(pem: str, key: bytes) -> bytes:
    """Encrypt a private key PEM with Fernet for storage at rest.

    Returns:
        Base64-encoded token bytes, safe to write to a file.

    Raises:
        CryptoError: If encryption fails.
    """
    try:
        token = Fernet(key).encrypt(pem.encode("utf-8"))
        return base64.urlsafe_b64encode(token)
    except Exception as e:
        raise CryptoError(f"Failed to encrypt private key: {e}") from e


def decrypt_private_key(encrypted: bytes, key: bytes) -> bytes:
    """Decrypt a private key previously produced by encrypt_private_key.

    Raises:
        CryptoError: If the key is wrong or the data is corrupt.
    """
    try:
        token = base64.urlsafe_b64decode(encrypted)
        return Fernet(key).decrypt(token)
    except (InvalidToken, ValueError) as e:
        raise CryptoError(f"Failed to decrypt private key: {e}") from e


def generate_fernet_key() -> str:
    """Generate a key suitable for CA_KEY_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("utf-8")
