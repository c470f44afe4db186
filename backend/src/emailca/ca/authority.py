"""CA identity management: loading, generating and persisting the CA key pair.

Storage priority:
1. File (CA_KEY_PATH, CA_CERT_PATH); the key may be Fernet-encrypted with
   CA_KEY_ENCRYPTION_KEY
2. Environment (CA_KEY_PEM, CA_CERT_PEM as base64)
3. Generate new (written to the file paths when they are configured)

An unpersisted CA lives only as long as the process. Every certificate it
issued stops verifying after a restart, so production deployments must set
the file paths or environment variables.
"""

import base64
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from opentelemetry import trace

from emailca.ca.crypto import (
    CryptoError,
    SigningError,
    certificate_to_pem,
    compute_thumbprint,
    decrypt_private_key,
    encrypt_private_key,
    format_serial,
    generate_rsa_private_key,
    load_certificate,
    load_private_key,
    private_key_to_pem,
)
from emailca.metrics import ca_metrics
from shared.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# The CA certificate always carries this serial; leaf serials must never reuse it.
CA_SERIAL_NUMBER = 1


class CertificateAuthorityError(Exception):
    """Raised when CA key management fails or the CA lifecycle is misused."""

    pass


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds (X.509 time resolution)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def add_years(moment: datetime, years: int) -> datetime:
    """Add calendar years, mapping 29 February onto 28 February when needed."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


@dataclass(frozen=True)
class CAKeyPair:
    """Holds CA private key and certificate."""

    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    storage_type: str  # "file", "env", or "generated"

    @property
    def certificate_pem(self) -> str:
        """Get CA certificate as PEM string."""
        return certificate_to_pem(self.certificate)


class CertificateAuthority:
    """Owns the CA key pair and self-signed CA certificate.

    Constructed explicitly and passed to the issuer and verifier. Key material is
    created lazily on first use; the check-and-set is serialised by a lock so
    concurrent first callers always observe the same identity.
    """

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings
        self._key_pair: CAKeyPair | None = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._key_pair is not None

    @property
    def key_pair(self) -> CAKeyPair:
        """Get the CA key pair, loading or generating it on first access."""
        return self.load_or_generate()

    @property
    def subject(self) -> x509.Name:
        return self.key_pair.certificate.subject

    def load_or_generate(self) -> CAKeyPair:
        """Load CA from configured source or generate a new one. Idempotent.

        Raises:
            CertificateAuthorityError: If persisted material cannot be read.
            KeyGenerationError: If a new key pair cannot be generated.
        """
        key_pair = self._key_pair
        if key_pair is not None:
            return key_pair

        with self._lock:
            if self._key_pair is not None:
                return self._key_pair

            with tracer.start_as_current_span("CertificateAuthority.load_or_generate") as span:
                key_pair = self._try_load_from_file() or self._try_load_from_env()
                if key_pair is None:
                    key_pair = self._generate_new()
                    self._try_save_to_file(key_pair)

                span.set_attribute("storage_type", key_pair.storage_type)
                span.set_attribute(
                    "ca_cert_expires", key_pair.certificate.not_valid_after_utc.isoformat()
                )
                self._key_pair = key_pair
                self._log_loaded(key_pair)
                return key_pair

    def initialize(self, force: bool = False) -> CAKeyPair:
        """Generate a fresh CA identity.

        Args:
            force: Replace an existing identity. Every certificate issued under the
                old identity becomes unverifiable.

        Raises:
            CertificateAuthorityError: If an identity already exists (in memory or
                on disk) and force is False.
            KeyGenerationError: If key generation fails.
        """
        with self._lock:
            if not force and (self._key_pair is not None or self._persisted_files_exist()):
                raise CertificateAuthorityError(
                    "CA already initialized; pass force=True to replace the CA identity"
                )

            with tracer.start_as_current_span("CertificateAuthority.initialize") as span:
                span.set_attribute("force", force)
                if self._key_pair is not None:
                    logger.warning(
                        "ca_reinitialized",
                        extra={
                            "previous_fingerprint": compute_thumbprint(
                                self._key_pair.certificate
                            )
                        },
                    )

                key_pair = self._generate_new()
                self._try_save_to_file(key_pair)
                self._key_pair = key_pair
                self._log_loaded(key_pair)
                return key_pair

    def get_ca_certificate_pem(self) -> str:
        """Return the CA certificate as PEM, initializing the CA if needed."""
        return self.key_pair.certificate_pem

    def ca_info(self) -> dict[str, str]:
        """Summary of the CA identity for operators."""
        key_pair = self.key_pair
        cert = key_pair.certificate
        return {
            "subject": cert.subject.rfc4514_string(),
            "serial_number": format_serial(cert.serial_number),
            "not_valid_before": cert.not_valid_before_utc.isoformat(),
            "not_valid_after": cert.not_valid_after_utc.isoformat(),
            "fingerprint_sha256": compute_thumbprint(cert),
            "storage_type": key_pair.storage_type,
        }

    # =========================================================================
    # Loading
    # =========================================================================

    def _persisted_files_exist(self) -> bool:
        key_path, cert_path = self._config.CA_KEY_PATH, self._config.CA_CERT_PATH
        return bool(key_path and cert_path and Path(key_path).exists() and Path(cert_path).exists())

    def _try_load_from_file(self) -> CAKeyPair | None:
        """Try loading CA key from file paths."""
        if not self._persisted_files_exist():
            logger.debug(
                "ca_files_not_found",
                extra={
                    "key_path": self._config.CA_KEY_PATH,
                    "cert_path": self._config.CA_CERT_PATH,
                },
            )
            return None

        try:
            key_bytes = Path(self._config.CA_KEY_PATH).read_bytes()
            cert_bytes = Path(self._config.CA_CERT_PATH).read_bytes()

            encryption_key = self._encryption_key()
            if encryption_key is not None:
                key_bytes = decrypt_private_key(key_bytes, encryption_key)

            return self._build_key_pair(key_bytes, cert_bytes, storage_type="file")
        except (OSError, CryptoError) as e:
            logger.error("ca_key_load_failed", extra={"storage_type": "file", "error": str(e)})
            raise CertificateAuthorityError(f"Failed to load CA from file: {e}") from e

    def _try_load_from_env(self) -> CAKeyPair | None:
        """Try loading CA key from base64-encoded configuration values."""
        key_b64, cert_b64 = self._config.CA_KEY_PEM, self._config.CA_CERT_PEM
        if not key_b64 or not cert_b64:
            return None

        try:
            key_bytes = base64.b64decode(key_b64, validate=True)
            cert_bytes = base64.b64decode(cert_b64, validate=True)
            return self._build_key_pair(key_bytes, cert_bytes, storage_type="env")
        except (ValueError, CryptoError) as e:
            logger.error("ca_key_load_failed", extra={"storage_type": "env", "error": str(e)})
            raise CertificateAuthorityError(f"Failed to load CA from environment: {e}") from e

    def _build_key_pair(self, key_pem: bytes, cert_pem: bytes, storage_type: str) -> CAKeyPair:
        private_key = load_private_key(key_pem)
        certificate = load_certificate(cert_pem)

        if private_key.public_key().public_numbers() != certificate.public_key().public_numbers():
            raise CertificateAuthorityError("CA certificate does not match CA private key")

        try:
            basic_constraints = certificate.extensions.get_extension_for_class(
                x509.BasicConstraints
            ).value
        except x509.ExtensionNotFound:
            raise CertificateAuthorityError("CA certificate has no basicConstraints extension")
        if not basic_constraints.ca:
            raise CertificateAuthorityError("Configured CA certificate is not a CA certificate")

        return CAKeyPair(private_key=private_key, certificate=certificate, storage_type=storage_type)

    def _encryption_key(self) -> bytes | None:
        key = self._config.CA_KEY_ENCRYPTION_KEY
        return key.encode("utf-8") if key else None

    # =========================================================================
    # Generation
    # =========================================================================

    def _generate_new(self) -> CAKeyPair:
        """Generate a new CA key pair and self-signed certificate."""
        config = self._config
        logger.info("ca_generating", extra={"key_size": config.CA_KEY_SIZE})

        private_key = generate_rsa_private_key(config.CA_KEY_SIZE)

        now = utc_now()
        subject = issuer = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, config.CA_COMMON_NAME),
                x509.NameAttribute(NameOID.COUNTRY_NAME, config.CA_COUNTRY),
                x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, config.CA_STATE),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, config.CA_ORGANIZATION),
            ]
        )

        try:
            certificate = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(issuer)
                .public_key(private_key.public_key())
                .serial_number(CA_SERIAL_NUMBER)
                .not_valid_before(now)
                .not_valid_after(add_years(now, config.CA_VALIDITY_YEARS))
                .add_extension(
                    x509.BasicConstraints(ca=True, path_length=None),
                    critical=True,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=True,  # nonRepudiation
                        key_encipherment=True,
                        data_encipherment=True,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                    critical=False,
                )
                .sign(private_key, hashes.SHA256())
            )
        except Exception as e:
            logger.error("ca_self_sign_failed", extra={"error": str(e)})
            raise SigningError(f"Failed to self-sign CA certificate: {e}") from e

        ca_metrics.record_ca_initialized()
        return CAKeyPair(private_key=private_key, certificate=certificate, storage_type="generated")

    def _try_save_to_file(self, key_pair: CAKeyPair) -> None:
        """Persist a generated key pair when file paths are configured."""
        key_path, cert_path = self._config.CA_KEY_PATH, self._config.CA_CERT_PATH
        if not key_path or not cert_path:
            logger.warning(
                "CA key generated but not saved - set CA_KEY_PATH and CA_CERT_PATH to persist"
            )
            return

        key_bytes = private_key_to_pem(key_pair.private_key).encode("utf-8")
        encryption_key = self._encryption_key()
        if encryption_key is not None:
            key_bytes = encrypt_private_key(key_bytes.decode("utf-8"), encryption_key)

        try:
            key_file = Path(key_path)
            key_file.parent.mkdir(parents=True, exist_ok=True)
            # Owner-only before any key bytes land, including on an existing file
            fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                os.fchmod(f.fileno(), 0o600)
                f.write(key_bytes)

            cert_file = Path(cert_path)
            cert_file.parent.mkdir(parents=True, exist_ok=True)
            cert_file.write_bytes(key_pair.certificate_pem.encode("utf-8"))
        except OSError as e:
            logger.error("ca_key_save_failed", extra={"error": str(e)})
            raise CertificateAuthorityError(f"Failed to persist CA key pair: {e}") from e

        logger.info(
            "ca_key_saved",
            extra={
                "key_path": key_path,
                "cert_path": cert_path,
                "encrypted": encryption_key is not None,
            },
        )

    def _log_loaded(self, key_pair: CAKeyPair) -> None:
        """Log successful key loading and record metrics."""
        logger.info(
            "ca_key_loaded",
            extra={
                "storage_type": key_pair.storage_type,
                "key_size": key_pair.private_key.key_size,
                "fingerprint": compute_thumbprint(key_pair.certificate),
                "ca_cert_expires": key_pair.certificate.not_valid_after_utc.isoformat(),
            },
        )
        ca_metrics.record_ca_loaded(key_pair.storage_type)


def validity_window(years: int) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) starting now and spanning the given calendar years."""
    not_before = utc_now()
    return not_before, add_years(not_before, years)
