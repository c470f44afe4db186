"""Leaf certificate issuance for secure-messaging users.

Binds a caller-supplied RSA public key to an email address and display name,
signed by the CA.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from email_validator import EmailNotValidError, validate_email
from opentelemetry import trace

from emailca.ca.authority import CA_SERIAL_NUMBER, CertificateAuthority, validity_window
from emailca.ca.crypto import (
    InputFormatError,
    InvalidPublicKey,
    SigningError,
    certificate_to_pem,
    compute_thumbprint,
    format_serial,
    generate_serial_number,
    load_rsa_public_key,
)
from emailca.metrics import ca_metrics
from shared.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# ub-common-name from RFC 5280
MAX_COMMON_NAME_LENGTH = 64


@dataclass(frozen=True)
class IssuedCertificate:
    """Result of leaf certificate issuance."""

    certificate_pem: str
    serial_number: str
    not_before: datetime
    expires_at: datetime
    thumbprint: str


class CertificateIssuer:
    """Builds and signs leaf certificates under the CA.

    Certificate attributes:
    - Subject: CN=<display name>, emailAddress=<email>, O=<leaf organization>
    - Issuer: the CA subject
    - Validity: now() to now() + LEAF_VALIDITY_YEARS calendar years
    - Basic Constraints: CA=false (critical)
    - Key Usage: digitalSignature, nonRepudiation, keyEncipherment,
      dataEncipherment (critical)
    - Extended Key Usage: clientAuth, emailProtection
    - Subject Alt Name: rfc822Name=<email>
    """

    def __init__(self, authority: CertificateAuthority, config: Settings | None = None) -> None:
        self._authority = authority
        self._config = config or default_settings

    def issue(
        self,
        public_key_pem: str,
        email: str,
        display_name: str,
        serial_number: int | None = None,
    ) -> IssuedCertificate:
        """Issue a leaf certificate for a subject public key.

        Args:
            public_key_pem: Subject's RSA public key in PEM form.
            email: Subject email address, placed in the subject DN and SAN.
            display_name: Subject display name, used as the common name.
            serial_number: Serial to use; a random 128-bit serial when omitted.

        Returns:
            IssuedCertificate with the PEM, hex serial and expiry.

        Raises:
            InvalidPublicKey: If the PEM is not an RSA public key.
            InputFormatError: If the email or display name cannot be encoded.
            SigningError: If signing with the CA key fails.
        """
        with tracer.start_as_current_span("CertificateIssuer.issue") as span:
            start_time = time.perf_counter()

            try:
                public_key = load_rsa_public_key(public_key_pem)
                self._check_subject(email, display_name)
            except InvalidPublicKey as e:
                ca_metrics.record_issuance_failure("invalid_public_key")
                logger.info("certificate_issue_rejected", extra={"reason": str(e)})
                raise
            except InputFormatError as e:
                ca_metrics.record_issuance_failure("input_format")
                logger.info("certificate_issue_rejected", extra={"reason": str(e)})
                raise

            ca = self._authority.key_pair

            if serial_number is None:
                serial_number = self._new_serial()
            elif serial_number == CA_SERIAL_NUMBER or serial_number <= 0:
                raise InputFormatError(f"Serial number {serial_number} is reserved or invalid")

            serial_str = format_serial(serial_number)
            span.set_attribute("serial", serial_str)

            not_before, not_after = validity_window(self._config.LEAF_VALIDITY_YEARS)

            subject = x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, display_name),
                    x509.NameAttribute(NameOID.EMAIL_ADDRESS, email),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, self._config.LEAF_ORGANIZATION),
                ]
            )

            try:
                certificate = (
                    x509.CertificateBuilder()
                    .subject_name(subject)
                    .issuer_name(ca.certificate.subject)
                    .public_key(public_key)
                    .serial_number(serial_number)
                    .not_valid_before(not_before)
                    .not_valid_after(not_after)
                    .add_extension(
                        x509.BasicConstraints(ca=False, path_length=None),
                        critical=True,
                    )
                    .add_extension(
                        x509.KeyUsage(
                            digital_signature=True,
                            content_commitment=True,  # nonRepudiation
                            key_encipherment=True,
                            data_encipherment=True,
                            key_agreement=False,
                            key_cert_sign=False,
                            crl_sign=False,
                            encipher_only=False,
                            decipher_only=False,
                        ),
                        critical=True,
                    )
                    .add_extension(
                        x509.ExtendedKeyUsage(
                            [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.EMAIL_PROTECTION]
                        ),
                        critical=False,
                    )
                    .add_extension(
                        x509.SubjectAlternativeName([x509.RFC822Name(email)]),
                        critical=False,
                    )
                    .add_extension(
                        x509.SubjectKeyIdentifier.from_public_key(public_key),
                        critical=False,
                    )
                    .add_extension(
                        x509.AuthorityKeyIdentifier.from_issuer_public_key(
                            ca.private_key.public_key()
                        ),
                        critical=False,
                    )
                    .sign(ca.private_key, hashes.SHA256())
                )
            except Exception as e:
                ca_metrics.record_issuance_failure("signing")
                logger.error(
                    "certificate_signing_failed",
                    extra={"serial": serial_str, "error": str(e)},
                )
                raise SigningError(f"Failed to sign certificate: {e}") from e

            duration = time.perf_counter() - start_time
            ca_metrics.record_certificate_issued(duration)

            logger.info(
                "certificate_issued",
                extra={
                    "serial": serial_str,
                    "email": email,
                    "not_after": not_after.isoformat(),
                    "duration_seconds": duration,
                },
            )

            return IssuedCertificate(
                certificate_pem=certificate_to_pem(certificate),
                serial_number=serial_str,
                not_before=not_before,
                expires_at=not_after,
                thumbprint=compute_thumbprint(certificate),
            )

    def _new_serial(self) -> int:
        """Random serial that never equals the CA's own serial."""
        serial = generate_serial_number()
        while serial == CA_SERIAL_NUMBER:
            serial = generate_serial_number()
        return serial

    def _check_subject(self, email: str, display_name: str) -> None:
        """Reject values that cannot be placed in an X.509 subject."""
        if not isinstance(display_name, str) or not display_name.strip():
            raise InputFormatError("Display name must be a non-empty string")
        if len(display_name.encode("utf-8")) > MAX_COMMON_NAME_LENGTH:
            raise InputFormatError(
                f"Display name exceeds {MAX_COMMON_NAME_LENGTH} bytes allowed in a common name"
            )

        if not isinstance(email, str) or not email.strip():
            raise InputFormatError("Email must be a non-empty string")
        # emailAddress and rfc822Name are IA5String
        if not email.isascii():
            raise InputFormatError("Email must be ASCII")

        if self._config.VALIDATE_EMAIL_SYNTAX:
            try:
                validate_email(email, check_deliverability=False, allow_smtputf8=False)
            except EmailNotValidError as e:
                raise InputFormatError(f"Invalid email address: {e}") from e
