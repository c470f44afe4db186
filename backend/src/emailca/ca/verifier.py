"""Verification of leaf certificates against the CA trust anchor."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from opentelemetry import trace

from emailca.ca.authority import CertificateAuthority
from emailca.ca.crypto import PEM_CERTIFICATE_BEGIN, PEM_CERTIFICATE_END, format_serial
from emailca.domain.states import VerificationOutcome
from emailca.metrics import ca_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class VerificationReason:
    """Constants for verification failure reasons."""

    # Malformed input
    MISSING_INPUT = "MISSING_INPUT"
    MISSING_PEM_MARKERS = "MISSING_PEM_MARKERS"
    PARSE_FAILED = "PARSE_FAILED"

    # Well-formed but untrusted
    NOT_A_LEAF = "NOT_A_LEAF"
    ISSUER_MISMATCH = "ISSUER_MISMATCH"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    NOT_YET_VALID = "NOT_YET_VALID"
    EXPIRED = "EXPIRED"
    CA_EXPIRED = "CA_EXPIRED"


@dataclass(frozen=True)
class VerificationResult:
    """Tagged verification outcome.

    The HTTP boundary only exposes `is_valid`; the reason and detail are for
    logs and tests.
    """

    outcome: VerificationOutcome
    reason: str | None = None
    detail: str | None = None
    serial_number: str | None = None
    subject_common_name: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.outcome is VerificationOutcome.VALID

    @property
    def is_malformed(self) -> bool:
        return self.outcome is VerificationOutcome.MALFORMED

    @classmethod
    def malformed(cls, reason: str, detail: str) -> "VerificationResult":
        return cls(outcome=VerificationOutcome.MALFORMED, reason=reason, detail=detail)


class ChainVerifier:
    """Checks that a certificate is a currently valid leaf issued by the CA.

    The trust store holds only the CA's current certificate, so certificates
    issued before the CA was re-initialized fail with SIGNATURE_MISMATCH.
    """

    def __init__(self, authority: CertificateAuthority) -> None:
        self._authority = authority

    def verify(self, certificate_pem: object) -> VerificationResult:
        """Verify a PEM certificate. Never raises."""
        with tracer.start_as_current_span("ChainVerifier.verify") as span:
            result = self._verify(certificate_pem)

            span.set_attribute("outcome", result.outcome.value)
            if result.reason:
                span.set_attribute("reason", result.reason)
            ca_metrics.record_verification(result.outcome.value)

            log_extra = {
                "outcome": result.outcome.value,
                "reason": result.reason,
                "detail": result.detail,
                "serial": result.serial_number,
            }
            if result.is_valid:
                logger.debug("certificate_verified", extra=log_extra)
            else:
                logger.info("certificate_verification_failed", extra=log_extra)
            return result

    def _verify(self, certificate_pem: object) -> VerificationResult:
        # 1. Type and emptiness
        if not isinstance(certificate_pem, str) or not certificate_pem.strip():
            return VerificationResult.malformed(
                VerificationReason.MISSING_INPUT, "Certificate must be a non-empty string"
            )

        # 2. PEM envelope
        if PEM_CERTIFICATE_BEGIN not in certificate_pem or PEM_CERTIFICATE_END not in certificate_pem:
            return VerificationResult.malformed(
                VerificationReason.MISSING_PEM_MARKERS, "Certificate is missing PEM markers"
            )

        # 3. Parse
        try:
            cert = x509.load_pem_x509_certificate(certificate_pem.encode("utf-8"))
        except (ValueError, UnicodeEncodeError) as e:
            return VerificationResult.malformed(
                VerificationReason.PARSE_FAILED, f"Certificate parsing failed: {e}"
            )

        # Names are decoded lazily, so read everything the chain checks need here
        try:
            serial_number = cert.serial_number
            common_name = _common_name(cert)
            cert.issuer.rfc4514_string()
        except ValueError as e:
            return VerificationResult.malformed(
                VerificationReason.PARSE_FAILED, f"Certificate fields could not be decoded: {e}"
            )

        if serial_number <= 0:
            return VerificationResult.malformed(
                VerificationReason.PARSE_FAILED,
                f"Certificate serial number must be positive, got {serial_number}",
            )
        serial = format_serial(serial_number)

        # 4. Trust store: the current CA certificate only
        ca_cert = self._authority.key_pair.certificate

        # 5. Chain checks
        try:
            failure = self._check_chain(cert, ca_cert)
        except ValueError as e:
            return VerificationResult.malformed(
                VerificationReason.PARSE_FAILED, f"Certificate fields could not be decoded: {e}"
            )
        if failure is not None:
            reason, detail = failure
            return VerificationResult(
                outcome=VerificationOutcome.INVALID,
                reason=reason,
                detail=detail,
                serial_number=serial,
                subject_common_name=common_name,
            )

        return VerificationResult(
            outcome=VerificationOutcome.VALID,
            serial_number=serial,
            subject_common_name=common_name,
        )

    def _check_chain(
        self, cert: x509.Certificate, ca_cert: x509.Certificate
    ) -> tuple[str, str] | None:
        """Return (reason, detail) for the first failed check, or None."""
        try:
            basic_constraints = cert.extensions.get_extension_for_class(
                x509.BasicConstraints
            ).value
            if basic_constraints.ca:
                return VerificationReason.NOT_A_LEAF, "Certificate is a CA certificate"
        except x509.ExtensionNotFound:
            pass
        except ValueError as e:
            return VerificationReason.NOT_A_LEAF, f"Extensions could not be decoded: {e}"

        if cert.issuer != ca_cert.subject:
            return (
                VerificationReason.ISSUER_MISMATCH,
                f"Issuer {cert.issuer.rfc4514_string()} is not {ca_cert.subject.rfc4514_string()}",
            )

        try:
            cert.verify_directly_issued_by(ca_cert)
        except InvalidSignature:
            return VerificationReason.SIGNATURE_MISMATCH, "Signature does not verify under CA key"
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            return VerificationReason.SIGNATURE_MISMATCH, f"Signature check failed: {e}"

        now = datetime.now(timezone.utc)
        if now < cert.not_valid_before_utc:
            return (
                VerificationReason.NOT_YET_VALID,
                f"Certificate not valid before {cert.not_valid_before_utc.isoformat()}",
            )
        if now > cert.not_valid_after_utc:
            return (
                VerificationReason.EXPIRED,
                f"Certificate expired on {cert.not_valid_after_utc.isoformat()}",
            )

        if not ca_cert.not_valid_before_utc <= now <= ca_cert.not_valid_after_utc:
            return VerificationReason.CA_EXPIRED, "CA certificate is outside its validity window"

        return None


def _common_name(cert: x509.Certificate) -> str | None:
    attrs = cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    if not attrs:
        return None
    value = attrs[0].value
    return value if isinstance(value, str) else value.decode("utf-8", "replace")
