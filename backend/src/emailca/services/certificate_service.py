"""Certificate service: the single entry point for CA operations."""

import asyncio
import logging
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from emailca.ca.authority import CertificateAuthority
from emailca.ca.issuer import CertificateIssuer, IssuedCertificate
from emailca.ca.verifier import ChainVerifier, VerificationResult
from emailca.domain.models import IssuedCertificateRecord, RevocationEntry
from emailca.domain.states import RevocationReason
from emailca.metrics import ca_metrics
from emailca.repository.repositories import IssuedCertificateRepository
from emailca.services.revocation_ledger import RevocationConflictError, RevocationLedger
from shared.config import Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_SERIAL_ATTEMPTS = 5


class SerialCollision(Exception):
    """Raised when a generated serial is already registered. Retryable."""

    def __init__(self, serial_number: str):
        self.serial_number = serial_number
        super().__init__(f"Serial {serial_number} is already issued")


class CheckMessage:
    """Message codes for a combined certificate check."""

    MALFORMED = "CERTIFICATE_MALFORMED"
    INVALID = "CERTIFICATE_INVALID"
    REVOKED = "CERTIFICATE_REVOKED"
    VALID = "CERTIFICATE_VALID"


@dataclass(frozen=True)
class CertificateCheck:
    """Chain verification combined with a revocation lookup."""

    chain: VerificationResult
    revocation: RevocationEntry | None

    @property
    def is_revoked(self) -> bool:
        return self.revocation is not None

    @property
    def accepted(self) -> bool:
        return self.chain.is_valid and not self.is_revoked

    @property
    def message(self) -> str:
        if self.chain.is_malformed:
            return CheckMessage.MALFORMED
        if self.is_revoked:
            return CheckMessage.REVOKED
        if not self.chain.is_valid:
            return CheckMessage.INVALID
        return CheckMessage.VALID


class CertificateService:
    """Facade over the CA, issuer, verifier and revocation ledger.

    The authority is shared by the whole process; the database session is
    per request.
    """

    def __init__(
        self,
        db: AsyncSession,
        authority: CertificateAuthority,
        config: Settings | None = None,
    ):
        self.db = db
        self.authority = authority
        self.issuer = CertificateIssuer(authority, config)
        self.verifier = ChainVerifier(authority)
        self.ledger = RevocationLedger(db)
        self.issued_cert_repo = IssuedCertificateRepository(db)

    def get_ca_certificate(self) -> str:
        """CA certificate in PEM form, initialising the CA on first use."""
        return self.authority.get_ca_certificate_pem()

    async def issue_certificate(
        self, public_key_pem: str, email: str, name: str
    ) -> IssuedCertificate:
        """Issue and register a leaf certificate.

        Signing runs in a worker thread. If the serial is already registered
        the certificate is discarded and re-issued with a fresh serial.

        Raises:
            InvalidPublicKey: If the PEM is not an RSA public key.
            InputFormatError: If the email or name cannot be encoded.
            SigningError: If signing fails.
            SerialCollision: If every attempt hit a registered serial.
        """
        with tracer.start_as_current_span("CertificateService.issue_certificate") as span:
            span.set_attribute("email", email if isinstance(email, str) else "")

            for attempt in range(1, MAX_SERIAL_ATTEMPTS + 1):
                issued = await asyncio.to_thread(self.issuer.issue, public_key_pem, email, name)
                try:
                    await self._register(issued, email, name)
                except SerialCollision:
                    ca_metrics.record_serial_collision()
                    logger.warning(
                        "serial_collision",
                        extra={"serial": issued.serial_number, "attempt": attempt},
                    )
                    if attempt == MAX_SERIAL_ATTEMPTS:
                        ca_metrics.record_issuance_failure("serial_collision")
                        raise
                    continue

                span.set_attribute("serial", issued.serial_number)
                span.set_attribute("attempts", attempt)
                return issued

    async def _register(self, issued: IssuedCertificate, email: str, name: str) -> None:
        record = IssuedCertificateRecord(
            serial_number=issued.serial_number,
            email=email,
            display_name=name,
            thumbprint=issued.thumbprint,
            not_before=issued.not_before,
            not_after=issued.expires_at,
        )
        try:
            await self.issued_cert_repo.create(record)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise SerialCollision(issued.serial_number) from e

    def verify_certificate(self, certificate_pem: str) -> bool:
        """True only if the certificate chains to the current CA and is in its validity window."""
        return self.verifier.verify(certificate_pem).is_valid

    async def check_certificate(self, certificate_pem: str) -> CertificateCheck:
        """Verify the chain and look up revocation status.

        The revocation lookup runs whenever a serial could be read, even when
        the chain is invalid. A revoked certificate reports REVOKED even if its
        chain is also invalid; only MALFORMED takes precedence over REVOKED.
        """
        with tracer.start_as_current_span("CertificateService.check_certificate") as span:
            chain = self.verifier.verify(certificate_pem)

            revocation = None
            if chain.serial_number is not None:
                revocation = await self.ledger.is_revoked(chain.serial_number)

            check = CertificateCheck(chain=chain, revocation=revocation)
            span.set_attribute("message", check.message)
            return check

    async def revoke_certificate(
        self, serial_number: str, reason: str = RevocationReason.UNSPECIFIED.value
    ) -> bool:
        """Revoke a serial number.

        Returns:
            True if a new entry was recorded, False if the serial was already
            revoked (the original entry is kept).

        Raises:
            InputFormatError: If the serial is not a hex string.
        """
        with tracer.start_as_current_span("CertificateService.revoke_certificate") as span:
            try:
                entry = await self.ledger.record(serial_number, reason)
            except RevocationConflictError:
                span.set_attribute("duplicate", True)
                return False

            if await self.issued_cert_repo.mark_revoked(
                entry.serial_number, entry.revoked_at, entry.reason
            ):
                await self.db.commit()
            else:
                logger.info(
                    "revoked_serial_not_in_registry",
                    extra={"serial": entry.serial_number},
                )
            return True

    async def get_revocation(self, serial_number: str) -> RevocationEntry | None:
        """Revocation entry for a serial, or None."""
        return await self.ledger.is_revoked(serial_number)

    async def list_revocations(self) -> list[RevocationEntry]:
        """All revocation entries, most recent first."""
        return await self.ledger.list()

