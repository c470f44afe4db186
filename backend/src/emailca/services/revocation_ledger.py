"""Persistent record of revoked serial numbers."""

import logging

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from emailca.ca.crypto import InputFormatError, normalize_serial
from emailca.domain.models import RevocationEntry
from emailca.domain.states import RevocationReason
from emailca.metrics import ca_metrics
from emailca.repository.repositories import RevocationRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RevocationConflictError(Exception):
    """Raised when a serial number is already revoked.

    The stored entry is left untouched and is available as `existing`.
    """

    def __init__(self, existing: RevocationEntry):
        self.existing = existing
        super().__init__(f"Serial {existing.serial_number} is already revoked")


class RevocationLedger:
    """Records revocations keyed by canonical serial number.

    Serials are stored in the issuer's text form (32 lowercase hex digits), so
    "0A:1B" and "0a1b" refer to the same entry.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = RevocationRepository(db)

    async def record(
        self, serial_number: str, reason: str = RevocationReason.UNSPECIFIED.value
    ) -> RevocationEntry:
        """Revoke a serial number.

        Raises:
            InputFormatError: If the serial is not a hex string.
            RevocationConflictError: If the serial was already revoked.
        """
        with tracer.start_as_current_span("RevocationLedger.record") as span:
            serial = normalize_serial(serial_number)
            reason = self._normalize_reason(reason)
            span.set_attribute("serial", serial)

            entry = RevocationEntry(serial_number=serial, reason=reason)
            try:
                await self.repo.create(entry)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                existing = await self.repo.get_by_serial(serial)
                if existing is None:
                    raise
                logger.info(
                    "revocation_duplicate",
                    extra={"serial": serial, "existing_reason": existing.reason},
                )
                raise RevocationConflictError(existing)

            ca_metrics.record_certificate_revoked(reason)
            logger.info(
                "certificate_revoked",
                extra={
                    "serial": serial,
                    "reason": reason,
                    "revoked_at": entry.revoked_at.isoformat(),
                },
            )
            return entry

    async def is_revoked(self, serial_number: str) -> RevocationEntry | None:
        """Look up a serial. Returns the entry, or None if it was never revoked.

        Raises:
            InputFormatError: If the serial is not a hex string.
        """
        serial = normalize_serial(serial_number)
        entry = await self.repo.get_by_serial(serial)
        ca_metrics.record_revocation_check("revoked" if entry else "not_revoked")
        return entry

    async def list(self) -> list[RevocationEntry]:
        """Every entry, most recent first."""
        return await self.repo.list_all()

    @staticmethod
    def _normalize_reason(reason: str | None) -> str:
        if reason is None:
            return RevocationReason.UNSPECIFIED.value
        if not isinstance(reason, str):
            raise InputFormatError("Revocation reason must be a string")
        return reason.strip() or RevocationReason.UNSPECIFIED.value
