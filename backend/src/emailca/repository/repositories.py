"""Repository layer for CA data access."""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from emailca.domain.models import IssuedCertificateRecord, RevocationEntry

logger = logging.getLogger(__name__)


class RevocationRepository:
    """Repository for crl_entries rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, entry: RevocationEntry) -> RevocationEntry:
        """Add a revocation entry. Raises IntegrityError on a duplicate serial."""
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_by_serial(self, serial: str) -> RevocationEntry | None:
        """Get revocation entry by canonical serial number."""
        result = await self.db.execute(
            select(RevocationEntry).where(RevocationEntry.serial_number == serial)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[RevocationEntry]:
        """All entries, most recently revoked first."""
        result = await self.db.execute(
            select(RevocationEntry).order_by(
                RevocationEntry.revoked_at.desc(), RevocationEntry.entry_id.desc()
            )
        )
        return list(result.scalars().all())


class IssuedCertificateRepository:
    """Repository for the issued-serial registry."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, cert: IssuedCertificateRecord) -> IssuedCertificateRecord:
        """Register an issued certificate. Raises IntegrityError if the serial is taken."""
        self.db.add(cert)
        await self.db.flush()
        return cert

    async def get_by_serial(self, serial: str) -> IssuedCertificateRecord | None:
        """Get certificate by serial number."""
        result = await self.db.execute(
            select(IssuedCertificateRecord).where(IssuedCertificateRecord.serial_number == serial)
        )
        return result.scalar_one_or_none()

    async def mark_revoked(self, serial: str, revoked_at: datetime, reason: str) -> bool:
        """Stamp revocation on the registry row. Returns False if the serial is unknown."""
        result = await self.db.execute(
            update(IssuedCertificateRecord)
            .where(IssuedCertificateRecord.serial_number == serial)
            .where(IssuedCertificateRecord.revoked_at.is_(None))
            .values(revoked_at=revoked_at, revocation_reason=reason)
        )
        return result.rowcount > 0
