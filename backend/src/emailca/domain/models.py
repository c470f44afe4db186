from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shared.database import Base

from .states import RevocationReason


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RevocationEntry(Base):
    """A revoked serial number. One row per serial; the first revocation wins."""

    __tablename__ = "crl_entries"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    serial_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    reason: Mapped[str] = mapped_column(
        Text, nullable=False, default=RevocationReason.UNSPECIFIED.value
    )
    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_crl_entries_revoked_at", "revoked_at"),)

    def __repr__(self) -> str:
        return f"<RevocationEntry serial={self.serial_number} reason={self.reason!r}>"


class IssuedCertificateRecord(Base):
    """Registry of every serial the CA has signed."""

    __tablename__ = "issued_certificates"

    certificate_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    serial_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    thumbprint: Mapped[str] = mapped_column(String(64), nullable=False)

    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    not_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_issued_certificates_email", "email"),)
