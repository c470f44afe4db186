"""Pydantic schemas for the certificate API."""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field

from emailca.domain.states import RevocationReason


class CACertificateResponse(BaseModel):
    """The CA certificate clients install as their trust anchor."""

    certificate: str


class IssueCertificateRequest(BaseModel):
    """Request body for issuing a leaf certificate."""

    public_key: str = Field(..., validation_alias=AliasChoices("public_key", "publicKey"))
    email: str = Field(..., max_length=320)
    name: str = Field(..., max_length=255)


class IssueCertificateResponse(BaseModel):
    """Response model for an issued certificate."""

    certificate: str
    serial_number: str
    expires_at: datetime


class VerifyCertificateRequest(BaseModel):
    """Request body for verifying a certificate."""

    certificate: str


class VerifyCertificateResponse(BaseModel):
    """Combined chain and revocation verdict.

    `is_valid` is true only when the chain verifies and the serial is not revoked.
    """

    is_valid: bool
    is_revoked: bool
    message: str
    revoked_at: datetime | None = None
    reason: str | None = None


class RevokeCertificateRequest(BaseModel):
    """Request body for revoking a certificate."""

    serial_number: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("serial_number", "serialNumber")
    )
    reason: str = Field(RevocationReason.UNSPECIFIED.value, max_length=255)


class RevokeCertificateResponse(BaseModel):
    message: str
    serial_number: str


class RevocationEntryResponse(BaseModel):
    """Response model for a revocation list entry."""

    serial_number: str
    reason: str
    revoked_at: datetime

    model_config = {"from_attributes": True}

