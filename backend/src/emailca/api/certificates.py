"""Certificate API endpoints: CA distribution, issuance, verification and revocation."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from emailca.api.auth import require_operator
from emailca.api.schemas import (
    CACertificateResponse,
    IssueCertificateRequest,
    IssueCertificateResponse,
    RevocationEntryResponse,
    RevokeCertificateRequest,
    RevokeCertificateResponse,
    VerifyCertificateRequest,
    VerifyCertificateResponse,
)
from emailca.ca.authority import CertificateAuthority, CertificateAuthorityError
from emailca.ca.crypto import (
    InputFormatError,
    InvalidPublicKey,
    KeyGenerationError,
    SigningError,
    normalize_serial,
)
from emailca.services.certificate_service import CertificateService, CheckMessage, SerialCollision
from shared.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/certificates", tags=["certificates"])

# Global CA instance, injected at start-up
_authority: CertificateAuthority | None = None

# Chain failure sub-reasons stay in the logs
_CHECK_MESSAGES = {
    CheckMessage.VALID: "Certificate is valid",
    CheckMessage.INVALID: "Certificate validation failed",
    CheckMessage.REVOKED: "Certificate has been revoked",
    CheckMessage.MALFORMED: "Certificate could not be parsed",
}


def set_authority(authority: CertificateAuthority) -> None:
    """Set the global certificate authority instance."""
    global _authority
    _authority = authority


def get_authority() -> CertificateAuthority:
    """Get the global certificate authority instance."""
    if _authority is None:
        raise RuntimeError("CertificateAuthority not initialized")
    return _authority


def get_certificate_service(db: AsyncSession = Depends(get_db)) -> CertificateService:
    """Dependency to get CertificateService instance."""
    return CertificateService(db, get_authority())


@router.get("/ca", response_model=CACertificateResponse)
async def get_ca_certificate(
    service: CertificateService = Depends(get_certificate_service),
) -> CACertificateResponse:
    """
    Download the CA certificate.

    - Auth: none
    - Errors: 500 if the CA cannot be loaded or generated
    """
    try:
        certificate = service.get_ca_certificate()
    except (CertificateAuthorityError, KeyGenerationError, SigningError) as e:
        logger.error("ca_certificate_unavailable", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get CA certificate",
        ) from None
    return CACertificateResponse(certificate=certificate)


@router.post(
    "/issue",
    status_code=status.HTTP_201_CREATED,
    response_model=IssueCertificateResponse,
    dependencies=[Depends(require_operator)],
)
async def issue_certificate(
    body: IssueCertificateRequest,
    service: CertificateService = Depends(get_certificate_service),
) -> IssueCertificateResponse:
    """
    Issue a leaf certificate for a user's public key.

    - Auth: operator API key
    - Returns: 201 Created with the certificate PEM, serial and expiry
    - Errors: 400 (bad key, email or name), 401, 500 (signing), 503 (serial collision)
    """
    try:
        issued = await service.issue_certificate(body.public_key, body.email, body.name)
    except InvalidPublicKey as e:
        logger.info("issue_rejected", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Public key must be an RSA public key in PEM format",
        ) from None
    except InputFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    except SerialCollision:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not allocate a unique serial number, retry later",
        ) from None
    except (SigningError, KeyGenerationError, CertificateAuthorityError) as e:
        logger.error("issue_failed", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to issue certificate",
        ) from None

    return IssueCertificateResponse(
        certificate=issued.certificate_pem,
        serial_number=issued.serial_number,
        expires_at=issued.expires_at,
    )


@router.post("/verify", response_model=VerifyCertificateResponse)
async def verify_certificate(
    body: VerifyCertificateRequest,
    service: CertificateService = Depends(get_certificate_service),
) -> VerifyCertificateResponse:
    """
    Verify a certificate against the CA and the revocation list.

    - Auth: none
    - Returns: is_valid is true only for a trusted, unrevoked certificate
    """
    check = await service.check_certificate(body.certificate)
    revocation = check.revocation
    return VerifyCertificateResponse(
        is_valid=check.accepted,
        is_revoked=check.is_revoked,
        message=_CHECK_MESSAGES[check.message],
        revoked_at=revocation.revoked_at if revocation else None,
        reason=revocation.reason if revocation else None,
    )


@router.post(
    "/revoke",
    response_model=RevokeCertificateResponse,
    dependencies=[Depends(require_operator)],
)
async def revoke_certificate(
    body: RevokeCertificateRequest,
    service: CertificateService = Depends(get_certificate_service),
) -> RevokeCertificateResponse:
    """
    Revoke a certificate by serial number.

    - Auth: operator API key
    - Errors: 400 (serial is not hex), 401, 409 (already revoked)
    """
    try:
        revoked = await service.revoke_certificate(body.serial_number, body.reason)
    except InputFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None

    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Certificate is already revoked",
        )

    return RevokeCertificateResponse(
        message="Certificate revoked successfully",
        serial_number=normalize_serial(body.serial_number),
    )


@router.get("/crl", response_model=list[RevocationEntryResponse])
async def get_revocation_list(
    service: CertificateService = Depends(get_certificate_service),
) -> list[RevocationEntryResponse]:
    """
    Certificate revocation list, most recent first.

    - Auth: none
    """
    entries = await service.list_revocations()
    return [RevocationEntryResponse.model_validate(entry) for entry in entries]
