"""Operator API key authentication for privileged CA endpoints."""

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from emailca.services.bootstrap import get_operator_key_hash
from shared.security import API_KEY_PREFIX, verify_api_key

logger = logging.getLogger(__name__)

# Define API key header
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_operator(api_key: str | None = Depends(api_key_header)) -> None:
    """
    Authenticate the operator via API key.

    - Extract API key from X-API-Key header
    - Verify format: eca_<base64url>
    - Verify against the Argon2id hash of the operator key
    - Raise 401 UNAUTHORIZED on any failure

    Log: DEBUG auth_attempt {result: success|failure}
    """
    if not api_key:
        logger.debug("auth_attempt", extra={"result": "failure", "reason": "missing_key"})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
        )

    if not api_key.startswith(API_KEY_PREFIX):
        logger.debug("auth_attempt", extra={"result": "failure", "reason": "invalid_format"})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key format",
        )

    key_hash = get_operator_key_hash()
    if key_hash is None or not verify_api_key(api_key, key_hash):
        logger.debug("auth_attempt", extra={"result": "failure", "reason": "invalid_key"})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    logger.debug("auth_attempt", extra={"result": "success"})
