"""Internal endpoint authentication.

Aggregation and retention runs are triggered by an external scheduler that
presents a shared token in the ``x-internal-token`` header. Tokens are
compared as SHA256 digests with ``hmac.compare_digest`` so the comparison
time does not depend on where the strings differ.
"""
import hashlib
import hmac
from fastapi import HTTPException, Security, Depends
from fastapi.security import APIKeyHeader
from typing import Optional

from splitlab.config import Settings, get_settings

# Internal token header
internal_token_header = APIKeyHeader(name="x-internal-token", auto_error=False)


def hash_token(token: str) -> str:
    """
    Hash a token using SHA256.

    Args:
        token: Plain text token

    Returns:
        SHA256 hex digest of the token
    """
    return hashlib.sha256(token.encode()).hexdigest()


def verify_internal_token(provided: Optional[str], expected: str) -> bool:
    """Check a presented token against the configured one."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(hash_token(provided), hash_token(expected))


async def require_internal_token(
    token: Optional[str] = Security(internal_token_header),
    settings: Settings = Depends(get_settings)
) -> None:
    """
    Dependency guarding internal (scheduler-only) routes.

    Usage:
        @router.post("/internal/experiments/retention/run", dependencies=[Depends(require_internal_token)])
        def run_retention(...):
            ...

    Raises:
        HTTPException: 401 if the token is missing or wrong
    """
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Missing internal token",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not verify_internal_token(token, settings.internal_api_token):
        raise HTTPException(
            status_code=401,
            detail="Invalid internal token",
            headers={"WWW-Authenticate": "ApiKey"}
        )
