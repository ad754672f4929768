"""
Internal Service Authentication

API key authentication for the operator dashboard and the chat bot layer.
Keys come from settings (INTERNAL_API_KEY, plus INTERNAL_API_KEYS for
rotation).

Headers:
    X-Internal-Api-Key: <api_key>
    X-Operator-Id: <operator id> (required on operator actions)
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, status, Depends, Header
from fastapi.security import APIKeyHeader

from config import get_settings

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
OPERATOR_ID_HEADER = "X-Operator-Id"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """Represents an authenticated internal caller"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging
    is_authenticated: bool = True


def validate_internal_key(api_key: Optional[str]) -> bool:
    """
    Validate an internal API key.

    Returns:
        True if valid, False otherwise
    """
    if not api_key:
        return False

    valid_keys = get_settings().internal_api_keys
    if not valid_keys:
        logger.warning("No valid API keys configured")
        return False

    # Constant-time comparison to prevent timing attacks
    return any(secrets.compare_digest(api_key, key) for key in valid_keys)


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def verify_internal_auth(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency: reject requests without a valid internal API key.

    Raises:
        HTTPException: 503 when no keys are configured, 401 otherwise
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")

    if not get_settings().internal_api_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal authentication not configured"
        )

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return InternalService(name=service_name, api_key_hash=f"...{api_key[-8:]}")


async def require_operator(
    _service: InternalService = Depends(verify_internal_auth),
    x_operator_id: Optional[str] = Header(None, alias=OPERATOR_ID_HEADER)
) -> str:
    """Authenticated caller acting as a named operator; returns the operator id"""
    if not x_operator_id or not x_operator_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {OPERATOR_ID_HEADER} header"
        )
    return x_operator_id.strip()
