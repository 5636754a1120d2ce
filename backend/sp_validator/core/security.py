"""
API key authentication for the validation endpoints.

Clients authenticate with a static key sent either as ``X-API-Key`` or as
``Authorization: Bearer <key>``.
"""
import hmac
import logging
from typing import Optional

from fastapi import Request

from sp_validator.core.config import settings
from sp_validator.core.errors import AuthenticationRequired

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def _extract_api_key(request: Request) -> Optional[str]:
    """
    Extract the API key from the request headers.

    Args:
        request: FastAPI Request object

    Returns:
        Key string or None if not found
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key:
        return api_key.strip() or None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def _is_valid_api_key(candidate: str) -> bool:
    # Empty configured keys are invalid (not configured)
    if not settings.API_KEY:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), settings.API_KEY.encode("utf-8"))


async def require_api_key(request: Request) -> str:
    """
    Dependency that requires a valid API key.

    Raises:
        AuthenticationRequired: 401 if the key is missing or invalid
    """
    client = request.client.host if request.client else None
    api_key = _extract_api_key(request)
    if not api_key:
        logger.warning("Missing API key from %s on %s", client, request.url.path)
        raise AuthenticationRequired("API key required")

    if not _is_valid_api_key(api_key):
        logger.warning("Invalid API key from %s on %s", client, request.url.path)
        raise AuthenticationRequired("Invalid API key")

    return api_key
