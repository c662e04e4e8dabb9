"""Bearer API key check and rate limiting for the admin trigger endpoints."""

import os
import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

limiter = Limiter(key_func=get_remote_address)

# Per-client limits for operator-triggered runs
TRIGGER_RATE_LIMIT = os.getenv("TRIGGER_RATE_LIMIT", "30/minute")
ADMIN_RATE_LIMIT = os.getenv("ADMIN_RATE_LIMIT", "120/minute")


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Reject the request unless it carries the configured bearer key.

    A missing Authorization header is rejected by HTTPBearer itself (403).

    Raises:
        HTTPException: 401 for a wrong key, 500 when API_KEY is not set.
    """
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY is not set; refusing admin request")
        raise HTTPException(status_code=500, detail="Server configuration error")

    supplied = credentials.credentials
    if not secrets.compare_digest(supplied.encode(), expected_key.encode()):
        logger.warning("Rejected admin request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return supplied
