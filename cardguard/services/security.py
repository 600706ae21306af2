"""
CardGuard — Security Layer

Provides:
- Card number masking for anything that leaves the store (responses, logs, alerts)
- Optional operator API key guard for remediation / listing endpoints
- Per-client rate limiting
"""

import hmac
import logging
import re
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from cardguard.config import settings

logger = logging.getLogger("cardguard.security")

_WHITESPACE = re.compile(r"\s+")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit],
    enabled=settings.RATE_LIMIT_ENABLED,
)


# ---------------------------------------------------------------------------
# Masking
# ---------------------------------------------------------------------------
def mask_card_number(card_number: Optional[str]) -> str:
    """``4111 1111 1111 1234`` → ``**** **** **** 1234``."""
    if not card_number:
        return ""
    digits = _WHITESPACE.sub("", str(card_number))
    if len(digits) <= 4:
        return "****"
    return "**** **** **** " + digits[-4:]


# ---------------------------------------------------------------------------
# Dependency for FastAPI route protection
# ---------------------------------------------------------------------------
async def require_operator(
    api_key: Optional[str] = Depends(api_key_header),
) -> Dict[str, Any]:
    """
    Validate the operator API key (X-API-Key header).

    When AUTH_ENABLED is false (development / demo) every caller is
    treated as the system operator.
    """
    if not settings.AUTH_ENABLED:
        return {"sub": "system"}

    # compare_digest rejects non-ASCII str, so compare the encoded bytes
    if api_key and hmac.compare_digest(
        api_key.encode("utf-8"), settings.OPERATOR_API_KEY.encode("utf-8")
    ):
        return {"sub": "operator"}

    logger.warning("Rejected operator request: %s", "missing API key" if not api_key else "invalid API key")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "ApiKey"},
    )
