"""
Bearer token auth dependencies.

Tokens are issued by the external auth service; this engine only verifies
them. Payload: {"sub": "<user_id>", "role": "user|admin"}.
"""
import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config.settings import settings

logger = logging.getLogger(__name__)

# auto_error=False lets us answer 401 in our own envelope instead of FastAPI's 403
security = HTTPBearer(auto_error=False)


def _decode(token_value: str) -> dict:
    try:
        payload = jwt.decode(token_value, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Token decode error: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return {"user_id": str(user_id), "role": payload.get("role", "user")}


async def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="Missing Authorization token")
    return _decode(creds.credentials)


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def issue_token(user_id: str, role: str = "user") -> str:
    """Mint a token with the shared secret (dev tooling and tests)."""
    return jwt.encode({"sub": user_id, "role": role}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
