"""
ProductGuard Enforcement Engine - Authentication Utilities
JWT validation, scheduler secret, and auth dependencies

Tokens are issued by the external identity layer. This module only
validates them and attaches the tenant identity to the request.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from . import config

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    """Identity attached to a request by the identity layer."""
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: str, role: str = "user") -> str:
    """Create a JWT access token with role claim (tests and local tooling)."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Expired tokens fail validation."""
    try:
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None


def _user_from_token(token: str) -> CurrentUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    return CurrentUser(id=user_id, role=payload.get("role", "user"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """
    Dependency to get the current authenticated user.
    Validates the bearer token issued by the identity layer.
    """
    return _user_from_token(credentials.credentials)


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    Dependency to require admin role.
    Use this on admin-only routes.
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

def scheduler_key_valid(presented: Optional[str]) -> bool:
    """Constant-time comparison of a presented scheduler secret."""
    if not presented or not config.SCHEDULER_SECRET:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), config.SCHEDULER_SECRET.encode("utf-8"))


async def verify_internal_key(x_internal_key: Optional[str] = Header(None)):
    """Verify internal API key for scheduler endpoints."""
    if not scheduler_key_valid(x_internal_key):
        logger.warning("Rejected scheduler call with missing or invalid internal key")
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


async def require_scheduler_or_user(
    x_internal_key: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[CurrentUser]:
    """
    Accept either the scheduler secret or a bearer token.

    Returns None for the scheduler (all tenants) and the CurrentUser
    otherwise, so callers can scope work to that user's own items.
    """
    if x_internal_key is not None:
        if scheduler_key_valid(x_internal_key):
            return None
        logger.warning("Rejected queue trigger with invalid internal key")
        raise HTTPException(status_code=403, detail="Invalid internal API key")

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _user_from_token(credentials.credentials)
