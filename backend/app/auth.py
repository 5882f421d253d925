"""
Attribution Engine - Authentication Utilities
JWT bearer tokens with a role claim, and the internal scheduler key
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import INTERNAL_API_KEY, JWT_ALGORITHM, JWT_SECRET_KEY

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


@dataclass(frozen=True)
class Principal:
    """Caller identity taken from a validated token."""
    subject: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(subject: str, role: str = "user", expires_in: Optional[timedelta] = None) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + (expires_in or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    to_encode = {
        "sub": subject,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """
    Dependency to get the authenticated caller.
    Expired or tampered tokens are rejected by decode_token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    subject = payload.get("sub")
    if subject is None:
        raise credentials_exception

    return Principal(subject=subject, role=payload.get("role", "user"))


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """
    Dependency to require admin role.
    Use this on admin-only routes.
    """
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return principal


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True
