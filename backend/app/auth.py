"""
Gig Marketplace Orders - Authentication Utilities
JWT tokens and auth dependencies

Users are managed elsewhere; tokens carry the user id and the role the user
is currently acting in ("client", "freelancer" or "admin").
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .models.db_models import ActorRole
from .models.order_models import Actor

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "gigmarket-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Marketplace role names -> engine roles
ROLE_CLAIMS = {
    "client": ActorRole.REQUESTER,
    "freelancer": ActorRole.PROVIDER,
    "admin": ActorRole.ADMINISTRATOR,
}

# Bearer token security
security = HTTPBearer()


def create_access_token(user_id: str, role: str = "client") -> str:
    """Create a JWT access token with role claim."""
    if role not in ROLE_CLAIMS:
        raise ValueError(f"Unknown role '{role}'")
    expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Expired or tampered tokens give None."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Dependency to get the acting user.
    Validates the JWT and maps its role claim onto an engine role.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id: str = payload.get("sub")
    role = ROLE_CLAIMS.get(payload.get("role"))
    if user_id is None or role is None:
        raise credentials_exception

    return Actor(user_id=user_id, role=role)


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    Dependency to require admin role.
    Use this on admin-only routes.
    """
    if actor.role != ActorRole.ADMINISTRATOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return actor
