"""
Bearer token authentication for API routes.
"""
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jwt import decode as jwt_decode, InvalidTokenError
import structlog

from carepro.core.settings import settings

logger = structlog.get_logger(__name__)

# JWT token scheme
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


class AuthenticatedUser:
    """User extracted from a verified JWT."""

    def __init__(self, user_id: str, email: Optional[str], role: str, payload: dict):
        self.id = user_id
        self.email = email
        self.role = role
        self.payload = payload

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def __repr__(self):
        return f"AuthenticatedUser(id={self.id}, role={self.role})"


class SecurityUtils:
    """Token verification helpers."""

    @staticmethod
    def verify_token(token: str) -> Optional[dict]:
        """Verify and decode a JWT, returning None when invalid."""
        try:
            return jwt_decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
            )
        except InvalidTokenError as e:
            logger.info("JWT validation failed", error=str(e))
            return None

    @staticmethod
    def extract_user_from_token(payload: dict) -> Optional[AuthenticatedUser]:
        user_id = payload.get("sub")
        if not user_id:
            return None
        return AuthenticatedUser(
            user_id=str(user_id),
            email=payload.get("email"),
            role=payload.get("role", "user"),
            payload=payload,
        )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> AuthenticatedUser:
    """FastAPI dependency returning the authenticated caller."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = SecurityUtils.verify_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user = SecurityUtils.extract_user_from_token(payload)
    if user is None:
        raise credentials_exception

    return user


def require_admin(current_user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """FastAPI dependency allowing only admin callers."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user
