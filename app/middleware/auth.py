from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from app.config import get_settings
from app.errors import Forbidden, Unauthenticated

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


class Role(str, Enum):
    rider = "rider"
    driver = "driver"


@dataclass(frozen=True)
class Identity:
    subject_id: str
    role: Role


def create_access_token(data: dict) -> str:
    """Sign a JWT with the configured secret (HS256). Tokens are normally issued by the auth service."""
    return jwt.encode(data, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_identity(token: str) -> Identity:
    """Verify a bearer credential and turn its claims into an Identity."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise Unauthenticated("Invalid or expired token")
    subject_id = payload.get("sub")
    if not subject_id:
        raise Unauthenticated("Invalid token payload")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise Unauthenticated("Invalid token role")
    return Identity(subject_id=str(subject_id), role=role)


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise Unauthenticated("Missing Bearer token")
    return decode_identity(credentials.credentials)


async def get_current_rider(identity: Identity = Depends(get_current_identity)) -> str:
    """Extract rider_id from token payload."""
    if identity.role is not Role.rider:
        raise Forbidden("Only riders can perform this action")
    return identity.subject_id


async def get_current_driver(identity: Identity = Depends(get_current_identity)) -> str:
    """Extract driver_id from token payload."""
    if identity.role is not Role.driver:
        raise Forbidden("Only drivers can perform this action")
    return identity.subject_id
