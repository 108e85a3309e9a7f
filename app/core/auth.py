"""
Authentication dependencies

Identity is issued by the platform's RBAC layer; this module only decodes the
bearer token into the clinic/role pair the TISS routes need.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from config import settings
from app.core.error_handling import ForbiddenException, UnauthorizedException

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class UserRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    PROFESSIONAL = "professional"
    RECEPTIONIST = "receptionist"


class CurrentUser(BaseModel):
    id: int
    clinic_id: int
    role: UserRole
    email: Optional[str] = None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by tests and service-to-service calls)"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None:
        raise UnauthorizedException()

    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise UnauthorizedException("Token inválido ou expirado")

    try:
        return CurrentUser(
            id=int(payload["sub"]),
            clinic_id=int(payload["clinic_id"]),
            role=UserRole(payload["role"]),
            email=payload.get("email"),
        )
    except (KeyError, ValueError):
        raise UnauthorizedException("Token sem identificação de clínica ou papel")


class RoleChecker:
    """Dependency that only lets the listed roles through"""

    def __init__(self, allowed_roles: List[UserRole]):
        self.allowed_roles = allowed_roles

    async def __call__(self, current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in self.allowed_roles:
            logger.warning(
                f"User {current_user.id} with role {current_user.role.value} denied; "
                f"requires one of {[r.value for r in self.allowed_roles]}"
            )
            raise ForbiddenException("Permissão insuficiente para esta operação")
        return current_user


require_professional = RoleChecker([UserRole.PROFESSIONAL, UserRole.ADMIN, UserRole.OWNER])
require_admin = RoleChecker([UserRole.ADMIN, UserRole.OWNER])
require_owner = RoleChecker([UserRole.OWNER])
