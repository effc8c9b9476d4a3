# ============================================================
# app/core/security.py
#
# Operator authentication for the dashboard-facing SchoolPay
# endpoints. The JWT is issued by the school platform's login
# service; we only verify it and read the tenant + role claims.
#
# The webhook never comes through here. SchoolPay's servers
# carry no token; webhook_service.py finds the tenant from the
# student record instead.
#
#   Authorization: Bearer <jwt>
#       → verify_token()        signature, expiry, type=access
#       → get_current_user()    CurrentUser scoped to one tenant
#       → require_roles(...)    403 unless the role is listed
# ============================================================

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from app.core.config import settings

SCHOOL_ADMIN = "school_admin"
BURSAR = "bursar"

# Who may push money around in the ledger vs. change credentials
RECONCILE_ROLES = (SCHOOL_ADMIN, BURSAR)
SETTINGS_ROLES = (SCHOOL_ADMIN,)

bearer_scheme = HTTPBearer()


class TokenData(BaseModel):
    """Claims we rely on. Anything else in the token is ignored."""
    user_id: str
    tenant_id: str
    role: str
    email: str
    full_name: str


class CurrentUser(BaseModel):
    user_id: UUID
    tenant_id: UUID
    role: str
    email: str
    full_name: str

    @property
    def is_admin(self) -> bool:
        return self.role == SCHOOL_ADMIN

    @property
    def can_reconcile(self) -> bool:
        return self.role in RECONCILE_ROLES


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(data: TokenData, expires_in: Optional[timedelta] = None) -> str:
    """Used by tests and local tooling; production tokens come from the login service."""
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_in or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = data.model_dump() | {
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "type": "access",
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> TokenData:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise _unauthorized()

    if claims.get("type") != "access":
        raise _unauthorized()
    try:
        return TokenData.model_validate(claims)
    except ValidationError:
        raise _unauthorized("Token is missing tenant or user claims")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """
    Every authenticated query is scoped to the tenant in the token,
    so a token with a malformed tenant or user id is rejected outright.
    """
    token = verify_token(credentials.credentials)
    try:
        return CurrentUser(
            user_id=UUID(token.user_id),
            tenant_id=UUID(token.tenant_id),
            role=token.role,
            email=token.email,
            full_name=token.full_name,
        )
    except ValueError:
        raise _unauthorized("Token carries an invalid tenant or user id")


def require_roles(*allowed_roles: str):
    """
    user: CurrentUser = Depends(require_roles(*RECONCILE_ROLES))
    """
    async def check_role(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(allowed_roles)}",
            )
        return current_user
    return check_role
