"""
Bearer-token authentication dependencies.

Tokens are issued by the account service; this module only verifies them
and reads the `sub` (user id) and `role` claims.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from crowdfund.config import Settings, get_settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: str
    role: str
    is_operator: bool


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """
    Decode the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or has no subject
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.warning("bearer_token_rejected", error=str(e))
        raise _unauthorized("Could not validate credentials")

    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("Could not validate credentials")

    role = str(payload.get("role") or "user")
    return Principal(
        user_id=str(subject),
        role=role,
        is_operator=role in settings.get_operator_roles(),
    )


async def require_operator(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """
    Restrict an endpoint to operator roles.

    Raises:
        HTTPException: 403 if the caller is not an operator
    """
    if not principal.is_operator:
        logger.warning("operator_access_denied", user_id=principal.user_id, role=principal.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator privileges required",
        )
    return principal
