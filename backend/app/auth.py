from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt import PyJWTError

from .core.config import settings
from .core.enums import RoleName
from .core.exceptions import ForbiddenException, UnauthorizedException
from .principal import UserPrincipal

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a JWT access token."""
    payload = jwt.decode(
        token,
        settings.jwt_secret.get_secret_value(),
        algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )
    return cast(Dict[str, Any], payload)


def create_access_token(
    user_id: str, role: RoleName, expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        user_id: Subject of the token
        role: Client or therapist
        expires_delta: Optional expiration time delta

    Returns:
        str: The encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": user_id, "role": role.value, "exp": expire}
    encoded_jwt = cast(
        str,
        jwt.encode(
            to_encode,
            settings.jwt_secret.get_secret_value(),
            algorithm=settings.jwt_algorithm,
        ),
    )
    logger.debug("Created access token", extra={"user_id": user_id, "role": role.value})
    return encoded_jwt


def principal_from_token(token: str) -> UserPrincipal:
    try:
        payload = decode_access_token(token)
    except PyJWTError as exc:
        logger.info("Rejected access token: %s", exc)
        raise UnauthorizedException("Could not validate credentials") from exc

    try:
        role = RoleName(payload.get("role"))
    except ValueError as exc:
        raise UnauthorizedException("Token carries an unknown role") from exc
    return UserPrincipal(user_id=str(payload["sub"]), role=role)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserPrincipal:
    """FastAPI dependency returning the authenticated caller."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedException("Not authenticated").to_http_exception()
    try:
        return principal_from_token(credentials.credentials)
    except UnauthorizedException as exc:
        raise exc.to_http_exception() from exc


async def require_client(
    principal: UserPrincipal = Depends(get_current_principal),
) -> UserPrincipal:
    if not principal.is_client:
        raise ForbiddenException("Only clients can book sessions").to_http_exception()
    return principal


async def require_therapist(
    principal: UserPrincipal = Depends(get_current_principal),
) -> UserPrincipal:
    if not principal.is_therapist:
        raise ForbiddenException("Therapist role required").to_http_exception()
    return principal
