"""Bearer token authentication.

Requests without a token run as a guest holding no association permissions,
so the permission checks on each route turn them away. A token that is
present but fails to decode is rejected outright.
"""

import logging
from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


logger = logging.getLogger("app.auth")

GUEST_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def _roles_claim(payload: dict) -> list[str]:
    roles = payload.get("roles", [])
    # Space separated scope strings are accepted too.
    if isinstance(roles, str):
        roles = roles.split()
    if not isinstance(roles, list):
        return []
    return [str(role) for role in roles if role]


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub=GUEST_SUBJECT, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.rejected", extra={"path": request.url.path, "error": str(exc)[:200]})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    subject = str(payload.get("sub") or GUEST_SUBJECT)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=_roles_claim(payload))
