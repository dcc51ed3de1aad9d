from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from nexus_api.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_ids: list[str] = field(default_factory=list)


def decode_bearer(authorization: str | None) -> dict[str, Any] | None:
    """Claims from an ``Authorization: Bearer`` header, or None when absent or invalid."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def _string_list(value: Any, default: list[str]) -> list[str]:
    return [str(item) for item in value] if isinstance(value, list) else default


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer(request.headers.get("authorization"))
    if claims is None:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    user = AuthUser(
        sub=str(claims.get("sub", ANONYMOUS)),
        roles=_string_list(claims.get("roles"), ["user"]),
        tenant_ids=_string_list(claims.get("tenants"), []),
    )
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user
