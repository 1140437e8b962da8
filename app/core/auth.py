from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""


def decode_token(token: str) -> dict[str, Any] | None:
    """Claims of a valid access token, or None when it is missing or fails verification."""

    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_token(bearer_token(request))
    if claims is None:
        return AuthUser(sub=ANONYMOUS.sub, roles=list(ANONYMOUS.roles))

    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    user = AuthUser(
        sub=str(claims.get("sub", "anonymous")),
        roles=[str(role) for role in roles],
        email=claims.get("email") if isinstance(claims.get("email"), str) else None,
        claims=claims,
    )
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user
