from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from stageflow.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    org_id: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def bearer_claims(authorization: str) -> dict[str, Any] | None:
    """Verified claims of an ``Authorization: Bearer`` header, or None."""
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = bearer_claims(request.headers.get("authorization", ""))
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT)

    roles = claims.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    elif not isinstance(roles, list):
        roles = []
    org_id = claims.get("org_id")
    return AuthUser(
        sub=str(claims.get("sub") or ANONYMOUS_SUBJECT),
        roles=[str(role) for role in roles],
        org_id=str(org_id) if org_id else None,
    )
