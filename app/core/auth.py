import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi.security.utils import get_authorization_scheme_param
from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

logger = logging.getLogger("app.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: list[str] = field(default_factory=list)


def _claim_list(payload: dict[str, Any], key: str, default: list[str]) -> list[str]:
    value = payload.get(key, default)
    if not isinstance(value, list):
        return list(default)
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    """Identity from the bearer token.

    ``roles`` drive approver matching and system routes; the optional
    ``permissions`` claim carries fine-grained grants such as
    ``crm.approvals.decide``.
    """
    scheme, token = get_authorization_scheme_param(request.headers.get("authorization"))
    if scheme.lower() != "bearer" or not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.token_rejected", extra={"error": str(exc)[:500]})
        return AuthUser(sub="anonymous", roles=["guest"])

    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=_claim_list(payload, "roles", ["user"]),
        permissions=_claim_list(payload, "permissions", []),
    )
