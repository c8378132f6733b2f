import logging
from typing import Any, Mapping, Protocol

import jwt

from assetgate.models import AdminPrincipal

logger = logging.getLogger(__name__)

ACCESS_COOKIE_NAME = "pm_access_token"
ADMIN_ROLE = "admin"


class TokenVerifier(Protocol):
    def verify(self, token: str) -> dict[str, Any]: ...


class InvalidTokenType(jwt.InvalidTokenError):
    pass


class AccessTokenVerifier:
    """Verifies admin access tokens issued by the auth service (HS256 JWT)."""

    def __init__(self, secret: str, issuer: str, audience: str, algorithm: str = "HS256"):
        self.secret = secret
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm

    def verify(self, token: str) -> dict[str, Any]:
        decoded = jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            audience=self.audience,
        )
        if decoded.get("tokenType") != "access":
            raise InvalidTokenType("Invalid token type")
        return decoded


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    header = headers.get("authorization")
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def extract_cookie_token(cookies: Mapping[str, str]) -> str | None:
    raw = cookies.get(ACCESS_COOKIE_NAME)
    if not raw:
        return None
    return raw.strip() or None


def get_optional_admin(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    verifier: TokenVerifier | None,
) -> AdminPrincipal | None:
    """Return the admin principal if the request carries a valid admin token.

    Missing, malformed, expired or non-admin tokens all yield None; verifier
    failures are never propagated.
    """
    if verifier is None:
        return None
    token = extract_bearer_token(headers) or extract_cookie_token(cookies)
    if not token:
        return None
    try:
        decoded = verifier.verify(token)
    except Exception as e:
        logger.debug("admin token rejected: %s", type(e).__name__)
        return None
    if not isinstance(decoded, dict) or decoded.get("role") != ADMIN_ROLE:
        return None
    return AdminPrincipal(
        id=str(decoded.get("sub") or "admin"),
        role=ADMIN_ROLE,
        token_id=decoded.get("jti"),
    )
