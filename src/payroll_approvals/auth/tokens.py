"""Session token decoding.

Tokens are issued and refreshed by the external authentication service; this
module only verifies and decodes them. Expected claims:

    sub     user id (UUID)
    org_id  organization id, or null for platform-scope roles
    role    role identifier from the role catalog
    exp     expiry (epoch seconds)
    imp     optional impersonation overlay:
            {acting_user_id, target_org_id, target_role, exp}

Organization scope comes from the token alone. There is no fallback to
profile lookups or a default organization: a token that does not carry a
usable scope is rejected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import jwt

from payroll_approvals.auth.roles import Role
from payroll_approvals.auth.session import Identity, ImpersonationOverlay, SessionContext
from payroll_approvals.config import Settings, get_settings
from payroll_approvals.errors import AuthenticationExpired, InvalidSessionToken

logger = logging.getLogger(__name__)


def _uuid(value: Any, claim: str) -> UUID:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidSessionToken(f"Claim '{claim}' is not a valid identifier") from None


def _optional_uuid(value: Any, claim: str) -> UUID | None:
    return None if value in (None, "") else _uuid(value, claim)


def _role(value: Any, claim: str) -> Role:
    try:
        return Role(value)
    except ValueError:
        logger.warning("Token carried unknown role %r in claim %s", value, claim)
        raise InvalidSessionToken(f"Claim '{claim}' names an unknown role") from None


def _timestamp(value: Any, claim: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise InvalidSessionToken(f"Claim '{claim}' is not a valid timestamp") from None


def decode_claims(token: str, settings: Settings | None = None) -> dict[str, Any]:
    """Verify signature and expiry, returning the raw claims.

    Raises AuthenticationExpired or InvalidSessionToken.
    """
    settings = settings or get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured")
        raise InvalidSessionToken("Authentication is not configured")

    options: dict[str, Any] = {"require": ["sub", "role", "exp"]}
    kwargs: dict[str, Any] = {}
    if settings.jwt_issuer:
        kwargs["issuer"] = settings.jwt_issuer
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options=options,
            **kwargs,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationExpired() from None
    except jwt.InvalidTokenError as e:
        logger.info("Rejected session token: %s", e)
        raise InvalidSessionToken("Invalid session token") from None


def session_from_claims(claims: dict[str, Any]) -> SessionContext:
    """Build a SessionContext from verified claims."""
    try:
        identity = Identity(
            user_id=_uuid(claims.get("sub"), "sub"),
            organization_id=_optional_uuid(claims.get("org_id"), "org_id"),
            role=_role(claims.get("role"), "role"),
        )
    except ValueError as e:
        raise InvalidSessionToken(str(e)) from None

    overlay = None
    imp = claims.get("imp")
    if imp:
        if not isinstance(imp, dict):
            raise InvalidSessionToken("Claim 'imp' must be an object")
        try:
            overlay = ImpersonationOverlay(
                acting_user_id=_optional_uuid(imp.get("acting_user_id"), "imp.acting_user_id"),
                target_organization_id=_optional_uuid(imp.get("target_org_id"), "imp.target_org_id"),
                target_role=_role(imp.get("target_role"), "imp.target_role"),
                expires_at=_timestamp(imp.get("exp"), "imp.exp"),
            )
        except ValueError as e:
            raise InvalidSessionToken(str(e)) from None

    return SessionContext(
        identity=identity,
        token_expiry=_timestamp(claims["exp"], "exp"),
        overlay=overlay,
    )


def resolve_org_scope(token: str, settings: Settings | None = None) -> SessionContext:
    """Decode a bearer token into the session used for the whole request."""
    return session_from_claims(decode_claims(token, settings))
