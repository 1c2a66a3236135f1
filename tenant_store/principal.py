"""Current-principal providers and the default clock."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from mcp.server.auth.middleware.auth_context import AuthenticatedUser, auth_context_var

PrincipalProvider = Callable[[], "str | None"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def auth_context_principal() -> str | None:
    """Principal of the authenticated MCP request running in this context, if any.

    Prefers an ``email`` claim on the access token and falls back to its
    ``client_id``.
    """

    try:
        user = auth_context_var.get()
    except LookupError:  # pragma: no cover
        user = None
    if not isinstance(user, AuthenticatedUser):
        return None
    token = user.access_token
    claims = getattr(token, "claims", None) or {}
    email = claims.get("email") if isinstance(claims, dict) else None
    if email:
        return str(email).strip().lower()
    if token.client_id:
        return str(token.client_id).strip().lower()
    return None


def static_principal(email: str | None) -> PrincipalProvider:
    normalized = email.strip().lower() if email else None

    def provider() -> str | None:
        return normalized

    return provider
