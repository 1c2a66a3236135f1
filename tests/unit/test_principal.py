from __future__ import annotations

from fastmcp.server.auth.auth import AccessToken
from mcp.server.auth.middleware.auth_context import AuthenticatedUser, auth_context_var

from tenant_store.principal import auth_context_principal, static_principal


def _run_as(token: AccessToken):
    return auth_context_var.set(AuthenticatedUser(token))


def test_no_authenticated_user_means_no_principal() -> None:
    assert auth_context_principal() is None


def test_email_claim_is_preferred_and_lowercased() -> None:
    token = AccessToken(token="t", client_id="client-a", scopes=[], claims={"email": "Alice@Example.com"})
    reset = _run_as(token)
    try:
        assert auth_context_principal() == "alice@example.com"
    finally:
        auth_context_var.reset(reset)
    assert auth_context_principal() is None


def test_client_id_is_used_without_email_claim() -> None:
    token = AccessToken(token="t", client_id="Service-Account", scopes=[], claims={})
    reset = _run_as(token)
    try:
        assert auth_context_principal() == "service-account"
    finally:
        auth_context_var.reset(reset)


def test_static_principal_normalizes() -> None:
    assert static_principal("  Bob@Example.com ")() == "bob@example.com"
    assert static_principal(None)() is None
