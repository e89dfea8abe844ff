from __future__ import annotations

import asyncio
from typing import Dict, List
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from conftest import NOW, T0, FakeIdentityProvider
from fastapi.testclient import TestClient

import portal.api.app as api_app
from portal.api.registry import ClientRegistry
from portal.auth.coordinator import AuthCoordinator
from portal.auth.models import FederatedSignIn, Session

SECRET = "test-secret-key-for-testing-purposes-only"

_DISCOVERY = {
    "issuer": "https://accounts.google.com",
    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_endpoint": "https://oauth2.googleapis.com/token",
    "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
}


@pytest.fixture
def api(monkeypatch, store):
    """TestClient wired to per-client coordinators over fake providers sharing one account table."""
    monkeypatch.setenv("AUTH_SESSION_SECRET", SECRET)
    monkeypatch.setenv("AUTH_PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.delenv("AUTH_COOKIE_SECURE", raising=False)
    monkeypatch.setenv("PROFILE_STORE", "local")
    monkeypatch.delenv("DB_AUTO_MIGRATE", raising=False)

    accounts: Dict = {}
    providers: List[FakeIdentityProvider] = []

    def factory() -> AuthCoordinator:
        p = FakeIdentityProvider()
        p.accounts = accounts
        providers.append(p)
        return AuthCoordinator(p, store, clock=lambda: NOW)

    api_app.set_registry(ClientRegistry(factory, idle_seconds=1800))
    with TestClient(api_app.app) as c:
        yield c, providers
    api_app.set_registry(None)


def _register(c: TestClient, email: str = "alice@example.com"):
    return c.post(
        "/api/auth/register",
        json={"displayName": "Alice", "email": email, "password": "secret1", "confirmPassword": "secret1"},
    )


def test_healthz(api) -> None:
    c, _providers = api
    assert c.get("/healthz").json() == {"ok": True}


def test_me_requires_session(api) -> None:
    c, _providers = api
    r = c.get("/api/auth/me")
    assert r.status_code == 401
    assert "portal_client" in r.headers.get("set-cookie", "")


def test_register_then_me(api, store) -> None:
    c, _providers = api
    r = _register(c)
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["next"] == "/pending-verification"
    assert body["redirectAfterMs"] == 1500

    me = c.get("/api/auth/me")
    assert me.status_code == 200
    data = me.json()
    assert data["session"]["email"] == "alice@example.com"
    assert data["profile"]["displayName"] == "Alice"
    assert data["profile"]["role"] == "user"
    assert data["profile"]["createdAt"] == NOW.isoformat()
    assert data["isAdmin"] is False


def test_register_validation_errors(api) -> None:
    c, _providers = api
    r = c.post(
        "/api/auth/register",
        json={"displayName": "Alice", "email": "alice@example.com", "password": "secret1", "confirmPassword": "x"},
    )
    assert r.status_code == 400
    assert r.json()["fieldErrors"] == {"form": "Passwords do not match"}


def test_register_duplicate_email(api) -> None:
    c, _providers = api
    assert _register(c).status_code == 200
    c.post("/api/auth/logout")
    r = _register(c)
    assert r.status_code == 400
    assert r.json()["error"].startswith("This email is already registered")


def test_login_wrong_password(api) -> None:
    c, _providers = api
    _register(c)
    c.post("/api/auth/logout")
    r = c.post("/api/auth/login", json={"email": "alice@example.com", "password": "not-it!"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid email or password."
    assert c.get("/api/auth/me").status_code == 401


def test_login_unexpected_failure_is_500(api) -> None:
    c, providers = api
    c.get("/api/auth/me")
    providers[0].fail_next = RuntimeError("identity backend down")
    r = c.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret1"})
    assert r.status_code == 500
    assert r.json()["error"] == "An error occurred. Please try again later."
    assert "backend down" not in r.text


def test_clients_are_isolated(api) -> None:
    c, providers = api
    _register(c)
    token = c.cookies.get("portal_client")
    assert token

    # A browser without the cookie gets its own coordinator and no session.
    c.cookies.clear()
    assert c.get("/api/auth/me").status_code == 401
    assert len(providers) == 2

    r = c.get("/api/auth/me", headers={"cookie": f"portal_client={token}"})
    assert r.status_code == 200


def test_logout(api) -> None:
    c, _providers = api
    _register(c)
    r = c.post("/api/auth/logout")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "next": "/login"}
    assert c.get("/api/auth/me").status_code == 401


def test_update_profile(api, store) -> None:
    c, _providers = api
    assert c.patch("/api/auth/profile", json={"displayName": "Nobody"}).status_code == 401

    _register(c)
    c.get("/api/auth/me")
    r = c.patch("/api/auth/profile", json={"photoURL": "https://img.example.com/a.png"})
    assert r.status_code == 200
    assert r.json()["profile"]["photoURL"] == "https://img.example.com/a.png"
    assert c.patch("/api/auth/profile", json={}).status_code == 400


def test_verification_flow(api) -> None:
    c, providers = api
    assert c.get("/api/auth/verification").status_code == 401

    _register(c)
    r = c.get("/api/auth/verification")
    assert r.status_code == 200
    assert r.json()["email"] == "alice@example.com"
    assert r.json()["verified"] is False

    r = c.post("/api/auth/verification/resend")
    assert r.status_code == 200
    assert r.json()["message"].startswith("Verification email sent")
    assert providers[0].verification_requests == 1

    assert c.delete("/api/auth/verification").json() == {"ok": True}


def test_federated_login_unknown_or_disabled_provider(api, monkeypatch) -> None:
    c, _providers = api
    monkeypatch.delenv("FACEBOOK_CLIENT_ID", raising=False)
    assert c.get("/api/auth/login/github", follow_redirects=False).status_code == 404
    assert c.get("/api/auth/login/facebook", follow_redirects=False).status_code == 403


def _start_google(c: TestClient, monkeypatch) -> str:
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "gid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "gsecret")
    api_app.load_auth_config.cache_clear()
    with patch("portal.auth.oidc._get_discovery", return_value=_DISCOVERY):
        r = c.get("/api/auth/login/google", follow_redirects=False)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    q = parse_qs(urlparse(location).query)
    assert q["redirect_uri"] == ["http://testserver/api/auth/callback/google"]
    return q["state"][0]


def test_federated_discovery_runs_off_the_event_loop(api, monkeypatch) -> None:
    c, _providers = api
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "gid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "gsecret")
    api_app.load_auth_config.cache_clear()
    loops = []

    def _discovery(*_args, **_kwargs):
        try:
            loops.append(asyncio.get_running_loop())
        except RuntimeError:
            loops.append(None)
        return _DISCOVERY

    with patch("portal.auth.oidc._get_discovery", side_effect=_discovery):
        r = c.get("/api/auth/login/google", follow_redirects=False)
    assert r.status_code == 302
    assert loops == [None]


def test_federated_next_path_backslash_is_not_an_open_redirect(api, monkeypatch) -> None:
    c, _providers = api
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "gid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "gsecret")
    api_app.load_auth_config.cache_clear()
    with patch("portal.auth.oidc._get_discovery", return_value=_DISCOVERY):
        r = c.get("/api/auth/login/google", params={"next": "/\\evil.example.com"}, follow_redirects=False)
    assert r.status_code == 302
    next_cookies = [h for h in r.headers.get_list("set-cookie") if h.startswith("portal_oauth_next=")]
    assert len(next_cookies) == 1
    value = next_cookies[0].split(";", 1)[0].split("=", 1)[1]
    assert value.strip('"') == "/"


def test_federated_callback_cancelled(api, monkeypatch) -> None:
    c, _providers = api
    _start_google(c, monkeypatch)
    r = c.get("/api/auth/callback/google", params={"error": "access_denied"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login?error=Sign+in+was+cancelled"


def test_federated_callback_rejects_bad_state(api, monkeypatch) -> None:
    c, _providers = api
    _start_google(c, monkeypatch)
    r = c.get("/api/auth/callback/google", params={"code": "abc", "state": "forged"}, follow_redirects=False)
    assert r.status_code == 400


def test_federated_callback_signs_in_first_time_user(api, monkeypatch, store) -> None:
    c, providers = api
    state = _start_google(c, monkeypatch)
    session = Session(uid="g-1", email="carol@example.com", display_name="Carol", created_at=T0, last_sign_in_at=T0)
    providers[0].federated = FederatedSignIn(session=session)

    with patch("portal.auth.consent.exchange_code_for_tokens", return_value={"id_token": "jwt"}), patch(
        "portal.auth.consent.validate_id_token", return_value={"sub": "g-1"}
    ):
        r = c.get("/api/auth/callback/google", params={"code": "abc", "state": state}, follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/dashboard"
    me = c.get("/api/auth/me").json()
    assert me["profile"]["displayName"] == "Carol"
    assert len([w for w in store.writes_for("g-1") if "role" in w]) == 1


@pytest.mark.asyncio
async def test_idle_clients_are_evicted_and_their_providers_closed(store) -> None:
    providers: List[FakeIdentityProvider] = []

    def factory() -> AuthCoordinator:
        p = FakeIdentityProvider()
        providers.append(p)
        return AuthCoordinator(p, store, clock=lambda: NOW)

    registry = ClientRegistry(factory, idle_seconds=60)
    ctx = await registry.get_or_create("client-1")
    assert len(registry) == 1

    assert await registry.evict_idle(now=ctx.last_seen + 61) == 1
    assert len(registry) == 0
    assert providers[0].closed == 1
    assert providers[0].listeners == []
