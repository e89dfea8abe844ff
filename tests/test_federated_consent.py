from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from portal.auth.config import AuthConfig, FederatedClient
from portal.auth.consent import AuthorizationCodeConsent
from portal.auth.errors import ProviderCode, ProviderError
from portal.auth.models import ProviderKind
from portal.auth.oidc import build_authorize_url, pkce_challenge

_DISCOVERY = {
    "issuer": "https://accounts.google.com",
    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_endpoint": "https://oauth2.googleapis.com/token",
    "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
}


def _cfg(**overrides: Any) -> AuthConfig:
    values = {
        "identity_api_key": "test-key",
        "emulator_host": None,
        "http_timeout_seconds": 5.0,
        "google_client": FederatedClient(client_id="gid", client_secret="gsecret"),
        "facebook_client": FederatedClient(client_id="fid", client_secret="fsecret"),
        "public_base_url": "https://portal.example.com",
        "session_secret": "s",
        "client_idle_seconds": 1800,
        "cookie_secure": True,
        "profile_collection": "users",
        "verification_poll_seconds": 3.0,
    }
    values.update(overrides)
    return AuthConfig(**values)


def test_pkce_challenge_matches_rfc7636_example() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_google_authorize_url_includes_nonce() -> None:
    with patch("portal.auth.oidc._get_discovery", return_value=_DISCOVERY):
        url = build_authorize_url(
            _cfg(),
            ProviderKind.GOOGLE,
            redirect_uri="https://portal.example.com/api/auth/callback/google",
            state="st",
            nonce="nn",
            code_challenge="cc",
        )
    parsed = urlparse(url)
    q = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert q["client_id"] == ["gid"]
    assert q["nonce"] == ["nn"]
    assert q["code_challenge_method"] == ["S256"]
    assert q["scope"] == ["openid email profile"]


def test_facebook_authorize_url_has_no_nonce() -> None:
    url = build_authorize_url(
        _cfg(),
        ProviderKind.FACEBOOK,
        redirect_uri="https://portal.example.com/api/auth/callback/facebook",
        state="st",
        nonce="nn",
        code_challenge="cc",
    )
    q = parse_qs(urlparse(url).query)
    assert "nonce" not in q
    assert q["scope"] == ["email public_profile"]


def test_authorize_url_requires_configured_client() -> None:
    with pytest.raises(ValueError):
        build_authorize_url(
            _cfg(facebook_client=None),
            ProviderKind.FACEBOOK,
            redirect_uri="https://portal.example.com/cb",
            state="st",
            nonce="nn",
            code_challenge="cc",
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("error", ["access_denied", "user_cancelled_login"])
async def test_consent_cancel_maps_to_popup_closed(error: str) -> None:
    consent = AuthorizationCodeConsent(_cfg(), redirect_uri="https://portal.example.com/cb", error=error)
    with pytest.raises(ProviderError) as ei:
        await consent.obtain_credential(ProviderKind.GOOGLE)
    assert ei.value.code is ProviderCode.POPUP_CLOSED_BY_USER


@pytest.mark.asyncio
async def test_consent_other_error_is_unknown() -> None:
    consent = AuthorizationCodeConsent(_cfg(), redirect_uri="https://portal.example.com/cb", error="server_error")
    with pytest.raises(ProviderError) as ei:
        await consent.obtain_credential(ProviderKind.GOOGLE)
    assert ei.value.code is ProviderCode.UNKNOWN


@pytest.mark.asyncio
async def test_google_consent_validates_id_token() -> None:
    consent = AuthorizationCodeConsent(
        _cfg(), redirect_uri="https://portal.example.com/cb", code="abc", code_verifier="v", nonce="nn"
    )
    with patch("portal.auth.consent.exchange_code_for_tokens", return_value={"id_token": "jwt"}) as exchange, patch(
        "portal.auth.consent.validate_id_token", return_value={"sub": "1"}
    ) as validate:
        cred = await consent.obtain_credential(ProviderKind.GOOGLE)
    assert cred.id_token == "jwt"
    assert exchange.call_args.kwargs["code_verifier"] == "v"
    assert validate.call_args.kwargs["expected_nonce"] == "nn"


@pytest.mark.asyncio
async def test_google_consent_nonce_mismatch_is_unknown() -> None:
    consent = AuthorizationCodeConsent(_cfg(), redirect_uri="https://portal.example.com/cb", code="abc", nonce="nn")
    with patch("portal.auth.consent.exchange_code_for_tokens", return_value={"id_token": "jwt"}), patch(
        "portal.auth.consent.validate_id_token", side_effect=ValueError("Nonce mismatch")
    ):
        with pytest.raises(ProviderError) as ei:
            await consent.obtain_credential(ProviderKind.GOOGLE)
    assert ei.value.code is ProviderCode.UNKNOWN


@pytest.mark.asyncio
async def test_facebook_consent_uses_access_token() -> None:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"access_token": "fb-token", "token_type": "bearer"}
    consent = AuthorizationCodeConsent(_cfg(), redirect_uri="https://portal.example.com/cb", code="abc")
    with patch("portal.auth.oidc.requests.post", return_value=response) as post:
        cred = await consent.obtain_credential(ProviderKind.FACEBOOK)
    assert cred.access_token == "fb-token"
    assert cred.id_token is None
    assert post.call_args.kwargs["data"]["client_secret"] == "fsecret"


@pytest.mark.asyncio
async def test_token_exchange_failure_is_unknown() -> None:
    response = MagicMock()
    response.status_code = 400
    consent = AuthorizationCodeConsent(_cfg(), redirect_uri="https://portal.example.com/cb", code="abc")
    with patch("portal.auth.oidc.requests.post", return_value=response):
        with pytest.raises(ProviderError) as ei:
            await consent.obtain_credential(ProviderKind.FACEBOOK)
    assert ei.value.code is ProviderCode.UNKNOWN
