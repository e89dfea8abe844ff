from __future__ import annotations

import base64
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from portal.auth.config import AuthConfig, FederatedClient
from portal.auth.models import ProviderKind

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
FACEBOOK_AUTHORIZE_URL = "https://www.facebook.com/v19.0/dialog/oauth"
FACEBOOK_TOKEN_URL = "https://graph.facebook.com/v19.0/oauth/access_token"

_discovery_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


@dataclass(frozen=True)
class ProviderEndpoints:
    authorization_endpoint: str
    token_endpoint: str
    scope: str
    issuer: Optional[str] = None  # OIDC providers only
    jwks_uri: Optional[str] = None


def _get_discovery(discovery_url: str) -> Dict[str, Any]:
    """
    Fetch OIDC discovery document from provider.
    Caches result for 1 hour per discovery URL.
    """
    ts, cached = _discovery_cache.get(discovery_url, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < 3600:
        return cached
    r = requests.get(discovery_url, timeout=10)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid OIDC discovery document")
    _discovery_cache[discovery_url] = (now, data)
    return data


def _get_jwks(jwks_uri: str) -> Dict[str, Any]:
    """
    Fetch JWKS (JSON Web Key Set) from provider.
    Caches result for 1 hour per JWKS URI.
    """
    ts, cached = _jwks_cache.get(jwks_uri, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < 3600:
        return cached
    r = requests.get(jwks_uri, timeout=10)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid JWKS")
    _jwks_cache[jwks_uri] = (now, data)
    return data


def provider_endpoints(kind: ProviderKind) -> ProviderEndpoints:
    """Google is discovered via OIDC; Facebook uses fixed OAuth2 endpoints."""
    if kind is ProviderKind.GOOGLE:
        disc = _get_discovery(GOOGLE_DISCOVERY_URL)
        auth_endpoint = str(disc.get("authorization_endpoint") or "")
        token_endpoint = str(disc.get("token_endpoint") or "")
        if not auth_endpoint or not token_endpoint:
            raise ValueError("OIDC discovery missing authorization_endpoint/token_endpoint")
        return ProviderEndpoints(
            authorization_endpoint=auth_endpoint,
            token_endpoint=token_endpoint,
            scope="openid email profile",
            issuer=str(disc.get("issuer") or "") or None,
            jwks_uri=str(disc.get("jwks_uri") or "") or None,
        )
    return ProviderEndpoints(
        authorization_endpoint=FACEBOOK_AUTHORIZE_URL,
        token_endpoint=FACEBOOK_TOKEN_URL,
        scope="email public_profile",
    )


def _require_client(cfg: AuthConfig, kind: ProviderKind) -> FederatedClient:
    client = cfg.federated_client(kind)
    if client is None:
        raise ValueError(f"{kind.value} sign-in is not configured")
    return client


def build_authorize_url(
    cfg: AuthConfig,
    kind: ProviderKind,
    *,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    """
    Build the consent URL for a federated provider.
    Supports PKCE (Proof Key for Code Exchange) for security.
    """
    client = _require_client(cfg, kind)
    endpoints = provider_endpoints(kind)

    params = {
        "client_id": client.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": endpoints.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if endpoints.issuer:
        params["nonce"] = nonce
    return f"{endpoints.authorization_endpoint}?{urlencode(params)}"


def exchange_code_for_tokens(
    cfg: AuthConfig,
    kind: ProviderKind,
    *,
    redirect_uri: str,
    code: str,
    code_verifier: str,
) -> Dict[str, Any]:
    """
    Exchange authorization code for tokens (id_token and/or access_token).
    Uses PKCE code_verifier for security.
    """
    client = _require_client(cfg, kind)
    endpoints = provider_endpoints(kind)

    payload = {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    r = requests.post(endpoints.token_endpoint, data=payload, timeout=cfg.http_timeout_seconds)
    if r.status_code >= 400:
        # Avoid leaking sensitive info; include minimal context.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token response")
    return data


def validate_id_token(
    cfg: AuthConfig,
    kind: ProviderKind,
    *,
    id_token: str,
    expected_nonce: str,
) -> Dict[str, Any]:
    """
    Validate an ID token from an OIDC provider.
    - Verifies JWT signature using provider's public keys
    - Validates issuer, audience, nonce
    """
    client = _require_client(cfg, kind)
    endpoints = provider_endpoints(kind)
    if not endpoints.issuer or not endpoints.jwks_uri:
        raise ValueError("OIDC discovery missing issuer/jwks_uri")

    hdr = jwt.get_unverified_header(id_token)
    kid = str(hdr.get("kid") or "")
    if not kid:
        raise ValueError("ID token missing kid")

    jwks = _get_jwks(endpoints.jwks_uri)
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS keys")

    jwk = None
    for k in keys:
        if isinstance(k, dict) and str(k.get("kid") or "") == kid:
            jwk = k
            break
    if jwk is None:
        raise ValueError("Unknown signing key (kid)")

    key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))

    claims = jwt.decode(
        id_token,
        key=key,
        algorithms=["RS256"],
        audience=client.client_id,
        issuer=endpoints.issuer,
        options={
            "require": ["exp", "iat", "iss", "aud"],
        },
    )
    if not isinstance(claims, dict):
        raise ValueError("Invalid ID token claims")

    nonce = str(claims.get("nonce") or "")
    if not nonce or nonce != expected_nonce:
        raise ValueError("Nonce mismatch")
    return claims


def pkce_challenge(verifier: str) -> str:
    """S256 PKCE challenge: unpadded base64url of sha256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
