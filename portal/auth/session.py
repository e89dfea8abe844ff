from __future__ import annotations

import secrets
from typing import Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from portal.auth.config import AuthConfig

CLIENT_SALT = "portal-client-v1"


def client_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-portal_client" if cfg.cookie_secure else "portal_client"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=CLIENT_SALT)


def new_client_id() -> str:
    return secrets.token_urlsafe(24)


def encode_client_id(cfg: AuthConfig, client_id: str) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(client_id)


def decode_client_id(cfg: AuthConfig, value: str | None) -> Optional[str]:
    """Return the client id from a signed cookie, or None if missing, tampered or expired."""
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        raw = s.loads(value, max_age=cfg.client_idle_seconds)
    except (BadSignature, BadTimeSignature):
        return None
    return str(raw) if isinstance(raw, str) and raw else None


def client_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": client_cookie_name(cfg),
        "value": value,
        "max_age": cfg.client_idle_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
