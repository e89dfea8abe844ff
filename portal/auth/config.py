from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from portal.auth.models import ProviderKind


@dataclass(frozen=True)
class FederatedClient:
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class AuthConfig:
    # Identity provider (Identity Toolkit REST API or the local emulator)
    identity_api_key: Optional[str]
    emulator_host: Optional[str]  # e.g. "127.0.0.1:9099"
    http_timeout_seconds: float

    # Federated sign-in clients (optional)
    google_client: Optional[FederatedClient]
    facebook_client: Optional[FederatedClient]

    # Client session configuration (web surface)
    public_base_url: Optional[str]  # Required for federated redirect
    session_secret: Optional[str]  # Required for client cookie signing
    client_idle_seconds: int
    cookie_secure: bool

    # Profiles + verification
    profile_collection: str
    verification_poll_seconds: float

    @property
    def identity_enabled(self) -> bool:
        """Identity calls need an API key, except against the emulator."""
        return bool(self.identity_api_key or self.emulator_host)

    def federated_client(self, kind: ProviderKind) -> Optional[FederatedClient]:
        if kind is ProviderKind.GOOGLE:
            return self.google_client
        if kind is ProviderKind.FACEBOOK:
            return self.facebook_client
        return None


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_float(name: str, default: float, *, minimum: float) -> float:
    try:
        value = float(_env(name) or default)
    except ValueError:
        value = default
    return max(minimum, value)


def _client(prefix: str) -> Optional[FederatedClient]:
    client_id = _env(f"{prefix}_CLIENT_ID")
    client_secret = _env(f"{prefix}_CLIENT_SECRET")
    if not (client_id and client_secret):
        return None
    return FederatedClient(client_id=client_id, client_secret=client_secret)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Federated sign-in for a provider is enabled when both <PROVIDER>_CLIENT_ID and
    <PROVIDER>_CLIENT_SECRET are set.
    """
    public_base_url = _env("AUTH_PUBLIC_BASE_URL")
    cookie_secure_env = (_env("AUTH_COOKIE_SECURE") or "").lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = True if (public_base_url or "").startswith("https://") else False

    idle = int(_env_float("AUTH_CLIENT_IDLE_SECONDS", 1800, minimum=60))  # 30m default

    return AuthConfig(
        identity_api_key=_env("IDENTITY_API_KEY"),
        emulator_host=_env("AUTH_EMULATOR_HOST"),
        http_timeout_seconds=_env_float("IDENTITY_HTTP_TIMEOUT_SECONDS", 10, minimum=1),
        google_client=_client("GOOGLE"),
        facebook_client=_client("FACEBOOK"),
        public_base_url=public_base_url,
        session_secret=_env("AUTH_SESSION_SECRET"),
        client_idle_seconds=idle,
        cookie_secure=cookie_secure,
        profile_collection=_env("PROFILE_COLLECTION") or "users",
        verification_poll_seconds=_env_float("AUTH_VERIFICATION_POLL_SECONDS", 3, minimum=0.5),
    )
