"""
Identity Toolkit REST client.

Implements `IdentityProvider` against the hosted Identity Toolkit API (or the local
Auth emulator when AUTH_EMULATOR_HOST is set). Blocking HTTP calls run in a worker
thread so the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from portal.auth.config import AuthConfig
from portal.auth.errors import ProviderCode, ProviderError
from portal.auth.models import FederatedCredential, FederatedSignIn, Session
from portal.auth.provider import SessionListener, Unsubscribe

logger = logging.getLogger(__name__)

HOSTED_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
EMULATOR_API_KEY = "emulator-api-key"

# Error message prefixes returned by the REST API, mapped to the closed code set.
_REST_ERRORS: Dict[str, ProviderCode] = {
    "EMAIL_EXISTS": ProviderCode.EMAIL_ALREADY_IN_USE,
    "WEAK_PASSWORD": ProviderCode.WEAK_PASSWORD,
    "INVALID_EMAIL": ProviderCode.INVALID_EMAIL,
    "MISSING_EMAIL": ProviderCode.INVALID_EMAIL,
    "EMAIL_NOT_FOUND": ProviderCode.USER_NOT_FOUND,
    "USER_NOT_FOUND": ProviderCode.USER_NOT_FOUND,
    "INVALID_PASSWORD": ProviderCode.WRONG_PASSWORD,
    "MISSING_PASSWORD": ProviderCode.WRONG_PASSWORD,
    "INVALID_LOGIN_CREDENTIALS": ProviderCode.WRONG_PASSWORD,
    "TOO_MANY_ATTEMPTS_TRY_LATER": ProviderCode.TOO_MANY_REQUESTS,
}


def rest_error_code(message: str) -> ProviderCode:
    """Map a REST error message like `WEAK_PASSWORD : Password should be ...` to a code."""
    key = (message or "").split(":", 1)[0].strip().split(" ", 1)[0].strip()
    return _REST_ERRORS.get(key, ProviderCode.UNKNOWN)


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def session_from_account(account: Dict[str, Any], *, id_token: str, refresh_token: Optional[str]) -> Session:
    """Build a Session from an `accounts:lookup` user record."""
    return Session(
        uid=str(account.get("localId") or ""),
        email=str(account.get("email") or "") or None,
        display_name=str(account.get("displayName") or "") or None,
        photo_url=str(account.get("photoUrl") or "") or None,
        email_verified=bool(account.get("emailVerified")),
        created_at=_ms_to_datetime(account.get("createdAt")),
        last_sign_in_at=_ms_to_datetime(account.get("lastLoginAt")),
        id_token=id_token,
        refresh_token=refresh_token,
    )


class IdentityToolkitProvider:
    """
    Identity provider backed by the Identity Toolkit REST API.

    Notes:
    - The current session lives in-process; sign-out is local (the REST API has no
      sign-out endpoint).
    - Listeners are notified synchronously on every session change.
    """

    def __init__(self, cfg: AuthConfig, *, http: Optional[requests.Session] = None) -> None:
        if not cfg.identity_enabled:
            raise ValueError("Identity provider not configured (IDENTITY_API_KEY or AUTH_EMULATOR_HOST)")
        self._timeout = cfg.http_timeout_seconds
        self._api_key = cfg.identity_api_key or EMULATOR_API_KEY
        if cfg.emulator_host:
            self._base_url = f"http://{cfg.emulator_host}/identitytoolkit.googleapis.com/v1"
        else:
            self._base_url = HOSTED_BASE_URL
        self._owns_http = http is None
        self._http = http or requests.Session()
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []

    # ---- transport ----

    def _post_sync(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/accounts:{method}"
        try:
            r = self._http.post(url, params={"key": self._api_key}, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise ProviderError(ProviderCode.UNKNOWN, f"{method}: {e.__class__.__name__}") from e
        try:
            data = r.json()
        except ValueError:
            data = None
        if r.status_code >= 400:
            message = ""
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = str(data["error"].get("message") or "")
            raise ProviderError(rest_error_code(message), f"{method} failed (status={r.status_code}) {message}".strip())
        if not isinstance(data, dict):
            raise ProviderError(ProviderCode.UNKNOWN, f"{method}: invalid response")
        return data

    async def _post(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post_sync, method, payload)

    async def _lookup(self, id_token: str) -> Dict[str, Any]:
        data = await self._post("lookup", {"idToken": id_token})
        users = data.get("users")
        if not isinstance(users, list) or not users or not isinstance(users[0], dict):
            raise ProviderError(ProviderCode.USER_NOT_FOUND, "lookup returned no user")
        return users[0]

    async def _session_from_tokens(self, data: Dict[str, Any]) -> Session:
        id_token = str(data.get("idToken") or "")
        if not id_token:
            raise ProviderError(ProviderCode.UNKNOWN, "response missing idToken")
        account = await self._lookup(id_token)
        return session_from_account(account, id_token=id_token, refresh_token=data.get("refreshToken"))

    # ---- session state ----

    def _set_session(self, session: Optional[Session]) -> None:
        self._session = session
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener failed")

    def current_session(self) -> Optional[Session]:
        return self._session

    def subscribe(self, listener: SessionListener) -> Unsubscribe:
        self._listeners.append(listener)
        listener(self._session)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _require_token(self) -> str:
        if self._session is None or not self._session.id_token:
            raise ProviderError(ProviderCode.USER_NOT_FOUND, "no current user")
        return self._session.id_token

    # ---- operations ----

    async def create_account(self, email: str, password: str) -> Session:
        data = await self._post("signUp", {"email": email, "password": password, "returnSecureToken": True})
        session = await self._session_from_tokens(data)
        self._set_session(session)
        return session

    async def authenticate(self, email: str, password: str) -> Session:
        data = await self._post(
            "signInWithPassword", {"email": email, "password": password, "returnSecureToken": True}
        )
        session = await self._session_from_tokens(data)
        self._set_session(session)
        return session

    async def authenticate_federated(self, credential: FederatedCredential) -> FederatedSignIn:
        if credential.id_token:
            post_body = urlencode({"id_token": credential.id_token, "providerId": credential.kind.provider_id})
        elif credential.access_token:
            post_body = urlencode({"access_token": credential.access_token, "providerId": credential.kind.provider_id})
        else:
            raise ProviderError(ProviderCode.UNKNOWN, "federated credential has no token")
        data = await self._post(
            "signInWithIdp",
            {
                "postBody": post_body,
                "requestUri": "http://localhost",
                "returnSecureToken": True,
                "returnIdpCredential": True,
            },
        )
        session = await self._session_from_tokens(data)
        is_new = data.get("isNewUser")
        self._set_session(session)
        return FederatedSignIn(session=session, is_new_user=bool(is_new) if is_new is not None else None)

    async def deauthenticate(self) -> None:
        self._set_session(None)

    async def request_email_verification(self) -> None:
        await self._post("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": self._require_token()})

    async def check_email_verified(self) -> bool:
        token = self._require_token()
        account = await self._lookup(token)
        current = self._session
        refreshed = session_from_account(
            account, id_token=token, refresh_token=current.refresh_token if current else None
        )
        # Reloading the user is not a session change; listeners are not notified.
        if current is not None and current.uid == refreshed.uid:
            self._session = refreshed
        return refreshed.email_verified

    def close(self) -> None:
        self._listeners.clear()
        if self._owns_http:
            self._http.close()
