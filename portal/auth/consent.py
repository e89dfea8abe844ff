"""
Consent flows for federated sign-in.

The browser leaves the app for the provider's consent screen and comes back to the
callback route with either an authorization code or an error. The callback builds an
`AuthorizationCodeConsent` from what came back, and the coordinator runs it as the
interactive step of `sign_in_with_federated_provider`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import jwt
import requests

from portal.auth.config import AuthConfig
from portal.auth.errors import ProviderCode, ProviderError
from portal.auth.models import FederatedCredential, ProviderKind
from portal.auth.oidc import exchange_code_for_tokens, validate_id_token

logger = logging.getLogger(__name__)

# OAuth2 error values that mean the user closed or declined the consent screen.
_CANCEL_ERRORS = ("access_denied", "user_denied", "user_cancelled_login", "user_cancelled_authorize")


@dataclass(frozen=True)
class AuthorizationCodeConsent:
    cfg: AuthConfig
    redirect_uri: str
    code: Optional[str] = field(default=None, repr=False)
    code_verifier: str = field(default="", repr=False)
    nonce: str = field(default="", repr=False)
    error: Optional[str] = None

    async def obtain_credential(self, kind: ProviderKind) -> FederatedCredential:
        if self.error:
            if self.error in _CANCEL_ERRORS:
                raise ProviderError(ProviderCode.POPUP_CLOSED_BY_USER, self.error)
            raise ProviderError(ProviderCode.UNKNOWN, f"consent error: {self.error}")
        if not self.code:
            raise ProviderError(ProviderCode.POPUP_CLOSED_BY_USER, "no authorization code")
        try:
            return await asyncio.to_thread(self._exchange, kind)
        except (ValueError, requests.RequestException, jwt.PyJWTError) as e:
            raise ProviderError(ProviderCode.UNKNOWN, f"{kind.value} consent failed: {e}") from e

    def _exchange(self, kind: ProviderKind) -> FederatedCredential:
        tokens = exchange_code_for_tokens(
            self.cfg, kind, redirect_uri=self.redirect_uri, code=self.code or "", code_verifier=self.code_verifier
        )
        id_token = str(tokens.get("id_token") or "").strip()
        if kind is ProviderKind.GOOGLE:
            if not id_token:
                raise ValueError("Missing id_token in token response")
            validate_id_token(self.cfg, kind, id_token=id_token, expected_nonce=self.nonce)
            return FederatedCredential(kind=kind, id_token=id_token)
        access_token = str(tokens.get("access_token") or "").strip()
        if not access_token:
            raise ValueError("Missing access_token in token response")
        logger.debug("Obtained %s access token", kind.value)
        return FederatedCredential(kind=kind, access_token=access_token)
