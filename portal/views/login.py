from __future__ import annotations

import logging
from typing import Dict, Optional

from pydantic import ValidationError

from portal.auth.coordinator import AuthCoordinator
from portal.auth.errors import IdentityError, IdentityErrorCode
from portal.auth.models import ProviderKind
from portal.auth.provider import ConsentFlow
from portal.views.forms import LoginForm, form_errors

logger = logging.getLogger(__name__)

DASHBOARD_ROUTE = "/dashboard"

LOGIN_MESSAGES: Dict[IdentityErrorCode, str] = {
    IdentityErrorCode.INVALID_CREDENTIALS: "Invalid email or password.",
    IdentityErrorCode.TOO_MANY_ATTEMPTS: "Too many failed attempts. Please try again later.",
}
DEFAULT_LOGIN_MESSAGE = "An error occurred. Please try again later."


class LoginView:
    """Email/password and social login page."""

    def __init__(self, coordinator: AuthCoordinator) -> None:
        self._coordinator = coordinator
        self.loading = False
        self.error_message = ""
        self.field_errors: Dict[str, str] = {}
        self.error: Optional[IdentityError] = None
        self.next_route: Optional[str] = None

    def _reset(self) -> None:
        self.loading = True
        self.error_message = ""
        self.field_errors = {}
        self.error = None

    async def submit(self, email: str, password: str) -> bool:
        try:
            form = LoginForm(email=email, password=password)
        except ValidationError as e:
            self.field_errors = form_errors(e)
            return False

        self._reset()
        try:
            await self._coordinator.sign_in(form.email, form.password)
        except IdentityError as e:
            logger.info("Login failed: %s", e.code.value)
            self.error = e
            self.error_message = LOGIN_MESSAGES.get(e.code, DEFAULT_LOGIN_MESSAGE)
            return False
        finally:
            self.loading = False
        self.next_route = DASHBOARD_ROUTE
        return True

    async def login_with_provider(self, kind: ProviderKind, flow: Optional[ConsentFlow] = None) -> bool:
        self._reset()
        try:
            await self._coordinator.sign_in_with_federated_provider(kind, flow)
        except IdentityError as e:
            logger.info("%s login failed: %s", kind.value, e.code.value)
            self.error = e
            self.error_message = e.message or f"Failed to sign in with {kind.value.title()}"
            return False
        finally:
            self.loading = False
        self.next_route = DASHBOARD_ROUTE
        return True

    async def login_with_google(self, flow: Optional[ConsentFlow] = None) -> bool:
        return await self.login_with_provider(ProviderKind.GOOGLE, flow)

    async def login_with_facebook(self, flow: Optional[ConsentFlow] = None) -> bool:
        return await self.login_with_provider(ProviderKind.FACEBOOK, flow)
