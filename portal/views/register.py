from __future__ import annotations

import logging
from typing import Dict, Optional

from pydantic import ValidationError

from portal.auth.coordinator import AuthCoordinator
from portal.auth.errors import IdentityError, IdentityErrorCode
from portal.views.forms import RegisterForm, form_errors

logger = logging.getLogger(__name__)

PENDING_VERIFICATION_ROUTE = "/pending-verification"
REDIRECT_DELAY_SECONDS = 1.5
SUCCESS_MESSAGE = "Registration successful! Redirecting to email verification..."

REGISTER_MESSAGES: Dict[IdentityErrorCode, str] = {
    IdentityErrorCode.DUPLICATE_EMAIL: "This email is already registered. Please use a different email or log in.",
    IdentityErrorCode.WEAK_PASSWORD: "Password should be at least 6 characters long.",
    IdentityErrorCode.INVALID_EMAIL: "Please enter a valid email address.",
}
DEFAULT_REGISTER_MESSAGE = "An error occurred during registration. Please try again."


class RegisterView:
    def __init__(self, coordinator: AuthCoordinator) -> None:
        self._coordinator = coordinator
        self.loading = False
        self.error_message = ""
        self.success_message = ""
        self.field_errors: Dict[str, str] = {}
        self.error: Optional[IdentityError] = None
        self.next_route: Optional[str] = None

    async def submit(self, display_name: str, email: str, password: str, confirm_password: str) -> bool:
        try:
            form = RegisterForm(
                display_name=display_name, email=email, password=password, confirm_password=confirm_password
            )
        except ValidationError as e:
            self.field_errors = form_errors(e)
            return False

        self.loading = True
        self.error_message = ""
        self.success_message = ""
        self.field_errors = {}
        self.error = None
        try:
            await self._coordinator.sign_up(form.email, form.password, form.display_name)
        except IdentityError as e:
            logger.info("Registration failed: %s", e.code.value)
            self.error = e
            self.error_message = REGISTER_MESSAGES.get(e.code, DEFAULT_REGISTER_MESSAGE)
            return False
        finally:
            self.loading = False

        self.success_message = SUCCESS_MESSAGE
        self.next_route = PENDING_VERIFICATION_ROUTE
        return True
