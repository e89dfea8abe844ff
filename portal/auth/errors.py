"""
Error taxonomy for identity operations.

Provider clients raise `ProviderError` with a code from a small closed set. The
coordinator turns those into `ExpectedIdentityError` (user-correctable) or
`UnexpectedIdentityError` (anything else) carrying a fixed user-facing message.
Raw provider detail is kept on the exception for logs only.
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ProviderCode(str, enum.Enum):
    EMAIL_ALREADY_IN_USE = "email-already-in-use"
    WEAK_PASSWORD = "weak-password"
    INVALID_EMAIL = "invalid-email"
    USER_NOT_FOUND = "user-not-found"
    WRONG_PASSWORD = "wrong-password"
    TOO_MANY_REQUESTS = "too-many-requests"
    POPUP_CLOSED_BY_USER = "popup-closed-by-user"
    UNKNOWN = "unknown"


class IdentityErrorCode(str, enum.Enum):
    DUPLICATE_EMAIL = "duplicate_email"
    WEAK_PASSWORD = "weak_password"
    INVALID_EMAIL = "invalid_email"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    POPUP_CANCELLED = "popup_cancelled"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """Failure reported by the identity provider or a consent flow."""

    def __init__(self, code: ProviderCode, detail: str = "") -> None:
        super().__init__(f"{code.value}: {detail}" if detail else code.value)
        self.code = code
        self.detail = detail


class IdentityError(Exception):
    """Identity operation failure with a user-facing message."""

    def __init__(self, code: IdentityErrorCode, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail


class ExpectedIdentityError(IdentityError):
    """User-correctable failure (bad credentials, duplicate email, dismissed popup, ...)."""


class UnexpectedIdentityError(IdentityError):
    """Provider outage, network failure or anything outside the known codes."""


class NoActiveSession(Exception):
    """An operation that needs a signed-in user was called without one."""

    def __init__(self, message: str = "No user is currently signed in") -> None:
        super().__init__(message)


class StoreError(Exception):
    """Profile store read or write failure."""


_CODE_MAP: Dict[ProviderCode, IdentityErrorCode] = {
    ProviderCode.EMAIL_ALREADY_IN_USE: IdentityErrorCode.DUPLICATE_EMAIL,
    ProviderCode.WEAK_PASSWORD: IdentityErrorCode.WEAK_PASSWORD,
    ProviderCode.INVALID_EMAIL: IdentityErrorCode.INVALID_EMAIL,
    ProviderCode.USER_NOT_FOUND: IdentityErrorCode.INVALID_CREDENTIALS,
    ProviderCode.WRONG_PASSWORD: IdentityErrorCode.INVALID_CREDENTIALS,
    ProviderCode.TOO_MANY_REQUESTS: IdentityErrorCode.TOO_MANY_ATTEMPTS,
    ProviderCode.POPUP_CLOSED_BY_USER: IdentityErrorCode.POPUP_CANCELLED,
}

MESSAGES: Dict[IdentityErrorCode, str] = {
    IdentityErrorCode.DUPLICATE_EMAIL: "This email is already registered",
    IdentityErrorCode.INVALID_EMAIL: "Please enter a valid email address",
    IdentityErrorCode.WEAK_PASSWORD: "Password should be at least 6 characters",
    IdentityErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
    IdentityErrorCode.TOO_MANY_ATTEMPTS: "Too many failed attempts. Please try again later",
    IdentityErrorCode.POPUP_CANCELLED: "Sign in was cancelled",
    IdentityErrorCode.UNKNOWN: "An error occurred during authentication",
}


def classify(exc: BaseException, *, operation: str = "auth") -> IdentityError:
    """
    Translate a provider failure into an `IdentityError` and log it.

    Known provider codes become `ExpectedIdentityError` (logged at WARNING); everything
    else becomes `UnexpectedIdentityError` (logged at ERROR).
    """
    if isinstance(exc, IdentityError):
        return exc

    code = IdentityErrorCode.UNKNOWN
    if isinstance(exc, ProviderError):
        code = _CODE_MAP.get(exc.code, IdentityErrorCode.UNKNOWN)

    message = MESSAGES[code]
    detail = str(exc) or exc.__class__.__name__
    if code is IdentityErrorCode.UNKNOWN:
        logger.error("Auth error during %s: %s", operation, detail)
        return UnexpectedIdentityError(code, message, detail=detail)
    logger.warning("Auth warning during %s: %s", operation, detail)
    return ExpectedIdentityError(code, message, detail=detail)
