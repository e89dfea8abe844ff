from __future__ import annotations

from typing import Callable, Optional, Protocol

from portal.auth.models import FederatedCredential, FederatedSignIn, ProviderKind, Session

SessionListener = Callable[[Optional[Session]], None]
Unsubscribe = Callable[[], None]


class IdentityProvider(Protocol):
    """
    Async identity provider interface.

    Implementations own the current session and notify subscribers on every change
    (sign-in, sign-up, sign-out). Failures are raised as `ProviderError`.
    """

    async def create_account(self, email: str, password: str) -> Session:
        """Create an identity and sign it in."""

    async def authenticate(self, email: str, password: str) -> Session:
        """Sign in with email and password."""

    async def authenticate_federated(self, credential: FederatedCredential) -> FederatedSignIn:
        """Sign in with a credential obtained from a federated consent flow."""

    async def deauthenticate(self) -> None:
        """Clear the current session."""

    def current_session(self) -> Optional[Session]:
        """Return the cached current session. No I/O."""

    def subscribe(self, listener: SessionListener) -> Unsubscribe:
        """
        Register a session-change listener.

        The listener is called with the current session right away and then on
        every change. Returns a callable that removes the listener.
        """

    async def request_email_verification(self) -> None:
        """Send a verification email to the current user."""

    async def check_email_verified(self) -> bool:
        """Refresh the current user from the provider and return its verified flag."""

    def close(self) -> None:
        """Release transport resources. Called once when the owning coordinator closes."""


class ConsentFlow(Protocol):
    """
    Interactive step of a federated sign-in.

    Raises `ProviderError(POPUP_CLOSED_BY_USER)` when the user dismisses the flow.
    """

    async def obtain_credential(self, kind: ProviderKind) -> FederatedCredential:
        """Run the consent flow and return the provider credential."""
