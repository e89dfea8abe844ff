"""
Pytest config.

The repo is usually run from a checkout, so pin the repo root on sys.path to make
`import portal` work regardless of how pytest was invoked.

Also provides in-memory fakes for the identity provider, the document store and the
consent flow so coordinator and view tests never touch the network.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import pytest  # noqa: E402

from portal.auth.config import load_auth_config  # noqa: E402
from portal.auth.coordinator import AuthCoordinator  # noqa: E402
from portal.auth.errors import ProviderCode, ProviderError, StoreError  # noqa: E402
from portal.auth.models import FederatedCredential, FederatedSignIn, ProviderKind, Session  # noqa: E402
from portal.profiles.config import load_store_config  # noqa: E402

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeIdentityProvider:
    """In-memory identity provider. Set `fail_next` to make the next call raise."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Tuple[str, Session]] = {}
        self.session: Optional[Session] = None
        self.listeners: List[Callable[[Optional[Session]], None]] = []
        self.fail_next: Optional[BaseException] = None
        self.federated: Optional[FederatedSignIn] = None
        self.verified = False
        self.verification_requests = 0
        self.verification_checks = 0
        self.closed = 0

    def add_account(self, email: str, password: str, **session_fields: Any) -> Session:
        uid = session_fields.pop("uid", f"uid-{len(self.accounts) + 1}")
        session = Session(uid=uid, email=email, **session_fields)
        self.accounts[email] = (password, session)
        return session

    def set_session(self, session: Optional[Session]) -> None:
        self.session = session
        for listener in list(self.listeners):
            listener(session)

    def _raise_pending(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def current_session(self) -> Optional[Session]:
        return self.session

    def subscribe(self, listener: Callable[[Optional[Session]], None]) -> Callable[[], None]:
        self.listeners.append(listener)
        listener(self.session)

        def _unsubscribe() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return _unsubscribe

    async def create_account(self, email: str, password: str) -> Session:
        self._raise_pending()
        if email in self.accounts:
            raise ProviderError(ProviderCode.EMAIL_ALREADY_IN_USE, "EMAIL_EXISTS")
        session = self.add_account(email, password, created_at=T0, last_sign_in_at=T0)
        self.set_session(session)
        return session

    async def authenticate(self, email: str, password: str) -> Session:
        self._raise_pending()
        account = self.accounts.get(email)
        if account is None:
            raise ProviderError(ProviderCode.USER_NOT_FOUND, "EMAIL_NOT_FOUND")
        if account[0] != password:
            raise ProviderError(ProviderCode.WRONG_PASSWORD, "INVALID_PASSWORD")
        self.set_session(account[1])
        return account[1]

    async def authenticate_federated(self, credential: FederatedCredential) -> FederatedSignIn:
        self._raise_pending()
        assert self.federated is not None, "set provider.federated first"
        self.set_session(self.federated.session)
        return self.federated

    async def deauthenticate(self) -> None:
        self._raise_pending()
        self.set_session(None)

    async def request_email_verification(self) -> None:
        self._raise_pending()
        self.verification_requests += 1

    async def check_email_verified(self) -> bool:
        self._raise_pending()
        self.verification_checks += 1
        return self.verified

    def close(self) -> None:
        self.closed += 1


class FakeDocumentStore:
    """Dict-backed document store with a write log."""

    def __init__(self) -> None:
        self.docs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self.reads = 0
        self.fail_reads = False
        self.fail_writes = False

    async def read_document(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        self.reads += 1
        if self.fail_reads:
            raise StoreError("read failed")
        doc = self.docs.get((collection, key))
        return dict(doc) if doc is not None else None

    async def merge_write_document(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.fail_writes:
            raise StoreError("write failed")
        self.writes.append((collection, key, dict(partial)))
        self.docs.setdefault((collection, key), {}).update(partial)

    async def ensure_schema(self) -> bool:
        return False

    def writes_for(self, key: str) -> List[Dict[str, Any]]:
        return [w for (_c, k, w) in self.writes if k == key]


class FakeConsent:
    """Consent flow that returns a fixed credential or raises."""

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.calls: List[ProviderKind] = []

    async def obtain_credential(self, kind: ProviderKind) -> FederatedCredential:
        self.calls.append(kind)
        if self.error is not None:
            raise self.error
        return FederatedCredential(kind=kind, id_token="fake-id-token")


class StateRecorder:
    """
    Subscribes to a coordinator's session and profile and records every publish.

    `violations` collects any tick where a profile is visible without a session of the
    same uid.
    """

    def __init__(self, coordinator: AuthCoordinator) -> None:
        self._coordinator = coordinator
        self.events: List[Tuple[str, Any]] = []
        self.violations: List[str] = []
        self._unsubs = [
            coordinator.session.subscribe(self._on_session),
            coordinator.profile.subscribe(self._on_profile),
        ]

    def _check(self) -> None:
        session = self._coordinator.session.value
        profile = self._coordinator.profile.value
        if profile is not None and (session is None or session.uid != profile.uid):
            self.violations.append(f"profile {profile.uid} visible with session {session}")

    def _on_session(self, session: Optional[Session]) -> None:
        self.events.append(("session", session.uid if session else None))
        self._check()

    def _on_profile(self, profile: Any) -> None:
        self.events.append(("profile", profile.uid if profile else None))
        self._check()

    def close(self) -> None:
        for unsub in self._unsubs:
            unsub()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def make_coordinator(provider: FakeIdentityProvider, store: FakeDocumentStore):
    def _make(**kwargs: Any) -> AuthCoordinator:
        kwargs.setdefault("clock", lambda: NOW)
        return AuthCoordinator(provider, store, **kwargs)

    return _make


@pytest.fixture(autouse=True)
def _clear_config_caches():
    load_auth_config.cache_clear()
    load_store_config.cache_clear()
    yield
    load_auth_config.cache_clear()
    load_store_config.cache_clear()


def later(dt: datetime, seconds: int = 60) -> datetime:
    return dt + timedelta(seconds=seconds)
