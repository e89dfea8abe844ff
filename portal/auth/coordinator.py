"""
Session/profile coordinator.

Single authoritative source of "who is signed in and what we know about them" for
one client. It observes the identity provider's session, enriches it with the stored
profile document, republishes both as observable state and owns the operations that
change them.

Session changes are published synchronously from the provider's listener: the
profile is cleared first whenever it no longer matches the session. Only the
enrichment (read profile, publish profile, write last-login) is queued and drained
by one task. An enrichment whose session has since been replaced is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from portal.auth.errors import (
    NoActiveSession,
    ProviderCode,
    ProviderError,
    StoreError,
    classify,
)
from portal.auth.models import DEFAULT_ROLE, FederatedSignIn, Profile, ProviderKind, Session
from portal.auth.observable import StateValue
from portal.auth.provider import ConsentFlow, IdentityProvider, Unsubscribe
from portal.profiles.documents import from_document, to_document, utcnow
from portal.profiles.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Enrich:
    """Load the stored profile for the session published at `generation`."""

    session: Session
    generation: int


@dataclass(frozen=True)
class _Refresh:
    """Re-read a profile after an explicit write, in notification order."""

    uid: str


_Work = Union[_Enrich, _Refresh]


def is_first_sign_in(result: FederatedSignIn) -> bool:
    """
    Decide whether a federated sign-in created the account.

    The provider's explicit flag wins; otherwise fall back to comparing the account
    creation time with this sign-in time.
    """
    if result.is_new_user is not None:
        return result.is_new_user
    created = result.session.created_at
    last = result.session.last_sign_in_at
    return created is not None and last is not None and created == last


def merge_profile(session: Session, fields: Dict[str, Any], now: datetime) -> Profile:
    """Combine live session fields with stored profile fields (session wins)."""
    return Profile(
        uid=session.uid,
        email=session.email or fields.get("email") or "",
        display_name=session.display_name or fields.get("display_name") or "",
        photo_url=session.photo_url or fields.get("photo_url") or "",
        role=fields.get("role") or DEFAULT_ROLE,
        created_at=fields.get("created_at") or now,
        last_login_at=now,
    )


class AuthCoordinator:
    def __init__(
        self,
        provider: IdentityProvider,
        store: DocumentStore,
        *,
        collection: str = "users",
        consent: Optional[ConsentFlow] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._provider = provider
        self._store = store
        self._collection = collection
        self._consent = consent
        self._clock = clock

        self.session: StateValue[Optional[Session]] = StateValue(None)
        self.profile: StateValue[Optional[Profile]] = StateValue(None)
        self.authenticated: StateValue[bool] = StateValue(False)

        self._queue: Optional["asyncio.Queue[_Work]"] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._background: Set[asyncio.Task] = set()
        self._generation = 0
        self._closed = False

    # ---- lifecycle ----

    async def start(self) -> "AuthCoordinator":
        """Open the session-change subscription. Idempotent."""
        if self._closed:
            raise RuntimeError("AuthCoordinator is closed")
        if self._unsubscribe is not None:
            return self
        self._queue = asyncio.Queue()
        self._drain_task = asyncio.create_task(self._drain())
        self._unsubscribe = self._provider.subscribe(self._on_session_change)
        return self

    async def close(self) -> None:
        """Tear down the subscription exactly once, wait for best-effort writes and release the provider."""
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._provider.close()

    async def __aenter__(self) -> "AuthCoordinator":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def settle(self) -> None:
        """Wait until queued enrichment and last-login writes have completed."""
        if self._queue is not None:
            await self._queue.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---- session-change handling ----

    def _on_session_change(self, session: Optional[Session]) -> None:
        if self._queue is None or self._closed:
            return
        self._generation += 1
        current = self.profile.value
        if current is not None and (session is None or current.uid != session.uid):
            # Profile goes first so no subscriber ever sees it without its session.
            self.profile.publish(None)
        self.session.publish(session)
        if self.authenticated.value != (session is not None):
            self.authenticated.publish(session is not None)
        if session is not None:
            self._queue.put_nowait(_Enrich(session, self._generation))

    def _is_current(self, item: _Enrich) -> bool:
        return item.generation == self._generation and not self._closed

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _Refresh):
                    await self._refresh(item.uid)
                else:
                    await self._enrich(item)
            except Exception:
                logger.exception("Session change handling failed")
            finally:
                self._queue.task_done()

    async def _enrich(self, item: _Enrich) -> None:
        if not self._is_current(item):
            return
        session = item.session
        ok, stored = await self._read_profile(session.uid)
        if not self._is_current(item):
            logger.debug("Dropping profile for %s: session changed during read", session.uid)
            return
        if not ok:
            # Degraded: stay signed in without a profile.
            self.profile.publish(None)
            return
        now = self._clock()
        self.profile.publish(merge_profile(session, from_document(stored or {}), now))

        task = asyncio.create_task(self._write_last_login(session.uid, now))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, uid: str) -> None:
        if self.session.value is None or self.session.value.uid != uid:
            return
        ok, stored = await self._read_profile(uid)
        session = self.session.value
        if session is None or session.uid != uid:
            return
        if not ok or not stored:
            return
        current = self.profile.value
        now = current.last_login_at if current is not None and current.last_login_at else self._clock()
        self.profile.publish(merge_profile(session, from_document(stored), now))

    async def _read_profile(self, uid: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
        try:
            return True, await self._store.read_document(self._collection, uid)
        except Exception as e:
            logger.error("Error getting profile for %s: %s", uid, e)
            return False, None

    async def _write_last_login(self, uid: str, now: datetime) -> None:
        try:
            await self._store.merge_write_document(self._collection, uid, to_document({"last_login_at": now}))
        except Exception as e:
            logger.warning("Failed to update last login for %s: %s", uid, e)

    # ---- reads ----

    def get_current_session(self) -> Optional[Session]:
        return self._provider.current_session()

    def get_current_profile(self) -> Optional[Profile]:
        return self.profile.value

    @property
    def is_authenticated(self) -> bool:
        return self.session.value is not None

    def has_role(self, role: str) -> bool:
        profile = self.profile.value
        return profile is not None and profile.role == role

    # ---- operations ----

    async def sign_up(self, email: str, password: str, display_name: str) -> Session:
        try:
            session = await self._provider.create_account(email, password)
            now = self._clock()
            await self._create_profile(
                session,
                email=session.email or email,
                display_name=display_name,
                photo_url=session.photo_url,
                now=now,
            )
        except Exception as e:
            raise classify(e, operation="sign up") from e
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        # Last-login is written by the session-change path, not here.
        try:
            return await self._provider.authenticate(email, password)
        except Exception as e:
            raise classify(e, operation="sign in") from e

    async def sign_in_with_federated_provider(
        self, kind: ProviderKind, flow: Optional[ConsentFlow] = None
    ) -> Session:
        flow = flow or self._consent
        try:
            if flow is None:
                raise ProviderError(ProviderCode.UNKNOWN, f"no consent flow for {kind.value}")
            credential = await flow.obtain_credential(kind)
            result = await self._provider.authenticate_federated(credential)
            if is_first_sign_in(result):
                session = result.session
                await self._create_profile(
                    session,
                    email=session.email or "",
                    display_name=session.display_name or "",
                    photo_url=session.photo_url,
                    now=self._clock(),
                )
        except Exception as e:
            raise classify(e, operation=f"{kind.value} sign in") from e
        return result.session

    async def sign_in_with_google(self, flow: Optional[ConsentFlow] = None) -> Session:
        return await self.sign_in_with_federated_provider(ProviderKind.GOOGLE, flow)

    async def sign_in_with_facebook(self, flow: Optional[ConsentFlow] = None) -> Session:
        return await self.sign_in_with_federated_provider(ProviderKind.FACEBOOK, flow)

    async def sign_out(self) -> None:
        try:
            await self._provider.deauthenticate()
        except Exception as e:
            raise classify(e, operation="sign out") from e

    async def _create_profile(
        self, session: Session, *, email: str, display_name: str, photo_url: Optional[str], now: datetime
    ) -> None:
        await self.set_profile(
            session.uid,
            {
                "uid": session.uid,
                "email": email,
                "display_name": display_name,
                "photo_url": photo_url or "",
                "role": DEFAULT_ROLE,
                "created_at": now,
                "last_login_at": now,
            },
        )
        if self._queue is not None and not self._closed:
            self._queue.put_nowait(_Refresh(session.uid))

    async def set_profile(self, uid: str, partial: Dict[str, Any]) -> None:
        """
        Merge-write profile fields for `uid` and republish if it is the loaded profile.

        The document key is the profile's identity: a `uid` field naming anyone else
        raises ValueError before anything is written.
        """
        if "uid" in partial and partial["uid"] != uid:
            raise ValueError(f"profile uid {partial['uid']!r} does not match key {uid!r}")
        doc = to_document(partial)
        try:
            await self._store.merge_write_document(self._collection, uid, doc)
        except StoreError:
            logger.error("Error setting profile for %s", uid)
            raise
        except Exception as e:
            logger.error("Error setting profile for %s: %s", uid, e)
            raise StoreError(f"Failed to write profile {uid}") from e

        current = self.profile.value
        if current is not None and current.uid == uid:
            self.profile.publish(current.merged(partial))

    async def update_profile(self, partial: Dict[str, Any]) -> None:
        session = self.get_current_session()
        if session is None:
            raise NoActiveSession()
        await self.set_profile(session.uid, partial)

    async def send_email_verification(self) -> None:
        if self.get_current_session() is None:
            raise NoActiveSession()
        try:
            await self._provider.request_email_verification()
        except Exception as e:
            raise classify(e, operation="send email verification") from e

    async def check_email_verified(self) -> bool:
        if self.get_current_session() is None:
            return False
        try:
            return await self._provider.check_email_verified()
        except Exception as e:
            raise classify(e, operation="check email verification") from e
