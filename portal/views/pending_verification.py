from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from portal.auth.coordinator import AuthCoordinator
from portal.auth.errors import IdentityError, NoActiveSession

logger = logging.getLogger(__name__)

LOGIN_ROUTE = "/login"
DASHBOARD_ROUTE = "/dashboard"
RESEND_OK = "Verification email sent successfully! Please check your inbox."
RESEND_FAILED = "Failed to send verification email. Please try again."


class VerificationPoller:
    """
    Check a verification flag on a fixed interval.

    The loop ends on the first True result, or when `cancel()` sets the cancellation
    flag. A failed check is logged and retried on the next tick.
    """

    def __init__(
        self,
        check: Callable[[], Awaitable[bool]],
        *,
        interval_seconds: float,
        on_verified: Optional[Callable[[], None]] = None,
    ) -> None:
        self._check = check
        self._interval = interval_seconds
        self._on_verified = on_verified
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self.verified = False
        self.checks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self._interval)
            if self._cancelled:
                return
            self.checks += 1
            try:
                verified = await self._check()
            except (IdentityError, NoActiveSession) as e:
                logger.warning("Verification check failed: %s", e)
                continue
            if verified:
                self.verified = True
                if self._on_verified is not None:
                    self._on_verified()
                return

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class PendingVerificationView:
    def __init__(self, coordinator: AuthCoordinator, *, poll_seconds: float = 3.0) -> None:
        self._coordinator = coordinator
        self._poll_seconds = poll_seconds
        self.user_email = ""
        self.is_resending = False
        self.resend_message = ""
        self.next_route: Optional[str] = None
        self.poller: Optional[VerificationPoller] = None

    @property
    def verified(self) -> bool:
        return self.poller is not None and self.poller.verified

    def open(self) -> None:
        session = self._coordinator.get_current_session()
        if session is None:
            self.next_route = LOGIN_ROUTE
            return
        self.user_email = session.email or ""
        self.poller = VerificationPoller(
            self._coordinator.check_email_verified,
            interval_seconds=self._poll_seconds,
            on_verified=self._verified,
        )
        self.poller.start()

    def _verified(self) -> None:
        self.next_route = DASHBOARD_ROUTE

    def close(self) -> None:
        if self.poller is not None:
            self.poller.cancel()

    async def resend_verification_email(self) -> bool:
        self.is_resending = True
        self.resend_message = ""
        try:
            await self._coordinator.send_email_verification()
        except (IdentityError, NoActiveSession) as e:
            logger.error("Error resending verification email: %s", e)
            self.resend_message = RESEND_FAILED
            return False
        finally:
            self.is_resending = False
        self.resend_message = RESEND_OK
        return True

    async def sign_out(self) -> None:
        try:
            await self._coordinator.sign_out()
        except IdentityError as e:
            logger.error("Error signing out: %s", e)
            return
        self.close()
        self.next_route = LOGIN_ROUTE
