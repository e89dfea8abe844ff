from __future__ import annotations

import logging
from typing import Optional

from portal.auth.coordinator import AuthCoordinator
from portal.auth.errors import IdentityError
from portal.auth.models import Profile

logger = logging.getLogger(__name__)


class NavbarView:
    """Top navigation: collapsible search box and the signed-in user's name."""

    def __init__(self, coordinator: AuthCoordinator) -> None:
        self._coordinator = coordinator
        self.show_search = False
        self.display_name: Optional[str] = None
        self._unsubscribe = coordinator.profile.subscribe(self._on_profile)

    def _on_profile(self, profile: Optional[Profile]) -> None:
        self.display_name = (profile.display_name or profile.email or None) if profile is not None else None

    @property
    def signed_in(self) -> bool:
        return self._coordinator.is_authenticated

    def toggle_search(self) -> None:
        self.show_search = not self.show_search

    def on_search_blur(self, query: str) -> None:
        # Hide the search box when it loses focus empty.
        if not (query or "").strip():
            self.show_search = False

    async def sign_out(self) -> bool:
        try:
            await self._coordinator.sign_out()
        except IdentityError as e:
            logger.error("Error signing out: %s", e)
            return False
        return True

    def close(self) -> None:
        self._unsubscribe()
