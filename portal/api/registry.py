from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from portal.auth.coordinator import AuthCoordinator
from portal.views.pending_verification import PendingVerificationView

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    """Per-browser state: one coordinator plus the views that outlive a request."""

    client_id: str
    coordinator: AuthCoordinator
    last_seen: float = field(default_factory=time.monotonic)
    pending_verification: Optional[PendingVerificationView] = None

    async def close(self) -> None:
        if self.pending_verification is not None:
            self.pending_verification.close()
            self.pending_verification = None
        await self.coordinator.close()


class ClientRegistry:
    """
    Maps client ids to their coordinators.

    Each client's coordinator is started on first use and closed when the client has
    been idle longer than `idle_seconds`.
    """

    def __init__(self, factory: Callable[[], AuthCoordinator], *, idle_seconds: float) -> None:
        self._factory = factory
        self._idle_seconds = idle_seconds
        self._clients: Dict[str, ClientContext] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    async def get_or_create(self, client_id: str) -> ClientContext:
        await self.evict_idle()
        async with self._lock:
            ctx = self._clients.get(client_id)
            if ctx is None:
                coordinator = await self._factory().start()
                ctx = ClientContext(client_id=client_id, coordinator=coordinator)
                self._clients[client_id] = ctx
                logger.debug("Started coordinator for client %s", client_id[:8])
            ctx.last_seen = time.monotonic()
            return ctx

    async def evict_idle(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        async with self._lock:
            stale: List[ClientContext] = [
                c for c in self._clients.values() if now - c.last_seen > self._idle_seconds
            ]
            for ctx in stale:
                del self._clients[ctx.client_id]
        for ctx in stale:
            await ctx.close()
        if stale:
            logger.info("Closed %d idle client(s)", len(stale))
        return len(stale)

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for ctx in clients:
            await ctx.close()
