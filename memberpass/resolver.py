from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .backend import BackendClient, BackendError
from .models import Client

logger = logging.getLogger(__name__)


class ClientDetailCache:
    """Short-lived cache of client details keyed by (credentials, id).

    Used for display lookups only. Access decisions always go through
    MemberResolver.resolve(), which never reads from here. Entries are
    scoped to the access token they were fetched with, so a row the backend
    only shows to one caller is never served to another.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, Client]] = {}

    def get(self, client_id: str, scope: Optional[str] = None) -> Client | None:
        key = (scope or "", client_id)
        cached = self._entries.get(key)
        if cached is None:
            return None
        stored_at, client = cached
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return client

    def put(self, client: Client, scope: Optional[str] = None) -> None:
        self._entries[(scope or "", client.id)] = (self._clock(), client)

    def invalidate(self, client_id: str) -> None:
        """Drop a client from every scope."""
        for key in [k for k in self._entries if k[1] == client_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


class MemberResolver:
    def __init__(self, backend: BackendClient, cache: ClientDetailCache | None = None):
        self.backend = backend
        self.cache = cache or ClientDetailCache()

    async def resolve(self, code: str, token: str | None = None) -> Client | None:
        """
        Look up the client holding exactly this member code.

        Returns None both when no client matches and when the backend fails;
        callers must not be able to tell the two apart. They are logged
        differently here. If the uniqueness of codes is ever violated, the
        client with the lowest id wins.
        """
        if not code:
            logger.info("Empty code, nothing to resolve")
            return None
        try:
            matches = await self.backend.find_clients_by_code(code, token=token)
        except BackendError as e:
            logger.warning("Member lookup failed for code %r: %s", code, e)
            return None

        if not matches:
            logger.info("No client with member code %r", code)
            return None
        if len(matches) > 1:
            logger.warning(
                "Member code %r is shared by %d clients, using %s",
                code, len(matches), matches[0].id,
            )
        return matches[0]

    async def get_client(self, client_id: str, token: str | None = None) -> Client | None:
        """Client details for display, served from cache when fresh."""
        cached = self.cache.get(client_id, scope=token)
        if cached is not None:
            return cached
        try:
            client = await self.backend.get_client(client_id, token=token)
        except BackendError as e:
            logger.warning("Client detail fetch failed for %s: %s", client_id, e)
            return None
        if client is None:
            logger.info("Client %s not found", client_id)
            return None
        self.cache.put(client, scope=token)
        return client
