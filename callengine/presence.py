"""
Identity/presence lookups used before a call is placed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Protocol, Set

import httpx

from .protocol.schemas import ParticipantInfo

LOG = logging.getLogger(__name__)


class PresenceDirectory(Protocol):
    async def lookup(self, user_id: str) -> Optional[ParticipantInfo]: ...

    async def is_online(self, user_id: str) -> bool: ...


class StaticPresenceDirectory:
    """In-memory directory, used by the loopback demo and tests."""

    def __init__(self, users: Iterable[ParticipantInfo] = (), *, online: Optional[Iterable[str]] = None) -> None:
        self.users: Dict[str, ParticipantInfo] = {user.user_id: user for user in users}
        self.online: Set[str] = set(online) if online is not None else set(self.users)

    def add(self, user: ParticipantInfo, *, online: bool = True) -> None:
        self.users[user.user_id] = user
        if online:
            self.online.add(user.user_id)
        else:
            self.online.discard(user.user_id)

    async def lookup(self, user_id: str) -> Optional[ParticipantInfo]:
        return self.users.get(user_id)

    async def is_online(self, user_id: str) -> bool:
        return user_id in self.online


class HttpPresenceDirectory:
    """
    Query the chat backend: ``GET /users/{id}`` and ``GET /presence/online``.

    Network failures are logged and treated as "unknown", which the engine
    reports as unreachable.
    """

    def __init__(self, base_url: str, *, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get(self, path: str) -> Optional[Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            LOG.warning("Presence lookup %s failed: %s", url, exc)
            return None
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            LOG.warning("Presence lookup %s returned %s", url, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            LOG.warning("Presence lookup %s returned invalid JSON", url)
            return None

    async def lookup(self, user_id: str) -> Optional[ParticipantInfo]:
        payload = await self._get(f"/users/{user_id}")
        if not isinstance(payload, dict):
            return None
        try:
            return ParticipantInfo.model_validate(payload)
        except ValueError:
            LOG.warning("Presence lookup for %s returned an unusable user record", user_id)
            return None

    async def is_online(self, user_id: str) -> bool:
        payload = await self._get("/presence/online")
        if isinstance(payload, dict):
            payload = payload.get("users") or payload.get("online") or []
        if not isinstance(payload, list):
            return False
        return user_id in {str(entry) for entry in payload}


__all__ = ["HttpPresenceDirectory", "PresenceDirectory", "StaticPresenceDirectory"]
