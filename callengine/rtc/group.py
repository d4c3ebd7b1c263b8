"""
Group calls as a mesh of independent peer links.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..errors import CallEngineError, Closed
from ..protocol.schemas import CandidateModel, ParticipantInfo
from .factory import PeerConnectionFactory
from .peer_link import PeerLink
from .signaling import GroupOutbox, SignalingHandler

LOG = logging.getLogger(__name__)

LinkHook = Callable[[PeerLink], None]


class GroupCall:
    """
    One :class:`PeerLink` per remote member of a room.

    Members already in the room offer to whoever joins after them; the
    joiner answers.  A failure on one link is logged and never touches the
    others.
    """

    def __init__(
        self,
        room_id: str,
        group_id: str,
        *,
        self_id: str,
        transport: Any,
        factory: PeerConnectionFactory,
        on_link: Optional[LinkHook] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.room_id = room_id
        self.group_id = group_id
        self.self_id = self_id
        self.transport = transport
        self.factory = factory
        self.on_link = on_link
        self.log = logger or LOG.getChild(f"room.{room_id[:8]}")
        self.members: Dict[str, ParticipantInfo] = {}
        self.remote_tracks: Dict[str, Dict[str, bool]] = {}
        self.screen_sharers: Dict[str, Optional[str]] = {}
        self._links: Dict[str, Tuple[PeerLink, SignalingHandler]] = {}
        self._departed: Set[str] = set()
        self._closed = False

    # ------------------------------------------------------------------ links

    @property
    def links(self) -> Dict[str, PeerLink]:
        return {user_id: link for user_id, (link, _handler) in self._links.items()}

    def targets(self) -> List[Tuple[PeerLink, SignalingHandler]]:
        return [pair for pair in self._links.values() if not pair[0].closed]

    def _ensure_link(self, user_id: str, *, offerer: bool) -> Tuple[PeerLink, SignalingHandler]:
        existing = self._links.get(user_id)
        if existing is not None and not existing[0].closed:
            return existing
        link = self.factory.create(user_id, logger=self.log.getChild(f"peer.{user_id[:8]}"))
        handler = SignalingHandler(
            link,
            GroupOutbox(self.transport, self.room_id, user_id),
            is_caller=offerer,
            polite=self.self_id < user_id,
        )
        self._links[user_id] = (link, handler)
        if self.on_link is not None:
            self.on_link(link)
        return link, handler

    async def add_participant(self, user_id: str, info: Optional[ParticipantInfo] = None) -> Optional[PeerLink]:
        """A member joined after us: open a link and offer to it."""

        if self._closed or user_id == self.self_id:
            return None
        self._departed.discard(user_id)
        self.members[user_id] = info or ParticipantInfo(user_id=user_id)
        link, handler = self._ensure_link(user_id, offerer=True)
        try:
            await handler.create_offer()
        except Closed:
            self.log.info("Link to %s closed before the offer went out", user_id)
        except Exception:
            self.log.warning("Offer to %s failed; other participants unaffected", user_id, exc_info=True)
        return link

    async def remove_participant(self, user_id: str) -> None:
        # Signaling still in flight from a departed member must not reopen a link.
        self._departed.add(user_id)
        self.members.pop(user_id, None)
        self.remote_tracks.pop(user_id, None)
        self.screen_sharers.pop(user_id, None)
        pair = self._links.pop(user_id, None)
        if pair is not None:
            await pair[0].close()
            self.log.info("Participant %s left; link closed", user_id)

    # -------------------------------------------------------------- signaling

    def _accepts(self, sender_id: str, kind: str) -> bool:
        if self._closed or not sender_id:
            return False
        if sender_id in self._departed:
            self.log.info("%s from departed member %s dropped", kind, sender_id)
            return False
        return True

    async def handle_offer(self, sender_id: str, description: Any) -> None:
        if not self._accepts(sender_id, "Offer"):
            return
        self.members.setdefault(sender_id, ParticipantInfo(user_id=sender_id))
        _link, handler = self._ensure_link(sender_id, offerer=False)
        await self._isolated(sender_id, handler.handle_offer(description))

    async def handle_answer(self, sender_id: str, description: Any) -> None:
        if not self._accepts(sender_id, "Answer"):
            return
        pair = self._links.get(sender_id)
        if pair is None:
            self.log.info("Answer from unknown member %s dropped", sender_id)
            return
        await self._isolated(sender_id, pair[1].handle_answer(description))

    async def handle_ice_candidate(self, sender_id: str, candidate: CandidateModel) -> None:
        if not self._accepts(sender_id, "Candidate"):
            return
        # Candidates may beat the offer; the link queues them until then.
        _link, handler = self._ensure_link(sender_id, offerer=False)
        await self._isolated(sender_id, handler.handle_ice_candidate(candidate))

    async def _isolated(self, user_id: str, operation) -> None:
        try:
            await operation
        except asyncio.CancelledError:
            raise
        except CallEngineError as exc:
            self.log.info("Signaling with %s: %s", user_id, exc)
        except Exception:
            self.log.warning("Signaling with %s failed; other participants unaffected", user_id, exc_info=True)

    # ------------------------------------------------------------------ close

    async def close(self) -> None:
        self._closed = True
        pairs, self._links = list(self._links.values()), {}
        results = await asyncio.gather(*(link.close() for link, _handler in pairs), return_exceptions=True)
        for (link, _handler), result in zip(pairs, results):
            if isinstance(result, BaseException):
                self.log.warning("Closing link to %s failed", link.remote_id, exc_info=result)
        self.members.clear()
        self._departed.clear()
        self.remote_tracks.clear()
        self.screen_sharers.clear()


__all__ = ["GroupCall"]
