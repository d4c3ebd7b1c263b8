"""
Offer/answer/candidate handling for a single :class:`PeerLink`.

All mutations of a link's descriptions go through :class:`SignalingHandler`.
Races are absorbed here: duplicate offers, answers that overtake the local
offer, candidates that arrive before the remote description, and both sides
offering at once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from ..errors import Closed, RenegotiationFailed, SignalingRace
from ..protocol import events
from ..protocol.schemas import CandidateModel, SessionDescriptionModel
from .peer_link import PeerLink, SignalingState

LOG = logging.getLogger(__name__)

RENEGOTIATION_ATTEMPTS = 3


def description_to_payload(description: Any) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def to_description(value: Any) -> RTCSessionDescription:
    if isinstance(value, RTCSessionDescription):
        return value
    if isinstance(value, SessionDescriptionModel):
        return RTCSessionDescription(sdp=value.sdp, type=value.type)
    model = SessionDescriptionModel.model_validate(value)
    return RTCSessionDescription(sdp=model.sdp, type=model.type)


def parse_candidate(model: CandidateModel):
    """Build an aiortc candidate; ``None`` for end-of-candidates markers."""

    text = model.candidate.strip()
    if not text:
        return None
    if text.startswith("candidate:"):
        text = text.split(":", 1)[1]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = model.sdp_mid
    candidate.sdpMLineIndex = model.sdp_mline_index
    return candidate


# ----------------------------------------------------------------- outboxes


class Outbox(Protocol):
    def send_offer(self, description: Any) -> None: ...

    def send_answer(self, description: Any) -> None: ...


class DirectOutbox:
    """``webrtc:*`` messages for a 1:1 call."""

    def __init__(self, transport: Any, call_id: str, peer_id: str) -> None:
        self.transport = transport
        self.call_id = call_id
        self.peer_id = peer_id

    def send_offer(self, description: Any) -> None:
        self.transport.send(
            events.WEBRTC_OFFER,
            {"call_id": self.call_id, "offer": description_to_payload(description), "receiver_id": self.peer_id},
        )

    def send_answer(self, description: Any) -> None:
        self.transport.send(
            events.WEBRTC_ANSWER,
            {"call_id": self.call_id, "answer": description_to_payload(description), "caller_id": self.peer_id},
        )


class GroupOutbox:
    """``groupcall:webrtc-*`` messages for one member of a room."""

    def __init__(self, transport: Any, room_id: str, peer_id: str) -> None:
        self.transport = transport
        self.room_id = room_id
        self.peer_id = peer_id

    def send_offer(self, description: Any) -> None:
        self.transport.send(
            events.GROUP_OFFER,
            {"room_id": self.room_id, "offer": description_to_payload(description), "target_user_id": self.peer_id},
        )

    def send_answer(self, description: Any) -> None:
        self.transport.send(
            events.GROUP_ANSWER,
            {"room_id": self.room_id, "answer": description_to_payload(description), "target_user_id": self.peer_id},
        )


# ------------------------------------------------------------------ handler


class SignalingHandler:
    """
    Drive one link through offer/answer exchanges.

    ``polite`` decides who yields when both sides offer at once: the polite
    side rolls its own offer back (when the connection supports rollback) and
    answers the remote one; the impolite side ignores the colliding offer.
    """

    def __init__(
        self,
        link: PeerLink,
        outbox: Outbox,
        *,
        is_caller: bool,
        polite: Optional[bool] = None,
    ) -> None:
        self.link = link
        self.outbox = outbox
        self.is_caller = is_caller
        self.polite = (not is_caller) if polite is None else polite
        self.log = link.logger

    # ----------------------------------------------------------------- offers

    async def create_offer(self) -> Any:
        """
        Create, apply and send an offer; idempotent while one is unconsumed.

        Concurrent callers share the same in-flight offer, so only one
        ``send_offer`` happens per epoch.
        """

        link = self.link
        if link.closed:
            raise Closed(f"Link to {link.remote_id} is closed")
        if link.offer_pending:
            self.log.debug("Offer already being created; joining it")
            return await self._await_offer(link.offer_task)
        state = link.signaling_state
        if state is SignalingState.HAVE_LOCAL_OFFER and link.local_description is not None:
            self.log.debug("Unanswered offer exists; returning it")
            return link.local_description
        if state is not SignalingState.STABLE:
            raise SignalingRace(f"Cannot create an offer in state {state.value}")

        task = asyncio.ensure_future(self._make_offer())
        link.offer_task = task
        try:
            return await self._await_offer(task)
        finally:
            if link.offer_task is task and task.done():
                link.offer_task = None

    async def _await_offer(self, task: "asyncio.Future[Any]") -> Any:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Closing the link cancels the offer; waiters see Closed instead.
            if self.link.closed and task.cancelled():
                raise Closed(f"Link to {self.link.remote_id} closed during offer") from None
            raise

    async def _make_offer(self) -> Any:
        link = self.link
        connection = link.connection
        offer = await connection.createOffer()
        if link.closed:
            raise Closed(f"Link to {link.remote_id} closed during offer creation")
        try:
            await connection.setLocalDescription(offer)
        except InvalidStateError:
            if link.signaling_state is SignalingState.HAVE_LOCAL_OFFER and link.local_description is not None:
                self.log.info("Local description already set; keeping the existing offer")
                return link.local_description
            raise
        link.offer_epoch += 1
        link.offer_in_flight = True
        link.answer_applied = False
        link.notify()

        description = link.local_description or offer
        self.outbox.send_offer(description)
        self.log.info("Offer #%d sent to %s", link.offer_epoch, link.remote_id)

        pending, link.pending_remote_answer = link.pending_remote_answer, None
        if pending is not None:
            self.log.info("Applying buffered answer from %s", link.remote_id)
            await self._apply_answer(pending)
        return description

    async def renegotiate(self) -> None:
        """
        Wait for ``stable``, offer, and wait for the matching answer.

        Raises :class:`RenegotiationFailed`; a link closed underneath raises
        :class:`Closed`.
        """

        link = self.link
        for attempt in range(1, RENEGOTIATION_ATTEMPTS + 1):
            await link.wait_for_state(SignalingState.STABLE)
            try:
                await self.create_offer()
            except (Closed, asyncio.CancelledError):
                raise
            except SignalingRace as exc:
                self.log.info("Renegotiation attempt %d raced (%s)", attempt, exc)
                continue
            except Exception as exc:
                raise RenegotiationFailed(f"Offer to {link.remote_id} failed: {exc}") from exc
            epoch = link.offer_epoch
            await link.wait_for_state(SignalingState.STABLE)
            if link.answered_epoch >= epoch:
                return
            self.log.info("Offer #%d was rolled back; offering again", epoch)
        raise RenegotiationFailed(f"Renegotiation with {link.remote_id} did not converge")

    async def handle_offer(self, description: Any) -> bool:
        """
        Apply a remote offer and answer it.  Returns ``True`` when an answer
        was sent.
        """

        link = self.link
        if link.closed:
            return False
        remote = to_description(description)
        if link.last_remote_offer_sdp is not None and remote.sdp == link.last_remote_offer_sdp:
            self.log.info("Duplicate offer from %s ignored", link.remote_id)
            return False

        state = link.signaling_state
        renegotiation = (
            state is SignalingState.STABLE
            and link.local_description is not None
            and link.remote_description is not None
        )
        if state is SignalingState.STABLE and not renegotiation and link.answer_sent:
            self.log.info("Late initial offer from %s ignored", link.remote_id)
            return False
        if state is SignalingState.HAVE_REMOTE_OFFER:
            self.log.info("%s", SignalingRace(f"Offer from {link.remote_id} while another is being answered"))
            return False
        if state is SignalingState.HAVE_LOCAL_OFFER or link.offer_pending:
            if not await self._yield_to_remote_offer():
                return False
            renegotiation = link.remote_description is not None

        link.last_remote_offer_sdp = remote.sdp
        connection = link.connection
        await connection.setRemoteDescription(remote)
        link.notify()
        await self.drain_candidates()
        answer = await connection.createAnswer()
        if link.closed:
            return False
        await connection.setLocalDescription(answer)
        link.notify()
        if not renegotiation:
            link.answer_sent = True
        self.outbox.send_answer(link.local_description or answer)
        self.log.info("%s answer sent to %s", "Renegotiation" if renegotiation else "Initial", link.remote_id)
        return True

    async def _yield_to_remote_offer(self) -> bool:
        link = self.link
        if not self.polite:
            self.log.info("%s", SignalingRace(f"Colliding offer from {link.remote_id} ignored"))
            return False
        if link.offer_pending:
            try:
                await asyncio.shield(link.offer_task)
            except Exception:
                self.log.debug("Own offer failed while yielding", exc_info=True)
        try:
            await link.connection.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))
        except Exception as exc:
            self.log.info("%s", SignalingRace(f"Cannot roll back local offer ({exc}); colliding offer dropped"))
            return False
        link.offer_in_flight = False
        link.pending_remote_answer = None
        link.notify()
        self.log.info("Rolled back local offer to accept %s's offer", link.remote_id)
        return True

    # ---------------------------------------------------------------- answers

    async def handle_answer(self, description: Any) -> bool:
        """Returns ``True`` when the answer was applied (now or buffered)."""

        link = self.link
        if link.closed:
            return False
        remote = to_description(description)
        if link.offer_pending and link.signaling_state is not SignalingState.HAVE_LOCAL_OFFER:
            if link.pending_remote_answer is None:
                self.log.info("Answer from %s arrived before the local offer was applied; buffering", link.remote_id)
                link.pending_remote_answer = remote
            return True
        state = link.signaling_state
        if state is SignalingState.HAVE_LOCAL_OFFER:
            return await self._apply_answer(remote)
        if not self.is_caller and link.offer_epoch == 0:
            self.log.warning("Protocol error: unexpected answer from %s outside a renegotiation", link.remote_id)
            return False
        self.log.debug("Answer from %s in state %s ignored (already applied)", link.remote_id, state.value)
        return False

    async def _apply_answer(self, remote: Any) -> bool:
        link = self.link
        if link.closed:
            return False
        try:
            await link.connection.setRemoteDescription(remote)
        except InvalidStateError:
            if link.signaling_state is SignalingState.STABLE:
                self.log.debug("Answer from %s already applied", link.remote_id)
                return False
            raise
        link.offer_in_flight = False
        link.answer_applied = True
        link.answered_epoch = link.offer_epoch
        link.notify()
        self.log.info("Answer from %s applied", link.remote_id)
        await self.drain_candidates()
        return True

    # ------------------------------------------------------------- candidates

    async def handle_ice_candidate(self, model: CandidateModel) -> None:
        link = self.link
        if not link.accept_candidate(model.key):
            if not link.closed:
                self.log.debug("Duplicate candidate from %s dropped", link.remote_id)
            return
        if link.remote_description is None or link.draining or link.ice_candidate_queue:
            link.ice_candidate_queue.append(model)
            return
        await self._add_candidate(model)

    async def drain_candidates(self) -> None:
        link = self.link
        if link.draining or link.remote_description is None:
            return
        link.draining = True
        try:
            while link.ice_candidate_queue and not link.closed:
                await self._add_candidate(link.ice_candidate_queue.pop(0))
        finally:
            link.draining = False

    async def _add_candidate(self, model: CandidateModel) -> None:
        link = self.link
        if link.closed:
            return
        try:
            candidate = parse_candidate(model)
        except Exception as exc:
            self.log.warning("Malformed candidate from %s dropped: %s", link.remote_id, exc)
            return
        if candidate is None:
            return
        try:
            await link.connection.addIceCandidate(candidate)
        except Exception:
            self.log.warning("Adding candidate from %s failed", link.remote_id, exc_info=True)


__all__ = [
    "DirectOutbox",
    "GroupOutbox",
    "Outbox",
    "SignalingHandler",
    "description_to_payload",
    "parse_candidate",
    "to_description",
]
