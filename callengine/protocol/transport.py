"""
Signaling transport capability and an in-memory loopback relay.

The engine never looks inside the transport: it only calls ``send`` and
registers handlers with ``subscribe``.  ``LoopbackHub`` relays events between
engines living in the same process the way the chat backend relays them over
its realtime channel, which is enough for local demos and tests.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from . import events

LOG = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class SignalingTransport(Protocol):
    def send(self, event: str, payload: Dict[str, Any]) -> None: ...

    def subscribe(self, event: str, handler: Handler) -> None: ...


class LoopbackTransport:
    """One client endpoint attached to a :class:`LoopbackHub`."""

    def __init__(self, hub: "LoopbackHub", user_id: str) -> None:
        self.hub = hub
        self.user_id = user_id
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.received: List[Tuple[str, Dict[str, Any]]] = []
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self.connected = True

    def send(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.connected:
            LOG.debug("Dropping %s from disconnected client %s", event, self.user_id)
            return
        self.sent.append((event, dict(payload)))
        self.hub.route(self.user_id, event, dict(payload))

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event) or []
        if handler in handlers:
            handlers.remove(handler)

    def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        self.received.append((event, dict(payload)))
        for handler in list(self._handlers.get(event) or []):
            try:
                result = handler(dict(payload))
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:  # pragma: no cover - handler failures should not kill the relay
                LOG.exception("Handler for %s failed on client %s", event, self.user_id)

    def sent_events(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.sent if name == event]

    def received_events(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.received if name == event]

    def disconnect(self) -> None:
        self.connected = False
        self.hub.detach(self.user_id)


class LoopbackHub:
    """
    In-process relay between :class:`LoopbackTransport` clients.

    Calls are remembered by ``call_id`` so lifecycle events reach the other
    party; rooms are remembered by ``room_id`` for group calls.
    """

    def __init__(self) -> None:
        self._clients: Dict[str, LoopbackTransport] = {}
        self._calls: Dict[str, Tuple[str, str]] = {}
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._room_info: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.paused = False
        self._backlog: List[Tuple[str, str, Dict[str, Any]]] = []

    # ------------------------------------------------------------------ clients

    def connect(self, user_id: str) -> LoopbackTransport:
        client = LoopbackTransport(self, user_id)
        self._clients[user_id] = client
        return client

    def detach(self, user_id: str) -> None:
        self._clients.pop(user_id, None)

    def online_users(self) -> List[str]:
        return sorted(self._clients)

    # ----------------------------------------------------------------- delivery

    def hold(self) -> None:
        """Buffer deliveries until :meth:`release` (simulates network delay)."""

        self.paused = True

    def release(self) -> None:
        self.paused = False
        backlog, self._backlog = self._backlog, []
        for target, event, payload in backlog:
            self._deliver(target, event, payload)

    def _deliver(self, target: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        if not target:
            LOG.debug("No target for %s", event)
            return
        if self.paused:
            self._backlog.append((target, event, payload))
            return
        client = self._clients.get(target)
        if client is None:
            LOG.debug("Target %s for %s is offline", target, event)
            return
        client.deliver(event, payload)

    def _other_party(self, call_id: str, sender: str) -> Optional[str]:
        parties = self._calls.get(call_id)
        if not parties:
            return None
        caller, receiver = parties
        return receiver if sender == caller else caller

    # ------------------------------------------------------------------ routing

    def route(self, sender: str, event: str, payload: Dict[str, Any]) -> None:
        call_id = str(payload.get("call_id") or "")
        room_id = str(payload.get("room_id") or "")

        if event == events.CALL_INITIATE:
            receiver = str(payload.get("receiver_id") or "")
            if receiver not in self._clients:
                self._deliver(sender, events.CALL_FAILED, {"call_id": call_id, "reason": "user-offline"})
                return
            self._calls[call_id] = (sender, receiver)
            self._deliver(
                receiver,
                events.CALL_INCOMING,
                {
                    "call_id": call_id,
                    "caller_id": sender,
                    "caller_info": payload.get("caller_info"),
                    "call_type": payload.get("call_type"),
                },
            )
            self._deliver(sender, events.CALL_RINGING, {"call_id": call_id})
        elif event == events.CALL_ANSWER:
            self._deliver(self._other_party(call_id, sender), events.CALL_ANSWERED, {"call_id": call_id})
        elif event == events.CALL_REJECT:
            target = self._other_party(call_id, sender)
            self._calls.pop(call_id, None)
            self._deliver(target, events.CALL_REJECTED, {"call_id": call_id, "reason": payload.get("reason")})
        elif event == events.CALL_END:
            target = self._other_party(call_id, sender)
            self._calls.pop(call_id, None)
            self._deliver(target, events.CALL_ENDED, {"call_id": call_id, "reason": payload.get("reason")})
        elif event == events.CALL_MUTE_STATUS:
            self._deliver(self._other_party(call_id, sender), event, dict(payload))
        elif event == events.WEBRTC_OFFER:
            target = payload.get("receiver_id") or self._other_party(call_id, sender)
            forwarded = {k: v for k, v in payload.items() if k != "receiver_id"}
            forwarded.update(caller_id=sender, sender_id=sender)
            self._deliver(target, event, forwarded)
        elif event == events.WEBRTC_ANSWER:
            target = payload.get("caller_id") or self._other_party(call_id, sender)
            forwarded = {k: v for k, v in payload.items() if k != "caller_id"}
            forwarded.update(sender_id=sender)
            self._deliver(target, event, forwarded)
        elif event == events.WEBRTC_ICE_CANDIDATE:
            target = payload.get("receiver_id") or self._other_party(call_id, sender)
            forwarded = {k: v for k, v in payload.items() if k != "receiver_id"}
            forwarded.update(sender_id=sender)
            self._deliver(target, event, forwarded)
        elif event == events.GROUP_JOIN:
            info = payload.get("user_info") or {"user_id": sender}
            for member in sorted(self._rooms[room_id]):
                self._deliver(
                    member,
                    events.GROUP_PARTICIPANT_JOINED,
                    {"room_id": room_id, "user_id": sender, "user_info": info},
                )
            self._rooms[room_id].add(sender)
            self._room_info[room_id][sender] = info
        elif event == events.GROUP_LEAVE:
            self._rooms[room_id].discard(sender)
            self._room_info[room_id].pop(sender, None)
            for member in sorted(self._rooms[room_id]):
                self._deliver(member, events.GROUP_PARTICIPANT_LEFT, {"room_id": room_id, "user_id": sender})
        elif event in (events.GROUP_OFFER, events.GROUP_ANSWER, events.GROUP_ICE_CANDIDATE):
            target = payload.get("target_user_id")
            forwarded = {k: v for k, v in payload.items() if k != "target_user_id"}
            forwarded.update(sender_id=sender)
            self._deliver(target, event, forwarded)
        elif event in (
            events.GROUP_UPDATE_TRACKS,
            events.GROUP_SCREEN_SHARE_START,
            events.GROUP_SCREEN_SHARE_STOP,
        ):
            relayed = {
                events.GROUP_UPDATE_TRACKS: events.GROUP_TRACKS_UPDATED,
                events.GROUP_SCREEN_SHARE_START: events.GROUP_SCREEN_SHARE_STARTED,
                events.GROUP_SCREEN_SHARE_STOP: events.GROUP_SCREEN_SHARE_STOPPED,
            }[event]
            for member in sorted(self._rooms[room_id] - {sender}):
                self._deliver(member, relayed, {**payload, "user_id": sender})
        else:
            LOG.debug("Loopback hub ignoring %s from %s", event, sender)


__all__ = ["Handler", "LoopbackHub", "LoopbackTransport", "SignalingTransport"]
