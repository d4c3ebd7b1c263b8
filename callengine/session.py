"""
Call session state machine.

``CallEngine`` owns the single :class:`CallSession` of this device.  User
commands (initiate, answer, toggle video, ...) are validated against the
session state; inbound signaling events are queued in one mailbox and
processed strictly in arrival order.  Track-state changes detected by the
track monitors go through the same mailbox.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .config import EngineConfig
from .errors import Busy, CallEngineError, CallTimeout, CommandRejected, NoAnswer
from .media.acquisition import MediaAcquirer
from .media.tracks import CameraVideo, NoVideo, ScreenShareVideo, TrackEvent, TrackMonitor, TrackSignal
from .presence import PresenceDirectory
from .protocol import events
from .protocol.schemas import (
    AnswerPayload,
    CallIdPayload,
    GroupAnswerPayload,
    GroupIceCandidatePayload,
    GroupInvitationPayload,
    GroupOfferPayload,
    GroupParticipantPayload,
    GroupScreenSharePayload,
    GroupTracksPayload,
    IceCandidatePayload,
    IncomingPayload,
    MuteStatusPayload,
    OfferPayload,
    ParticipantInfo,
    ReasonPayload,
    SignalModel,
    parse_inbound,
)
from .rtc.factory import PeerConnectionFactory
from .rtc.group import GroupCall
from .rtc.negotiation import LocalMedia, TrackNegotiator
from .rtc.peer_link import PeerLink
from .rtc.signaling import DirectOutbox, SignalingHandler
from .utils.logging import call_logger
from .utils.timers import OneShotTimer, PeriodicTimer

LOG = logging.getLogger(__name__)

CALL_TYPES = ("voice", "video")
LOCAL_OWNER = "local"


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    IN_CALL = "in-call"
    ENDED = "ended"


@dataclass(frozen=True, slots=True)
class Participant:
    user_id: str
    display_name: str = ""
    avatar: Optional[str] = None

    @classmethod
    def from_info(cls, info: Optional[ParticipantInfo], fallback_id: str = "") -> "Participant":
        if info is None:
            return cls(user_id=fallback_id)
        return cls(user_id=info.user_id, display_name=info.display_name, avatar=info.avatar)

    def to_info(self) -> ParticipantInfo:
        return ParticipantInfo(user_id=self.user_id, display_name=self.display_name, avatar=self.avatar)

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "display_name": self.display_name, "avatar": self.avatar}


# ------------------------------------------------------------ observer values


@dataclass(frozen=True, slots=True)
class CallSnapshot:
    """
    Immutable view of the call handed to the UI collaborator.
    """

    call_id: Optional[str]
    call_type: str
    state: CallState
    is_caller: bool
    is_group: bool
    room_id: Optional[str]
    local_participant: Participant
    remote_participant: Optional[Participant]
    started_at: Optional[float]
    duration: int
    is_muted: bool
    is_video_enabled: bool
    is_screen_sharing: bool
    remote_muted: bool
    remote_video: bool
    signaling_state: Optional[str]
    participants: Tuple[str, ...] = ()
    sent_tracks: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "call_type": self.call_type,
            "state": self.state.value,
            "is_caller": bool(self.is_caller),
            "is_group": bool(self.is_group),
            "room_id": self.room_id,
            "local_participant": self.local_participant.to_dict(),
            "remote_participant": self.remote_participant.to_dict() if self.remote_participant else None,
            "started_at": self.started_at,
            "duration": int(self.duration),
            "duration_text": format_call_duration(self.duration),
            "is_muted": bool(self.is_muted),
            "is_video_enabled": bool(self.is_video_enabled),
            "is_screen_sharing": bool(self.is_screen_sharing),
            "remote_muted": bool(self.remote_muted),
            "remote_video": bool(self.remote_video),
            "signaling_state": self.signaling_state,
            "participants": list(self.participants),
            "sent_tracks": list(self.sent_tracks),
        }


@dataclass(frozen=True, slots=True)
class Notice:
    """User-visible message (toast) raised by the engine."""

    level: str
    code: str
    message: str
    call_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"level": self.level, "code": self.code, "message": self.message, "call_id": self.call_id}


@dataclass(frozen=True, slots=True)
class CallRecord:
    """Summary of a finished call, as shown in the chat history."""

    call_id: str
    call_type: str
    peer_id: Optional[str]
    peer_name: str
    direction: str
    outcome: str
    duration: int
    is_group: bool = False

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "call_type": self.call_type,
            "peer_id": self.peer_id,
            "peer_name": self.peer_name,
            "direction": self.direction,
            "outcome": self.outcome,
            "duration": int(self.duration),
            "is_group": bool(self.is_group),
            "status_text": call_status_text(self),
        }


def format_call_duration(seconds: Union[int, float]) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def call_status_text(record: CallRecord) -> str:
    kind = "Video" if record.call_type == "video" else "Voice"
    if record.outcome == "missed":
        return f"Missed {kind.lower()} call"
    if record.outcome == "completed" and record.duration > 0:
        minutes, seconds = divmod(int(record.duration), 60)
        text = f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"
        return f"{kind} call ended ({text})"
    return f"{kind} call ended"


# -------------------------------------------------------------------- session


@dataclass
class CallSession:
    """The one call this device can be in."""

    local_participant: Participant
    call_id: Optional[str] = None
    call_type: str = "voice"
    state: CallState = CallState.IDLE
    remote_participant: Optional[Participant] = None
    is_caller: bool = False
    started_at: Optional[float] = None
    connected_at: Optional[float] = None
    duration: int = 0
    duration_timer_handle: PeriodicTimer = field(default_factory=lambda: PeriodicTimer("call-duration"))
    no_answer_timer: OneShotTimer = field(default_factory=lambda: OneShotTimer("no-answer"))
    remote_muted: bool = False
    is_group: bool = False
    room_id: Optional[str] = None
    group_id: Optional[str] = None
    media: LocalMedia = field(default_factory=LocalMedia)
    link: Optional[PeerLink] = None
    handler: Optional[SignalingHandler] = None
    negotiator: Optional[TrackNegotiator] = None
    group: Optional[GroupCall] = None
    local_monitor: Optional[TrackMonitor] = None
    remote_monitors: Dict[str, TrackMonitor] = field(default_factory=dict)
    early_signals: List[Tuple[str, SignalModel]] = field(default_factory=list)
    offer_started: bool = False
    remote_ended: bool = False
    log: logging.Logger = LOG

    @property
    def active(self) -> bool:
        return self.state not in (CallState.IDLE, CallState.ENDED)

    def links(self) -> List[PeerLink]:
        if self.group is not None:
            return list(self.group.links.values())
        return [self.link] if self.link is not None else []

    def targets(self) -> List[Tuple[PeerLink, SignalingHandler]]:
        if self.group is not None:
            return self.group.targets()
        if self.link is None or self.handler is None or self.link.closed:
            return []
        return [(self.link, self.handler)]


Observer = Callable[[Any], None]


class _ObserverSet:
    def __init__(self, label: str) -> None:
        self.label = label
        self._counter = 0
        self._observers: Dict[int, Observer] = {}

    def add(self, callback: Observer) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._counter += 1
        self._observers[self._counter] = callback
        return self._counter

    def remove(self, token: int) -> None:
        self._observers.pop(token, None)

    def publish(self, value: Any) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(value)
            except Exception:  # pragma: no cover - observer failures should not kill the engine
                LOG.exception("%s observer %s failed.", self.label, token)


class CallEngine:
    """
    Owns the call session and wires commands, signaling and media together.
    """

    def __init__(
        self,
        config: EngineConfig,
        transport: Any,
        *,
        presence: Optional[PresenceDirectory] = None,
        acquirer: Optional[MediaAcquirer] = None,
        factory: Optional[PeerConnectionFactory] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not config.self_id:
            raise ValueError("EngineConfig.self_id is required")
        self.config = config
        self.transport = transport
        self.presence = presence
        self.acquirer = acquirer or MediaAcquirer(config.media)
        self.factory = factory or PeerConnectionFactory(config.ice_strategies)
        self._clock = clock or time.monotonic
        self.me = Participant(config.self_id, config.display_name, config.avatar)
        self.session = CallSession(local_participant=self.me)

        self._snapshots = _ObserverSet("Snapshot")
        self._notices = _ObserverSet("Notice")
        self._records = _ObserverSet("Record")
        self._mailbox: "asyncio.Queue[Union[Tuple[str, Dict[str, Any]], TrackSignal]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._event_lock = asyncio.Lock()
        self._teardown_task: Optional[asyncio.Task] = None
        self._background: set = set()
        self.pending_invitation: Optional[GroupInvitationPayload] = None

        self._handlers: Dict[str, Callable[[Any], Any]] = {
            events.CALL_INCOMING: self._on_incoming,
            events.CALL_RINGING: self._on_ringing,
            events.CALL_ANSWERED: self._on_answered,
            events.CALL_REJECTED: self._on_rejected,
            events.CALL_ENDED: self._on_ended,
            events.CALL_FAILED: self._on_failed,
            events.CALL_MUTE_STATUS: self._on_mute_status,
            events.WEBRTC_OFFER: self._on_offer,
            events.WEBRTC_ANSWER: self._on_answer,
            events.WEBRTC_ICE_CANDIDATE: self._on_ice_candidate,
            events.GROUP_INVITATION: self._on_group_invitation,
            events.GROUP_PARTICIPANT_JOINED: self._on_participant_joined,
            events.GROUP_PARTICIPANT_LEFT: self._on_participant_left,
            events.GROUP_OFFER: self._on_group_offer,
            events.GROUP_ANSWER: self._on_group_answer,
            events.GROUP_ICE_CANDIDATE: self._on_group_ice_candidate,
            events.GROUP_TRACKS_UPDATED: self._on_group_tracks,
            events.GROUP_SCREEN_SHARE_STARTED: self._on_group_screen_share,
            events.GROUP_SCREEN_SHARE_STOPPED: self._on_group_screen_share,
        }
        for event in events.INBOUND_EVENTS:
            transport.subscribe(event, self._subscriber(event))

    # ------------------------------------------------------------ observers

    def subscribe(self, callback: Callable[[CallSnapshot], None]) -> int:
        token = self._snapshots.add(callback)
        try:
            callback(self.snapshot())
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Snapshot observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._snapshots.remove(token)

    def subscribe_notices(self, callback: Callable[[Notice], None]) -> int:
        return self._notices.add(callback)

    def unsubscribe_notices(self, token: int) -> None:
        self._notices.remove(token)

    def subscribe_records(self, callback: Callable[[CallRecord], None]) -> int:
        return self._records.add(callback)

    def unsubscribe_records(self, token: int) -> None:
        self._records.remove(token)

    def snapshot(self) -> CallSnapshot:
        s = self.session
        links = s.links()
        remote_video = any(link.remote_stream.live_video() for link in links if not link.closed)
        signaling_state = links[0].signaling_state.value if s.link is not None and links else None
        participants: Tuple[str, ...] = tuple(sorted(s.group.members)) if s.group is not None else ()
        sent: List[str] = []
        for link in links:
            if link.closed:
                continue
            for ref in link.track_refs():
                if ref.kind.value not in sent:
                    sent.append(ref.kind.value)
        sent_tracks = tuple(sent)
        return CallSnapshot(
            call_id=s.call_id,
            call_type=s.call_type,
            state=s.state,
            is_caller=s.is_caller,
            is_group=s.is_group,
            room_id=s.room_id,
            local_participant=s.local_participant,
            remote_participant=s.remote_participant,
            started_at=s.started_at,
            duration=s.duration,
            is_muted=s.media.muted,
            is_video_enabled=s.media.video_enabled,
            is_screen_sharing=s.media.screen_sharing,
            remote_muted=s.remote_muted,
            remote_video=remote_video,
            signaling_state=signaling_state,
            participants=participants,
            sent_tracks=sent_tracks,
        )

    def _publish(self) -> None:
        self._snapshots.publish(self.snapshot())

    def _notice(self, level: str, code: str, message: str) -> None:
        notice = Notice(level=level, code=code, message=message, call_id=self.session.call_id)
        LOG.info("Notice [%s] %s: %s", level, code, message)
        self._notices.publish(notice)

    # ------------------------------------------------------------- mailbox

    def _subscriber(self, event: str) -> Callable[[Dict[str, Any]], None]:
        def _handler(payload: Dict[str, Any]) -> None:
            self.dispatch(event, payload)

        return _handler

    def dispatch(self, event: str, payload: Optional[Dict[str, Any]]) -> None:
        """Queue an inbound event; events are processed in arrival order."""

        self._ensure_worker()
        self._mailbox.put_nowait((event, dict(payload or {})))

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run_mailbox(), name="callengine-mailbox")

    async def _run_mailbox(self) -> None:
        while True:
            item = await self._mailbox.get()
            try:
                if isinstance(item, TrackSignal):
                    await self.handle_track_signal(item)
                else:
                    await self.handle_event(*item)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - handle_event already absorbs errors
                LOG.exception("Mailbox item %r failed", item)
            finally:
                self._mailbox.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""

        self._ensure_worker()
        await self._mailbox.join()

    async def stop(self) -> None:
        await self.end(reason="shutdown")
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def handle_event(self, event: str, payload: Optional[Dict[str, Any]]) -> None:
        """Validate and apply one inbound signaling event."""

        handler = self._handlers.get(event)
        if handler is None:
            LOG.debug("Ignoring unknown event %s", event)
            return
        try:
            model = parse_inbound(event, payload)
        except ValidationError as exc:
            LOG.warning("Malformed %s payload dropped: %s", event, exc.errors(include_url=False))
            return
        async with self._event_lock:
            try:
                await handler(model)
            except asyncio.CancelledError:
                raise
            except CallEngineError as exc:
                self.session.log.info("%s while handling %s: %s", type(exc).__name__, event, exc)
            except Exception:
                self.session.log.exception("Handling %s failed", event)

    def _is_current(self, model: CallIdPayload) -> bool:
        s = self.session
        if s.call_id is None or model.call_id != s.call_id or s.is_group:
            LOG.debug("Discarding event for stale call %s (current %s)", model.call_id, s.call_id)
            return False
        return True

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -------------------------------------------------------------- helpers

    def _new_session(self, call_id: str, call_type: str, state: CallState, **fields: Any) -> CallSession:
        session = CallSession(
            local_participant=self.me,
            call_id=call_id,
            call_type=call_type,
            state=state,
            log=call_logger(LOG, call_id),
            **fields,
        )
        self.session = session
        return session

    def _require(self, *states: CallState) -> CallSession:
        s = self.session
        if s.state not in states:
            raise CommandRejected(f"Not allowed while {s.state.value}")
        return s

    def _start_media(self, s: CallSession, stream) -> None:
        s.media.stream = stream
        s.local_monitor = TrackMonitor(LOCAL_OWNER, self._mailbox, interval=self.config.track_poll_interval)
        for track in stream.tracks:
            s.local_monitor.watch(track)
        camera = stream.live_video_track()
        s.media.video = CameraVideo(camera) if camera is not None else NoVideo()
        s.negotiator = TrackNegotiator(
            s.media,
            self.acquirer,
            s.targets,
            group=s.is_group,
            monitor=s.local_monitor,
            notice=self._notice,
        )

    def _start_duration(self, s: CallSession) -> None:
        s.started_at = time.time()
        s.connected_at = self._clock()
        s.duration = 0
        s.duration_timer_handle.start(self.config.duration_tick, lambda: self._tick(s))

    def _tick(self, s: CallSession) -> None:
        if s is not self.session or s.connected_at is None:
            return
        s.duration = int(self._clock() - s.connected_at)
        self._publish()

    def _wire_link(self, s: CallSession, link: PeerLink) -> None:
        link.add_listener(lambda changed, state: self._on_connection_state(s, changed, state))
        link.add_track_listener(lambda owner, track: self._on_remote_track(s, owner, track))
        if s.negotiator is not None:
            s.negotiator.attach(link)

    def _open_link(self, s: CallSession) -> PeerLink:
        assert s.remote_participant is not None and s.call_id is not None
        remote_id = s.remote_participant.user_id
        link = self.factory.create(remote_id, logger=s.log)
        s.handler = SignalingHandler(link, DirectOutbox(self.transport, s.call_id, remote_id), is_caller=s.is_caller)
        s.link = link
        self._wire_link(s, link)
        s.log.info("Peer link to %s created with ICE strategy '%s'", remote_id, link.strategy)
        return link

    async def _replay_early_signals(self, s: CallSession) -> None:
        held, s.early_signals = s.early_signals, []
        if held:
            s.log.info("Replaying %d early signaling events", len(held))
        for event, model in held:
            await self._handlers[event](model)

    def _on_connection_state(self, s: CallSession, link: PeerLink, state: str) -> None:
        if s is not self.session or state != "failed":
            return
        if s.group is not None:
            s.log.warning("Connection to %s failed; dropping that participant", link.remote_id)
            self._spawn(s.group.remove_participant(link.remote_id))
            return
        s.log.warning("Connection to %s failed; ending call", link.remote_id)
        self._notice("error", "connection-failed", "Connection lost. The call has ended.")
        self._spawn(self._finish(s, "failed", send=(events.CALL_END, {"call_id": s.call_id, "reason": "failed"})))

    def _on_remote_track(self, s: CallSession, link: PeerLink, track: Any) -> None:
        if s is not self.session:
            return
        monitor = s.remote_monitors.get(link.remote_id)
        if monitor is None:
            monitor = TrackMonitor(f"remote:{link.remote_id}", self._mailbox, interval=self.config.track_poll_interval)
            s.remote_monitors[link.remote_id] = monitor
            self._ensure_worker()
        monitor.watch(track)
        self._publish()

    # ------------------------------------------------------------- commands

    async def initiate(self, peer_id: str, call_type: str = "video", *, peer: Optional[ParticipantInfo] = None) -> CallSnapshot:
        """Start an outgoing 1:1 call."""

        if self.session.active:
            raise Busy()
        peer_id = str(peer_id or "").strip()
        if not peer_id or peer_id == self.me.user_id:
            raise CommandRejected("You cannot call yourself.")
        if call_type not in CALL_TYPES:
            raise CommandRejected(f"Unknown call type '{call_type}'.")
        if self.presence is not None:
            peer = await self.presence.lookup(peer_id) or peer
            if peer is None:
                raise CommandRejected("User not found.")
            if not await self.presence.is_online(peer_id):
                raise CommandRejected(f"{peer.display_name or peer_id} is offline.")
        if self.session.active:
            raise Busy()

        call_id = uuid.uuid4().hex
        s = self._new_session(
            call_id,
            call_type,
            CallState.CALLING,
            is_caller=True,
            remote_participant=Participant.from_info(peer, peer_id),
        )
        self._ensure_worker()
        try:
            stream = await self.acquirer.acquire(call_type)
        except BaseException:
            if self.session is s:
                self.session = CallSession(local_participant=self.me)
            raise
        if self.session is not s or s.state is not CallState.CALLING:
            stream.stop()
            raise CommandRejected("The call was cancelled.")

        self._start_media(s, stream)
        self.transport.send(
            events.CALL_INITIATE,
            {
                "call_id": call_id,
                "receiver_id": peer_id,
                "call_type": call_type,
                "caller_info": self.me.to_info().to_payload(),
            },
        )
        s.no_answer_timer.start(self.config.no_answer_timeout, lambda: self._on_no_answer(s))
        s.log.info("Calling %s (%s)", peer_id, call_type)
        self._publish()
        return self.snapshot()

    async def answer(self) -> CallSnapshot:
        s = self._require(CallState.RINGING)
        if s.is_caller:
            raise CommandRejected("The caller cannot answer their own call.")
        stream = await self.acquirer.acquire(s.call_type)
        if self.session is not s or s.state is not CallState.RINGING:
            stream.stop()
            raise CommandRejected("The call is no longer ringing.")

        s.no_answer_timer.cancel()
        self._start_media(s, stream)
        self.transport.send(events.CALL_ANSWER, {"call_id": s.call_id})
        s.state = CallState.IN_CALL
        self._start_duration(s)
        async with self._event_lock:
            self._open_link(s)
            await self._replay_early_signals(s)
        s.log.info("Answered call from %s", s.remote_participant.user_id if s.remote_participant else "?")
        self._publish()
        return self.snapshot()

    async def reject(self, reason: str = "declined") -> None:
        s = self._require(CallState.RINGING, CallState.CALLING)
        if s.state is CallState.RINGING:
            await self._finish(s, "rejected", send=(events.CALL_REJECT, {"call_id": s.call_id, "reason": reason}))
        else:
            await self._finish(s, "cancelled", send=(events.CALL_END, {"call_id": s.call_id, "reason": "cancelled"}))

    async def end(self, reason: str = "hangup") -> None:
        """Hang up.  Safe to call in any state and any number of times; never raises."""

        s = self.session
        if self._teardown_task is not None and not self._teardown_task.done():
            await asyncio.shield(self._teardown_task)
            return
        if not s.active:
            return
        if s.is_group:
            send = (events.GROUP_LEAVE, {"room_id": s.room_id})
            outcome = "completed"
        elif s.state is CallState.RINGING:
            send = (events.CALL_REJECT, {"call_id": s.call_id, "reason": reason})
            outcome = "rejected"
        else:
            send = (events.CALL_END, {"call_id": s.call_id, "reason": reason})
            outcome = "completed" if s.state is CallState.IN_CALL else "cancelled"
        await self._finish(s, outcome, send=send)

    async def toggle_mute(self) -> bool:
        s = self._require(CallState.IN_CALL, CallState.CALLING)
        if s.negotiator is None:
            raise CommandRejected("No local media.")
        muted = s.negotiator.toggle_mute()
        if s.is_group:
            self._send_group_tracks(s)
        else:
            self.transport.send(events.CALL_MUTE_STATUS, {"call_id": s.call_id, "is_muted": muted})
        self._publish()
        return muted

    def _require_media_call(self) -> CallSession:
        s = self._require(CallState.IN_CALL)
        if s.negotiator is None:
            raise CommandRejected("No local media.")
        if not s.is_group and (s.link is None or s.link.closed):
            raise CommandRejected("The call is not connected yet.")
        return s

    async def enable_video(self) -> bool:
        s = self._require_media_call()
        if s.call_type != "video":
            raise CommandRejected("Video is only available in video calls.")
        renegotiated = await s.negotiator.enable_video()
        if s is self.session:
            if s.is_group:
                self._send_group_tracks(s)
            self._publish()
        return renegotiated

    async def disable_video(self) -> None:
        s = self._require_media_call()
        await s.negotiator.disable_video()
        if s.is_group:
            self._send_group_tracks(s)
        self._publish()

    async def toggle_video(self) -> bool:
        """Returns the new video-enabled flag."""

        s = self._require_media_call()
        if s.media.video_enabled:
            await self.disable_video()
        else:
            await self.enable_video()
        return s.media.video_enabled

    async def start_screen_share(self) -> bool:
        s = self._require_media_call()
        started = await s.negotiator.start_screen_share()
        if s is not self.session:
            return False
        if started and s.is_group and isinstance(s.media.video, ScreenShareVideo):
            self.transport.send(
                events.GROUP_SCREEN_SHARE_START, {"room_id": s.room_id, "track_id": s.media.video.track.id}
            )
        self._publish()
        return started

    async def stop_screen_share(self) -> None:
        s = self._require_media_call()
        was_sharing = s.media.screen_sharing
        await s.negotiator.stop_screen_share()
        if was_sharing and s.is_group and s is self.session:
            self.transport.send(events.GROUP_SCREEN_SHARE_STOP, {"room_id": s.room_id})
        self._publish()

    async def toggle_screen_share(self) -> bool:
        s = self._require_media_call()
        if s.media.screen_sharing:
            await self.stop_screen_share()
            return False
        return await self.start_screen_share()

    # ----------------------------------------------------------- group calls

    async def join_group(self, room_id: str, group_id: str, call_type: str = "video") -> CallSnapshot:
        if self.session.active:
            raise Busy()
        if call_type not in CALL_TYPES:
            raise CommandRejected(f"Unknown call type '{call_type}'.")
        s = self._new_session(
            room_id, call_type, CallState.IN_CALL, is_group=True, room_id=room_id, group_id=group_id
        )
        self._ensure_worker()
        try:
            stream = await self.acquirer.acquire(call_type)
        except BaseException:
            if self.session is s:
                self.session = CallSession(local_participant=self.me)
            raise
        if self.session is not s:
            stream.stop()
            raise CommandRejected("The call was cancelled.")

        s.group = GroupCall(
            room_id,
            group_id,
            self_id=self.me.user_id,
            transport=self.transport,
            factory=self.factory,
            on_link=lambda link: self._wire_link(s, link),
            logger=s.log,
        )
        self._start_media(s, stream)
        self.pending_invitation = None
        self.transport.send(
            events.GROUP_JOIN,
            {
                "room_id": room_id,
                "group_id": group_id,
                "call_type": call_type,
                "user_info": self.me.to_info().to_payload(),
            },
        )
        self._start_duration(s)
        s.log.info("Joined group call %s", room_id)
        self._publish()
        return self.snapshot()

    async def leave_group(self) -> None:
        s = self.session
        if not s.is_group:
            raise CommandRejected("Not in a group call.")
        await self.end(reason="left")

    def _send_group_tracks(self, s: CallSession) -> None:
        if s.negotiator is None:
            return
        self.transport.send(
            events.GROUP_UPDATE_TRACKS, {"room_id": s.room_id, "tracks": s.negotiator.describe_tracks()}
        )

    # -------------------------------------------------------------- teardown

    async def _on_no_answer(self, s: CallSession) -> None:
        if s is not self.session:
            return
        if s.state is CallState.CALLING:
            s.log.info("No answer after %.0fs", self.config.no_answer_timeout)
            self._notice("warning", NoAnswer.code, NoAnswer.remediation)
            await self._finish(s, "missed", send=(events.CALL_END, {"call_id": s.call_id, "reason": "no-answer"}))
        elif s.state is CallState.RINGING:
            s.log.info("Incoming call was not answered")
            self._notice("info", CallTimeout.code, CallTimeout.remediation)
            reject = {"call_id": s.call_id, "reason": CallTimeout.code}
            await self._finish(s, "missed", send=(events.CALL_REJECT, reject))

    async def _finish(
        self,
        s: CallSession,
        outcome: str,
        *,
        send: Optional[Tuple[str, Dict[str, Any]]] = None,
    ) -> None:
        if self._teardown_task is not None and not self._teardown_task.done():
            await asyncio.shield(self._teardown_task)
            return
        if s is not self.session or not s.active:
            return
        task = asyncio.ensure_future(self._teardown(s, outcome, send))
        self._teardown_task = task
        await asyncio.shield(task)

    async def _teardown(self, s: CallSession, outcome: str, send: Optional[Tuple[str, Dict[str, Any]]]) -> None:
        was_in_call = s.connected_at is not None
        try:
            s.state = CallState.ENDED
            self._publish()
            s.no_answer_timer.cancel()
            s.duration_timer_handle.cancel()
            if s.connected_at is not None:
                s.duration = int(self._clock() - s.connected_at)
            for monitor in [s.local_monitor, *s.remote_monitors.values()]:
                if monitor is not None:
                    monitor.cancel()
            if send is not None and not s.remote_ended:
                try:
                    self.transport.send(*send)
                except Exception:
                    s.log.exception("Sending %s failed during teardown", send[0])
            s.media.stop()
            if s.group is not None:
                await s.group.close()
            if s.link is not None:
                await s.link.close()
            record = CallRecord(
                call_id=s.call_id or "",
                call_type=s.call_type,
                peer_id=s.room_id if s.is_group else (s.remote_participant.user_id if s.remote_participant else None),
                peer_name=(s.remote_participant.display_name if s.remote_participant else "") or "",
                direction="outgoing" if s.is_caller or s.is_group else "incoming",
                outcome=outcome if (was_in_call or outcome != "completed") else "cancelled",
                duration=s.duration if was_in_call else 0,
                is_group=s.is_group,
            )
            s.log.info("Call ended: %s", call_status_text(record))
            self._records.publish(record)
        except Exception:
            s.log.exception("Error during call teardown; forcing idle")
        finally:
            s.link = None
            s.handler = None
            s.group = None
            s.early_signals.clear()
            s.remote_monitors.clear()
            if self.session is s:
                self.session = CallSession(local_participant=self.me)
            self._publish()

    # ------------------------------------------------------ inbound: 1:1 call

    async def _on_incoming(self, m: IncomingPayload) -> None:
        s = self.session
        if s.call_id == m.call_id and s.active:
            s.log.debug("Duplicate incoming call %s ignored", m.call_id)
            return
        if s.active:
            LOG.info("Busy: rejecting incoming call %s from %s", m.call_id, m.caller_id)
            self.transport.send(events.CALL_REJECT, {"call_id": m.call_id, "reason": "busy"})
            return
        caller = Participant.from_info(m.caller_info, m.caller_id)
        s = self._new_session(m.call_id, m.call_type, CallState.RINGING, is_caller=False, remote_participant=caller)
        s.no_answer_timer.start(self.config.no_answer_timeout, lambda: self._on_no_answer(s))
        s.log.info("Incoming %s call from %s", m.call_type, caller.display_name or caller.user_id)
        self._publish()

    async def _on_ringing(self, m: CallIdPayload) -> None:
        if self._is_current(m):
            self.session.log.info("Remote device is ringing")

    async def _on_answered(self, m: CallIdPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        if not s.is_caller or s.offer_started:
            s.log.debug("Duplicate answered event ignored")
            return
        if s.state is not CallState.CALLING:
            return
        s.offer_started = True
        s.no_answer_timer.cancel()
        s.state = CallState.IN_CALL
        self._start_duration(s)
        self._open_link(s)
        self._publish()
        await self._replay_early_signals(s)
        assert s.handler is not None
        await s.handler.create_offer()
        self._publish()

    async def _on_rejected(self, m: ReasonPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        if s.state not in (CallState.CALLING, CallState.RINGING):
            return
        s.remote_ended = True
        self._notice("info", "rejected", "Call was declined." if m.reason != "busy" else "User is busy.")
        await self._finish(s, "rejected")

    async def _on_ended(self, m: ReasonPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        s.remote_ended = True
        outcome = "completed" if s.state is CallState.IN_CALL else "missed"
        self._notice("info", "ended", "Call ended.")
        await self._finish(s, outcome)

    async def _on_failed(self, m: ReasonPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        s.remote_ended = True
        reason = m.reason or "failed"
        message = "User is offline." if reason == "user-offline" else f"Call failed ({reason})."
        self._notice("error", "failed", message)
        await self._finish(s, "failed")

    async def _on_mute_status(self, m: MuteStatusPayload) -> None:
        if not self._is_current(m):
            return
        self.session.remote_muted = bool(m.is_muted)
        self._publish()

    def _hold(self, s: CallSession, event: str, model: SignalModel) -> None:
        s.log.info("Holding early %s until the peer link exists", event)
        s.early_signals.append((event, model))

    async def _on_offer(self, m: OfferPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        if s.handler is None:
            if s.state in (CallState.RINGING, CallState.IN_CALL, CallState.CALLING):
                self._hold(s, events.WEBRTC_OFFER, m)
            return
        await s.handler.handle_offer(m.offer)
        self._publish()

    async def _on_answer(self, m: AnswerPayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        if s.handler is None:
            s.log.info("Answer arrived without a peer link; dropped")
            return
        await s.handler.handle_answer(m.answer)
        self._publish()

    async def _on_ice_candidate(self, m: IceCandidatePayload) -> None:
        if not self._is_current(m):
            return
        s = self.session
        if s.handler is None:
            if s.state in (CallState.RINGING, CallState.IN_CALL, CallState.CALLING):
                self._hold(s, events.WEBRTC_ICE_CANDIDATE, m)
            return
        await s.handler.handle_ice_candidate(m.candidate)

    # ---------------------------------------------------- inbound: group call

    def _current_room(self, room_id: str) -> Optional[GroupCall]:
        s = self.session
        if not s.is_group or s.group is None or s.room_id != room_id:
            LOG.debug("Discarding event for room %s (current %s)", room_id, s.room_id)
            return None
        return s.group

    async def _on_group_invitation(self, m: GroupInvitationPayload) -> None:
        if self.session.active:
            LOG.info("Ignoring group call invitation for %s while busy", m.room_id)
            return
        self.pending_invitation = m
        who = m.caller_info.display_name if m.caller_info else "Someone"
        self._notice("info", "group-invitation", f"{who} started a {m.call_type} call in {m.group_name or 'a group'}.")

    async def _on_participant_joined(self, m: GroupParticipantPayload) -> None:
        group = self._current_room(m.room_id)
        if group is None:
            return
        await group.add_participant(m.user_id, m.user_info)
        self._publish()

    async def _on_participant_left(self, m: GroupParticipantPayload) -> None:
        group = self._current_room(m.room_id)
        if group is None:
            return
        monitor = self.session.remote_monitors.pop(m.user_id, None)
        if monitor is not None:
            monitor.cancel()
        await group.remove_participant(m.user_id)
        self._publish()

    async def _on_group_offer(self, m: GroupOfferPayload) -> None:
        group = self._current_room(m.room_id)
        if group is not None:
            await group.handle_offer(m.sender_id or "", m.offer)
            self._publish()

    async def _on_group_answer(self, m: GroupAnswerPayload) -> None:
        group = self._current_room(m.room_id)
        if group is not None:
            await group.handle_answer(m.sender_id or "", m.answer)

    async def _on_group_ice_candidate(self, m: GroupIceCandidatePayload) -> None:
        group = self._current_room(m.room_id)
        if group is not None:
            await group.handle_ice_candidate(m.sender_id or "", m.candidate)

    async def _on_group_tracks(self, m: GroupTracksPayload) -> None:
        group = self._current_room(m.room_id)
        if group is not None and m.user_id:
            group.remote_tracks[m.user_id] = dict(m.tracks)
            self._publish()

    async def _on_group_screen_share(self, m: GroupScreenSharePayload) -> None:
        group = self._current_room(m.room_id)
        if group is None or not m.user_id:
            return
        if m.track_id is not None:
            group.screen_sharers[m.user_id] = m.track_id
        else:
            group.screen_sharers.pop(m.user_id, None)
        self._publish()

    # ---------------------------------------------------------- track events

    async def handle_track_signal(self, signal: TrackSignal) -> None:
        s = self.session
        if not s.active:
            return
        if signal.owner != LOCAL_OWNER:
            self._publish()
            return
        if signal.event is not TrackEvent.ENDED:
            self._publish()
            return
        video = s.media.video
        if isinstance(video, ScreenShareVideo) and video.track.id == signal.track_id:
            s.log.info("Screen capture ended by the system; stopping screen share")
            # Stopping may wait on a renegotiation answer, which arrives through this mailbox.
            self._spawn(self._auto_stop_screen_share(s))
            self._notice("info", "screen-share-ended", "Screen sharing ended.")
        elif isinstance(video, CameraVideo) and video.track.id == signal.track_id:
            s.media.video = NoVideo()
            self._notice("warning", "camera-unavailable", "Camera disconnected.")
        elif signal.kind == "audio":
            self._notice("warning", "microphone-unavailable", "Microphone disconnected.")
        self._publish()

    async def _auto_stop_screen_share(self, s: CallSession) -> None:
        if s is not self.session:
            return
        try:
            await self.stop_screen_share()
        except CallEngineError as exc:
            s.log.info("Automatic screen share stop skipped: %s", exc)


__all__ = [
    "CallEngine",
    "CallRecord",
    "CallSession",
    "CallSnapshot",
    "CallState",
    "Notice",
    "Participant",
    "call_status_text",
    "format_call_duration",
]
