"""
FastAPI control surface for the call engine.

The UI collaborator reads the call snapshot and issues commands over REST,
and follows snapshot/notice updates on ``/realtime``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import EngineConfig, read_profiles
from ..errors import Busy, CallEngineError, CommandRejected, MediaError, Unsupported
from ..protocol import LoopbackHub
from ..session import CallEngine, CallRecord, CallSnapshot, Notice
from . import schemas

LOG = logging.getLogger(__name__)


def status_for(exc: CallEngineError) -> int:
    if isinstance(exc, (Busy, CommandRejected)):
        return 409
    if isinstance(exc, Unsupported):
        return 501
    if isinstance(exc, MediaError):
        return 422
    return 400


def error_detail(exc: CallEngineError) -> Dict[str, str]:
    return schemas.ErrorDetail(code=exc.code, message=str(exc), remediation=exc.remediation).model_dump()


async def run_command(operation: Awaitable[Any]) -> Any:
    try:
        return await operation
    except CallEngineError as exc:
        raise HTTPException(status_code=status_for(exc), detail=error_detail(exc)) from exc


class RealtimeChannel:
    """Forward snapshots, notices and call records to one WebSocket client."""

    def __init__(self, engine: CallEngine, websocket: WebSocket, *, queue_size: int = 64) -> None:
        self.engine = engine
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    def _push(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # Snapshots supersede each other; drop the oldest.
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
            self.queue.put_nowait(message)

    def _on_snapshot(self, snapshot: CallSnapshot) -> None:
        self._push({"type": "snapshot", "snapshot": snapshot.to_dict()})

    def _on_notice(self, notice: Notice) -> None:
        self._push({"type": "notice", "notice": notice.to_dict()})

    def _on_record(self, record: CallRecord) -> None:
        self._push({"type": "record", "record": record.to_dict()})

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        tokens = (
            self.engine.subscribe(self._on_snapshot),
            self.engine.subscribe_notices(self._on_notice),
            self.engine.subscribe_records(self._on_record),
        )
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._send_loop())
                task_group.create_task(self._recv_loop())
        except* WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected")
        finally:
            self.engine.unsubscribe(tokens[0])
            self.engine.unsubscribe_notices(tokens[1])
            self.engine.unsubscribe_records(tokens[2])
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await self.websocket.close()

    async def _send_loop(self) -> None:
        while True:
            message = await self.queue.get()
            await self.websocket.send_json(message)

    async def _recv_loop(self) -> None:
        while True:
            message = await self.websocket.receive_json()
            kind = str(message.get("type") or "").lower() if isinstance(message, dict) else ""
            if kind == "ping":
                self._push({"type": "pong"})
            elif kind == "snapshot":
                self._on_snapshot(self.engine.snapshot())
            else:
                self.logger.debug("Ignoring realtime message %r", message)


def build_engine(config: EngineConfig) -> CallEngine:
    """Engine wired to an in-process loopback relay (demo mode)."""

    if not config.self_id:
        config.self_id = "local-user"
    hub = LoopbackHub()
    return CallEngine(config, hub.connect(config.self_id))


def create_app(
    *,
    engine: Optional[CallEngine] = None,
    config: Optional[EngineConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    engine_config = config or (engine.config if engine is not None else EngineConfig())
    call_engine = engine or build_engine(engine_config)

    @contextlib.asynccontextmanager
    async def _engine_lifespan(_app) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await call_engine.stop()

    app = FastAPI(title="Call Engine API", lifespan=lifespan or _engine_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = call_engine

    @app.websocket("/realtime")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await RealtimeChannel(call_engine, websocket).run()

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": engine_config.profile, "state": call_engine.session.state.value}

    @app.get("/profiles")
    async def list_profiles() -> dict:
        profiles = read_profiles()
        return {"active": engine_config.profile, "profiles": sorted(profiles)}

    @app.get("/call")
    async def get_call() -> dict:
        return call_engine.snapshot().to_dict()

    @app.post("/call/initiate")
    async def initiate(request: schemas.InitiateRequest) -> dict:
        snapshot = await run_command(call_engine.initiate(request.peer_id, request.call_type))
        return snapshot.to_dict()

    @app.post("/call/answer")
    async def answer() -> dict:
        snapshot = await run_command(call_engine.answer())
        return snapshot.to_dict()

    @app.post("/call/reject")
    async def reject(request: Optional[schemas.ReasonRequest] = None) -> dict:
        reason = (request.reason if request else None) or "declined"
        await run_command(call_engine.reject(reason))
        return call_engine.snapshot().to_dict()

    @app.post("/call/end")
    async def end(request: Optional[schemas.ReasonRequest] = None) -> dict:
        await call_engine.end((request.reason if request else None) or "hangup")
        return call_engine.snapshot().to_dict()

    @app.post("/call/mute")
    async def mute(request: Optional[schemas.ToggleRequest] = None) -> dict:
        wanted = request.enabled if request else None
        if wanted is None or wanted != call_engine.snapshot().is_muted:
            await run_command(call_engine.toggle_mute())
        return call_engine.snapshot().to_dict()

    @app.post("/call/video")
    async def video(request: Optional[schemas.ToggleRequest] = None) -> dict:
        wanted = request.enabled if request else None
        if wanted is None:
            await run_command(call_engine.toggle_video())
        elif wanted:
            await run_command(call_engine.enable_video())
        else:
            await run_command(call_engine.disable_video())
        return call_engine.snapshot().to_dict()

    @app.post("/call/screen-share")
    async def screen_share(request: Optional[schemas.ToggleRequest] = None) -> dict:
        wanted = request.enabled if request else None
        if wanted is None:
            await run_command(call_engine.toggle_screen_share())
        elif wanted:
            await run_command(call_engine.start_screen_share())
        else:
            await run_command(call_engine.stop_screen_share())
        return call_engine.snapshot().to_dict()

    @app.post("/group/join")
    async def join_group(request: schemas.GroupJoinRequest) -> dict:
        snapshot = await run_command(call_engine.join_group(request.room_id, request.group_id, request.call_type))
        return snapshot.to_dict()

    @app.post("/group/leave")
    async def leave_group() -> dict:
        await run_command(call_engine.leave_group())
        return call_engine.snapshot().to_dict()

    return app


__all__ = ["RealtimeChannel", "build_engine", "create_app", "run_command", "status_for"]
