"""
Engine process entrypoint.

Resolves the profile, initialises logging and serves the control API with
uvicorn.  Without a chat backend connection the engine is attached to an
in-process loopback relay, which is enough to drive the UI locally.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .config import EngineConfig, load_config
from .api.server import build_engine, create_app
from .presence import HttpPresenceDirectory
from .session import CallEngine
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def make_engine(config: EngineConfig) -> CallEngine:
    engine = build_engine(config)
    if config.presence_url:
        engine.presence = HttpPresenceDirectory(config.presence_url)
    return engine


async def serve(config: EngineConfig, host: str = "127.0.0.1", port: int = 8080) -> None:
    """
    Run the control API inside an asyncio loop.

    Parameters
    ----------
    config:
        Top level engine configuration.
    host, port:
        Bind address for the FastAPI/uvicorn server.
    """

    import uvicorn

    configure_logging()
    engine = make_engine(config)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info("Call engine starting as %s (profile '%s')", config.self_id, config.profile)
        try:
            yield
        finally:
            try:
                await engine.stop()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to stop the call engine cleanly.")
            LOG.info("Call engine shut down")

    app = create_app(engine=engine, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Call engine control server")
    parser.add_argument("--profile", default="default", help="engine profile to load")
    parser.add_argument("--self-id", default=None, help="user id of the local participant")
    parser.add_argument("--display-name", default=None, help="display name of the local participant")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the API server")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    if args.debug:
        configure_logging(logging.DEBUG)
    config = load_config(args.profile)
    if args.self_id:
        config.self_id = args.self_id
    if args.display_name:
        config.display_name = args.display_name

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port))
    except KeyboardInterrupt:
        LOG.info("Engine interrupted by user.")


if __name__ == "__main__":
    run()
