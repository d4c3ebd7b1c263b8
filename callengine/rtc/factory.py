"""
Peer connection factory with an ICE configuration ladder.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from ..errors import ConnectionConfigurationRejected, Unsupported
from .ice import IceStrategy, default_ice_ladder
from .peer_link import PeerLink

LOG = logging.getLogger(__name__)

ConnectionBuilder = Callable[[IceStrategy], Any]


def build_configuration(strategy: IceStrategy) -> RTCConfiguration:
    """
    Translate one ladder rung into an ``RTCConfiguration``.

    Raises :class:`ConnectionConfigurationRejected` when the runtime does not
    accept the shape (aiortc, for instance, has no candidate pool setting).
    """

    try:
        servers = [
            RTCIceServer(urls=list(server.urls), username=server.username, credential=server.credential)
            for server in strategy.servers
        ]
        return RTCConfiguration(iceServers=servers, **strategy.iter_configuration_properties())
    except (TypeError, ValueError) as exc:
        raise ConnectionConfigurationRejected(
            f"ICE configuration '{strategy.name}' rejected: {exc}"
        ) from exc


def aiortc_connection(strategy: IceStrategy) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=build_configuration(strategy))


class PeerConnectionFactory:
    """
    Create :class:`PeerLink` objects, walking the ICE ladder until one rung
    is accepted.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[IceStrategy]] = None,
        *,
        builder: Optional[ConnectionBuilder] = None,
    ) -> None:
        self.strategies: List[IceStrategy] = list(strategies) if strategies else default_ice_ladder()
        self._builder = builder or aiortc_connection

    def create(self, remote_id: str, *, logger: Optional[logging.Logger] = None) -> PeerLink:
        rejections: List[str] = []
        for strategy in self.strategies:
            try:
                connection = self._builder(strategy)
            except ConnectionConfigurationRejected as exc:
                rejections.append(str(exc))
                LOG.info("%s; trying a simpler configuration", exc)
                continue
            except Exception as exc:
                rejections.append(f"{strategy.name}: {exc}")
                LOG.info("Connection creation with '%s' failed (%s); trying a simpler configuration", strategy.name, exc)
                continue
            if rejections:
                LOG.warning("Using fallback ICE configuration '%s'", strategy.name)
            return PeerLink(connection, remote_id=remote_id, strategy=strategy.name, logger=logger)
        raise Unsupported("No ICE configuration was accepted: " + "; ".join(rejections))


__all__ = ["PeerConnectionFactory", "aiortc_connection", "build_configuration"]
