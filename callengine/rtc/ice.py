"""
ICE server configuration ladder used by the peer connection factory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

GOOGLE_STUN = "stun:stun.l.google.com:19302"
GOOGLE_STUN_BACKUPS = ("stun:stun1.l.google.com:19302", "stun:stun2.l.google.com:19302")


@dataclass
class IceServer:
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "IceServer":
        if isinstance(value, str):
            return cls(urls=[value])
        if isinstance(value, Mapping):
            urls = value.get("urls") or value.get("url") or []
            if isinstance(urls, str):
                urls = [urls]
            return cls(
                urls=[str(url) for url in urls],
                username=value.get("username"),
                credential=value.get("credential"),
            )
        raise ValueError(f"Unsupported ICE server entry: {value!r}")

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"urls": list(self.urls)}
        if self.username:
            payload["username"] = self.username
        if self.credential:
            payload["credential"] = self.credential
        return payload


@dataclass
class IceStrategy:
    """
    One rung of the configuration ladder.

    ``candidate_pool_size`` and ``extra_properties`` are passed through to the
    connection configuration as-is; runtimes that do not know a key reject the
    whole shape, which is what moves the factory down to the next rung.
    """

    name: str
    servers: List[IceServer] = field(default_factory=list)
    candidate_pool_size: Optional[int] = None
    extra_properties: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IceStrategy":
        servers = [IceServer.from_value(entry) for entry in payload.get("servers") or []]
        pool = payload.get("candidate_pool_size")
        extra = {
            key: value
            for key, value in payload.items()
            if key not in {"name", "servers", "candidate_pool_size"}
        }
        return cls(
            name=str(payload.get("name") or "unnamed"),
            servers=servers,
            candidate_pool_size=int(pool) if pool is not None else None,
            extra_properties=extra,
        )

    def iter_configuration_properties(self) -> Dict[str, object]:
        """
        Return the flattened property map handed to the connection configuration.
        """

        props: Dict[str, object] = dict(self.extra_properties)
        if self.candidate_pool_size is not None:
            props["iceCandidatePoolSize"] = int(self.candidate_pool_size)
        return props

    def describe(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "servers": [server.to_dict() for server in self.servers],
            "properties": self.iter_configuration_properties(),
        }


def default_ice_ladder() -> List[IceStrategy]:
    """Most featured first, empty server list last."""

    return [
        IceStrategy(
            name="full",
            servers=[IceServer(urls=[GOOGLE_STUN]), *(IceServer(urls=[url]) for url in GOOGLE_STUN_BACKUPS)],
            candidate_pool_size=10,
        ),
        IceStrategy(name="single-stun-pooled", servers=[IceServer(urls=[GOOGLE_STUN])], candidate_pool_size=10),
        IceStrategy(name="single-stun", servers=[IceServer(urls=[GOOGLE_STUN])]),
        IceStrategy(name="empty"),
    ]


def ladder_from_config(entries: Optional[Sequence[Mapping[str, Any]]]) -> List[IceStrategy]:
    if not entries:
        return default_ice_ladder()
    return [IceStrategy.from_dict(entry) for entry in entries]


__all__ = ["IceServer", "IceStrategy", "default_ice_ladder", "ladder_from_config"]
