import asyncio

import pytest

from callengine.errors import ConnectionConfigurationRejected, Unsupported
from callengine.rtc.factory import PeerConnectionFactory, build_configuration
from callengine.rtc.ice import IceServer, IceStrategy

from fakes import FakePeerConnection


def test_build_configuration_single_stun() -> None:
    strategy = IceStrategy(name="single-stun", servers=[IceServer(urls=["stun:stun.example.org:3478"])])

    configuration = build_configuration(strategy)

    assert [server.urls for server in configuration.iceServers] == [["stun:stun.example.org:3478"]]


def test_build_configuration_rejects_candidate_pool() -> None:
    strategy = IceStrategy(name="pooled", servers=[IceServer(urls=["stun:stun.example.org"])], candidate_pool_size=10)

    with pytest.raises(ConnectionConfigurationRejected):
        build_configuration(strategy)


def test_factory_walks_ladder_until_accepted() -> None:
    built = []

    def builder(strategy: IceStrategy) -> FakePeerConnection:
        build_configuration(strategy)
        built.append(strategy.name)
        return FakePeerConnection(strategy.name)

    link = PeerConnectionFactory(builder=builder).create("bob")

    assert link.strategy == "single-stun"
    assert built == ["single-stun"]
    assert link.remote_id == "bob"


def test_factory_raises_unsupported_when_every_rung_fails() -> None:
    def builder(strategy: IceStrategy) -> FakePeerConnection:
        raise RuntimeError(f"{strategy.name} unavailable")

    with pytest.raises(Unsupported) as excinfo:
        PeerConnectionFactory([IceStrategy(name="a"), IceStrategy(name="b")], builder=builder).create("bob")

    assert "a: a unavailable" in str(excinfo.value)


def test_default_factory_builds_aiortc_connection() -> None:
    async def scenario():
        link = PeerConnectionFactory().create("bob")
        state = link.signaling_state.value
        await link.close()
        return link.strategy, state, link.closed

    strategy, state, closed = asyncio.run(scenario())
    assert strategy == "single-stun"
    assert state == "stable"
    assert closed is True
