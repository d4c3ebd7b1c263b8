import asyncio

import httpx

from callengine.presence import HttpPresenceDirectory, StaticPresenceDirectory
from callengine.protocol.schemas import ParticipantInfo


def make_directory(handler) -> HttpPresenceDirectory:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPresenceDirectory("http://chat.test/api/", client=client)


def test_http_lookup_and_online() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/users/bob":
            return httpx.Response(200, json={"_id": "bob", "fullname": "Bob", "profilePic": "bob.png"})
        if request.url.path == "/api/presence/online":
            return httpx.Response(200, json={"users": ["bob", "dave"]})
        return httpx.Response(404)

    directory = make_directory(handler)

    async def scenario():
        return (
            await directory.lookup("bob"),
            await directory.lookup("carol"),
            await directory.is_online("bob"),
            await directory.is_online("carol"),
        )

    bob, carol, bob_online, carol_online = asyncio.run(scenario())
    assert bob == ParticipantInfo(user_id="bob", display_name="Bob", avatar="bob.png")
    assert carol is None
    assert bob_online is True
    assert carol_online is False


def test_http_failures_mean_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/online"):
            raise httpx.ConnectError("backend down", request=request)
        return httpx.Response(500, json={"error": "boom"})

    directory = make_directory(handler)

    async def scenario():
        return await directory.lookup("bob"), await directory.is_online("bob")

    assert asyncio.run(scenario()) == (None, False)


def test_online_list_payload() -> None:
    directory = make_directory(lambda request: httpx.Response(200, json=["bob"]))

    assert asyncio.run(directory.is_online("bob")) is True


def test_static_directory() -> None:
    directory = StaticPresenceDirectory([ParticipantInfo(user_id="bob", display_name="Bob")])
    directory.add(ParticipantInfo(user_id="carol"), online=False)

    async def scenario():
        return (
            (await directory.lookup("bob")).display_name,
            await directory.is_online("bob"),
            await directory.is_online("carol"),
            await directory.lookup("zed"),
        )

    assert asyncio.run(scenario()) == ("Bob", True, False, None)
