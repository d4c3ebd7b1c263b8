import asyncio

from callengine.utils.timers import OneShotTimer, PeriodicTimer


def test_one_shot_timer_fires_once() -> None:
    async def scenario():
        fired = []
        timer = OneShotTimer("fires")
        timer.start(0.01, lambda: fired.append("x"))
        pending_before = timer.pending
        await asyncio.sleep(0.05)
        return fired, pending_before, timer.pending

    fired, pending_before, pending_after = asyncio.run(scenario())
    assert fired == ["x"]
    assert pending_before is True
    assert pending_after is False


def test_one_shot_timer_cancel_and_restart() -> None:
    async def scenario():
        fired = []
        timer = OneShotTimer("restart")
        timer.start(0.01, lambda: fired.append("first"))
        timer.start(0.01, lambda: fired.append("second"))
        await asyncio.sleep(0.05)
        timer.start(0.01, lambda: fired.append("third"))
        timer.cancel()
        timer.cancel()
        await asyncio.sleep(0.05)
        return fired

    assert asyncio.run(scenario()) == ["second"]


def test_one_shot_timer_awaits_async_callback() -> None:
    async def scenario():
        done = asyncio.Event()

        async def callback() -> None:
            await asyncio.sleep(0)
            done.set()

        timer = OneShotTimer("async")
        timer.start(0, callback)
        await asyncio.wait_for(done.wait(), timeout=1)
        return done.is_set()

    assert asyncio.run(scenario()) is True


def test_periodic_timer_stops_when_cancelled_from_callback() -> None:
    async def scenario():
        ticks = []
        timer = PeriodicTimer("ticks")

        def callback() -> None:
            ticks.append(len(ticks))
            if len(ticks) == 3:
                timer.cancel()

        timer.start(0.005, callback)
        await asyncio.sleep(0.1)
        return ticks, timer.pending

    ticks, pending = asyncio.run(scenario())
    assert ticks == [0, 1, 2]
    assert pending is False


def test_periodic_timer_survives_callback_errors() -> None:
    async def scenario():
        ticks = []
        timer = PeriodicTimer("errors")

        def callback() -> None:
            ticks.append(1)
            raise RuntimeError("boom")

        timer.start(0.005, callback)
        await asyncio.sleep(0.05)
        timer.cancel()
        return len(ticks)

    assert asyncio.run(scenario()) >= 2
