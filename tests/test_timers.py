import asyncio

from peerlink.tools.timers import AggregatingTimers, ResettableTimer


async def test_resettable_timer_restarts_delay():
    fired = []
    timer = ResettableTimer(0.03, lambda: fired.append(True))

    timer.schedule()
    await asyncio.sleep(0.02)
    timer.schedule()
    await asyncio.sleep(0.02)
    assert fired == []

    await asyncio.sleep(0.03)
    assert fired == [True]
    assert not timer.pending


async def test_resettable_timer_cancel():
    fired = []
    timer = ResettableTimer(0.01, lambda: fired.append(True))

    timer.schedule()
    timer.cancel()
    await asyncio.sleep(0.03)

    assert fired == []


async def test_aggregating_timer_keeps_last_callback():
    fired = []
    timers = AggregatingTimers(period=0.02)

    for n in range(5):
        timers.add("room", lambda n=n: fired.append(n))
    await asyncio.sleep(0.05)

    assert fired == [4]
    assert not timers.is_pending("room")


async def test_aggregating_timer_fires_after_cap():
    fired = []
    timers = AggregatingTimers(period=1)

    for n in range(22):
        timers.add("room", lambda n=n: fired.append(n))

    assert fired == [21]
    assert not timers.is_pending("room")


async def test_aggregating_timer_keys_are_independent():
    fired = []
    timers = AggregatingTimers(period=0.01)

    timers.add("a", lambda: fired.append("a"))
    timers.add("b", lambda: fired.append("b"))
    await asyncio.sleep(0.03)

    assert sorted(fired) == ["a", "b"]


async def test_callback_errors_do_not_escape():
    fired = []
    timers = AggregatingTimers(period=0.01)

    def boom():
        raise RuntimeError("boom")

    timers.add("a", boom)
    timers.add("b", lambda: fired.append("b"))
    await asyncio.sleep(0.03)

    assert fired == ["b"]


async def test_cancel_all():
    fired = []
    timers = AggregatingTimers(period=0.01)

    timers.add("a", lambda: fired.append("a"))
    timers.cancel_all()
    await asyncio.sleep(0.03)

    assert fired == []
