import asyncio

from semantle.realtime import PresenceHub, RoomFeed
from semantle.timer import InactivityTimer


def test_feed_delivers_per_room_and_skips_failing_handlers():
    async def run():
        feed = RoomFeed()
        got = []

        async def ok(ev):
            got.append(ev["n"])

        async def broken(ev):
            raise RuntimeError("boom")

        feed.subscribe("r1", broken)
        sub = feed.subscribe("r1", ok)
        feed.subscribe("r2", ok)
        await feed.publish("r1", {"n": 1})
        sub.unsubscribe()
        sub.unsubscribe()
        await feed.publish("r1", {"n": 2})
        await feed.publish("r2", {"n": 3})
        return got, feed.subscriber_count("r1")

    got, remaining = asyncio.run(run())
    assert got == [1, 3]
    assert remaining == 1


def test_presence_sync_carries_full_membership():
    async def run():
        hub = PresenceHub()
        ch = hub.channel("room")
        seen = {"a": [], "b": []}

        async def on_a(members):
            seen["a"].append([m["key"] for m in members])

        async def on_b(members):
            seen["b"].append([m["key"] for m in members])

        ch.subscribe("a", on_a)
        await ch.track("a", {"nickname": "A", "player_id": "pa"})
        ch.subscribe("b", on_b)
        await ch.track("b", {"nickname": "B", "player_id": "pb"})
        # re-tracking keeps the original online_at ordering
        await ch.track("a", {"nickname": "A2", "player_id": "pa"})
        await ch.untrack("a")
        members = ch.members()
        await ch.unsubscribe("a")
        await ch.unsubscribe("b")
        return seen, members, hub.channel_count()

    seen, members, channels = asyncio.run(run())
    assert seen["a"] == [["a"], ["a", "b"], ["a", "b"], ["b"]]
    assert seen["b"] == [["a", "b"], ["a", "b"], ["b"]]
    assert [m["key"] for m in members] == ["b"]
    assert members[0]["nickname"] == "B"
    # empty channels are dropped
    assert channels == 0


def test_timer_reset_replaces_pending_expiry():
    async def run():
        fired = []

        async def on_expire(room_id):
            fired.append(room_id)

        t = InactivityTimer(0.2, on_expire)
        t.reset("r1")
        await asyncio.sleep(0.1)
        t.reset("r1")
        await asyncio.sleep(0.1)
        early = list(fired)
        assert t.armed and t.room_id == "r1"
        await asyncio.sleep(0.3)
        await t.wait_fired()
        return early, fired, t.armed

    early, fired, armed = asyncio.run(run())
    assert early == []
    assert fired == ["r1"]
    assert not armed


def test_timer_cancel_prevents_fire():
    async def run():
        fired = []

        async def on_expire(room_id):
            fired.append(room_id)

        t = InactivityTimer(0.02, on_expire)
        t.reset("r1")
        t.cancel()
        t.cancel()
        await asyncio.sleep(0.05)
        return fired, t.armed, t.room_id

    assert asyncio.run(run()) == ([], False, None)
