"""Change poller diffing and lifecycle against the in-memory sandbox."""

from __future__ import annotations

import asyncio

import sandbox_sync_server as ss
from sandbox_sync_server import ChangeEvent, ChangeKind, ChangePoller


def _collect(poller: ChangePoller) -> list[ChangeEvent]:
    events: list[ChangeEvent] = []
    poller.subscribe(events.append)
    return events


def test_diff_between_ticks(remote, connection):
    remote.add_file("/home/user/a", "x")
    remote.add_file("/home/user/b", "y")
    poller = ChangePoller(connection)
    events = _collect(poller)

    async def scenario():
        await poller.tick()
        events.clear()
        del remote.files["/home/user/b"]
        remote.add_file("/home/user/c", "z")
        await poller.tick()

    asyncio.run(scenario())
    assert sorted(events) == sorted([
        ChangeEvent(ChangeKind.DELETED, "/home/user/b", False),
        ChangeEvent(ChangeKind.CREATED, "/home/user/c", False),
    ])


def test_first_tick_reports_everything_created(remote, connection):
    remote.add_file("/home/user/src/main.py", "print()")
    poller = ChangePoller(connection)
    events = asyncio.run(poller.tick())
    assert events == [
        ChangeEvent(ChangeKind.CREATED, "/home/user/src", True),
        ChangeEvent(ChangeKind.CREATED, "/home/user/src/main.py", False),
    ]
    assert poller.fingerprints == {
        "/home/user/src": ss.DIR_FINGERPRINT,
        "/home/user/src/main.py": 7,
    }


def test_length_change_is_modified(remote, connection):
    remote.add_file("/home/user/a", "x")
    poller = ChangePoller(connection)

    async def scenario():
        await poller.tick()
        remote.files["/home/user/a"] = "xx"
        changed = await poller.tick()
        remote.files["/home/user/a"] = "yy"
        same_length = await poller.tick()
        return changed, same_length

    changed, same_length = asyncio.run(scenario())
    assert changed == [ChangeEvent(ChangeKind.MODIFIED, "/home/user/a", False)]
    assert same_length == []


def test_deleted_directory_keeps_its_flag(remote, connection):
    remote.add_dir("/home/user/tmp")
    poller = ChangePoller(connection)

    async def scenario():
        await poller.tick()
        remote.dirs.discard("/home/user/tmp")
        return await poller.tick()

    assert asyncio.run(scenario()) == [
        ChangeEvent(ChangeKind.DELETED, "/home/user/tmp", True)
    ]


def test_failed_tick_keeps_previous_snapshot(remote, connection):
    remote.add_file("/home/user/a", "x")
    remote.add_file("/home/user/sub/b", "y")
    poller = ChangePoller(connection)
    events = _collect(poller)

    async def scenario():
        await poller.tick()
        events.clear()
        remote.fail.add(("list_dir", "/home/user/sub"))
        assert await poller.tick() is None
        remote.fail.clear()
        return await poller.tick()

    after = asyncio.run(scenario())
    assert events == []
    assert after == []
    assert poller.failed_ticks == 1
    assert poller.ticks == 2


def test_not_connected_tick_fails_quietly():
    poller = ChangePoller(ss.RemoteConnection())
    assert asyncio.run(poller.tick()) is None
    assert poller.failed_ticks == 1


def test_stop_clears_snapshot(remote, connection):
    remote.add_file("/home/user/a", "x")
    poller = ChangePoller(connection, interval=3600)

    async def scenario():
        await poller.tick()
        await poller.stop()
        assert poller.fingerprints == {}
        return await poller.tick()

    assert asyncio.run(scenario()) == [
        ChangeEvent(ChangeKind.CREATED, "/home/user/a", False)
    ]


def test_unsubscribe(remote, connection):
    remote.add_file("/home/user/a", "x")
    poller = ChangePoller(connection)
    events: list[ChangeEvent] = []
    unsubscribe = poller.subscribe(events.append)
    unsubscribe()
    unsubscribe()
    asyncio.run(poller.tick())
    assert events == []


def test_failing_subscriber_does_not_block_others(remote, connection):
    remote.add_file("/home/user/a", "x")
    poller = ChangePoller(connection)

    def broken(event):
        raise ValueError("boom")

    poller.subscribe(broken)
    events = _collect(poller)
    asyncio.run(poller.tick())
    assert [e.path for e in events] == ["/home/user/a"]


def test_background_loop(remote, connection):
    remote.add_file("/home/user/a", "x")
    poller = ChangePoller(connection, interval=0.01)
    events = _collect(poller)

    async def scenario():
        poller.start()
        poller.start()
        assert poller.running
        await asyncio.sleep(0.02)
        remote.add_file("/home/user/b", "y")
        for _ in range(100):
            if any(e.path == "/home/user/b" for e in events):
                break
            await asyncio.sleep(0.01)
        await poller.stop()

    asyncio.run(scenario())
    assert not poller.running
    assert poller.ticks >= 2
    assert [e.path for e in events] == ["/home/user/a", "/home/user/b"]
