import asyncio

from huddle.rooms import Connection, RoomRegistry


def drain(connection):
    items = []
    while True:
        try:
            item = connection.outbox.get_nowait()
        except asyncio.QueueEmpty:
            return items
        if item is not None:
            items.append(item)


def test_join_is_idempotent():
    registry = RoomRegistry()
    conn = Connection("u_a")

    registry.join("c1", conn)
    registry.join("c1", conn)

    assert registry.subscribers("c1") == {conn}
    assert registry.rooms_of(conn) == {"c1"}
    assert registry.stats() == {"rooms": 1, "subscriptions": 1}


def test_leave_when_absent_is_noop():
    registry = RoomRegistry()
    conn = Connection("u_a")

    registry.leave("c1", conn)
    registry.join("c1", conn)
    registry.leave("c1", conn)
    registry.leave("c1", conn)

    assert registry.subscribers("c1") == set()
    assert conn.rooms == set()
    assert registry.stats()["rooms"] == 0


def test_broadcast_reaches_only_room_subscribers():
    registry = RoomRegistry()
    a, b, outsider = Connection("u_a"), Connection("u_b"), Connection("u_c")
    registry.join("c1", a)
    registry.join("c1", b)
    registry.join("c2", outsider)

    delivered = registry.broadcast("c1", {"event": "receive_message", "data": {"id": 1}})

    assert delivered == 2
    assert drain(a) == [{"event": "receive_message", "data": {"id": 1}}]
    assert drain(b) == [{"event": "receive_message", "data": {"id": 1}}]
    assert drain(outsider) == []


def test_broadcast_to_empty_room_delivers_nothing():
    registry = RoomRegistry()

    assert registry.broadcast("nobody-here", {"event": "x"}) == 0


def test_drop_connection_leaves_every_room():
    registry = RoomRegistry()
    a, b = Connection("u_a"), Connection("u_b")
    for chat_id in ("c1", "c2", "c3"):
        registry.join(chat_id, a)
    registry.join("c2", b)

    registry.drop_connection(a)

    assert a.rooms == set()
    assert registry.subscribers("c1") == set()
    assert registry.subscribers("c2") == {b}
    assert registry.broadcast("c1", {"event": "x"}) == 0
    assert drain(a) == []


def test_full_outbox_drops_slow_connection_but_not_others():
    registry = RoomRegistry()
    slow = Connection("u_slow", outbox_limit=1)
    fast = Connection("u_fast", outbox_limit=10)
    registry.join("c1", slow)
    registry.join("c2", slow)
    registry.join("c1", fast)

    registry.broadcast("c1", {"n": 1})
    delivered = registry.broadcast("c1", {"n": 2})

    assert delivered == 1
    assert slow.closed is True
    assert slow.overflowed is True
    assert fast.overflowed is False
    assert slow.rooms == set()
    assert registry.subscribers("c2") == set()
    assert drain(fast) == [{"n": 1}, {"n": 2}]
    # pending events are discarded, the writer only sees the stop marker
    assert slow.outbox.get_nowait() is None


def test_closed_connection_cannot_join():
    registry = RoomRegistry()
    conn = Connection("u_a")
    conn.close()

    registry.join("c1", conn)

    assert registry.subscribers("c1") == set()
    assert conn.deliver({"event": "x"}) is False


def test_lock_is_per_chat():
    registry = RoomRegistry()

    assert registry.lock("c1") is registry.lock("c1")
    assert registry.lock("c1") is not registry.lock("c2")
