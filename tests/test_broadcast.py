from __future__ import annotations

import threading

from conftest import FakeConnection
from execstream.broadcast import InMemoryLogHistory, LogBroadcast


def test_subscribe_replays_backlog_in_order_then_live() -> None:
    broadcast = LogBroadcast()
    for line in ("l1", "l2", "l3"):
        broadcast.publish(line)

    conn = FakeConnection()
    broadcast.subscribe(conn)
    broadcast.publish("l4")

    assert conn.texts() == ["l1", "l2", "l3", "l4"]


def test_subscribe_twice_does_not_duplicate_backlog() -> None:
    broadcast = LogBroadcast()
    broadcast.publish("x")
    conn = FakeConnection()

    broadcast.subscribe(conn)
    broadcast.subscribe(conn)
    broadcast.publish("y")

    assert conn.texts() == ["x", "y"]
    assert broadcast.subscriber_count == 1


def test_concurrent_publish_and_subscribe_no_gap_no_duplicate() -> None:
    broadcast = LogBroadcast()
    n = 2000
    late = FakeConnection("late")
    halfway = threading.Event()

    def _publisher() -> None:
        for i in range(n):
            broadcast.publish(str(i))
            if i == n // 2:
                halfway.set()

    t = threading.Thread(target=_publisher)
    t.start()
    halfway.wait(timeout=5)
    broadcast.subscribe(late)
    t.join()

    assert late.texts() == [str(i) for i in range(n)]


def test_unsubscribe_is_idempotent_and_stops_delivery() -> None:
    broadcast = LogBroadcast()
    conn = FakeConnection()
    broadcast.subscribe(conn)
    broadcast.publish("a")

    broadcast.unsubscribe(conn)
    broadcast.unsubscribe(conn)
    broadcast.publish("b")

    assert conn.texts() == ["a"]
    assert broadcast.subscriber_count == 0


def test_failing_or_closed_connection_is_isolated() -> None:
    broadcast = LogBroadcast()
    broken = FakeConnection("broken", fail_sends=True)
    closed = FakeConnection("closed")
    closed.close()
    healthy = FakeConnection("healthy")
    for conn in (broken, closed, healthy):
        broadcast.subscribe(conn)

    broadcast.publish("hello")

    assert healthy.texts() == ["hello"]
    assert closed.texts() == []
    assert broadcast.history() == ["hello"]


def test_clear_keeps_subscriptions() -> None:
    broadcast = LogBroadcast()
    conn = FakeConnection()
    broadcast.subscribe(conn)
    broadcast.publish("run1")

    broadcast.clear()
    assert broadcast.history_size == 0

    broadcast.publish("run2")
    assert conn.texts() == ["run1", "run2"]

    newcomer = FakeConnection("new")
    broadcast.subscribe(newcomer)
    assert newcomer.texts() == ["run2"]


def test_send_locks_are_created_lazily_and_dropped_on_unsubscribe() -> None:
    broadcast = LogBroadcast()
    conn = FakeConnection()
    broadcast.subscribe(conn)
    assert conn not in broadcast._send_locks

    broadcast.publish("x")
    assert conn in broadcast._send_locks

    broadcast.unsubscribe(conn)
    assert conn not in broadcast._send_locks


def test_in_memory_history_basics() -> None:
    h = InMemoryLogHistory()
    h.append("a")
    h.append("b")
    snap = h.snapshot()
    h.append("c")

    assert snap == ["a", "b"]
    assert h.size() == 3
    h.clear()
    assert h.size() == 0
