"""
Test the public event channel and the internal control bus.
"""

import pytest

from procsup.data import ControlEvent
from procsup.events import ControlBus, EventChannel


def test_on_delivers_every_event():
    channel = EventChannel()
    seen = []
    channel.on("exit", seen.append)

    channel.emit("exit", 1)
    channel.emit("exit", 2)

    assert seen == [1, 2]


def test_once_unregisters_after_first_event():
    channel = EventChannel()
    seen = []
    channel.once("ready", seen.append)

    channel.emit("ready", "a")
    channel.emit("ready", "b")

    assert seen == ["a"]
    assert channel.listener_count("ready") == 0


def test_off_removes_subscription():
    channel = EventChannel()
    seen = []
    channel.on("online", seen.append)

    assert channel.off("online", seen.append)
    assert not channel.off("online", seen.append)
    channel.emit("online", 1)

    assert seen == []


def test_emit_without_subscribers_returns_zero():
    assert EventChannel().emit("stopped") == 0


def test_failing_subscriber_does_not_break_delivery(caplog):
    channel = EventChannel()
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    channel.on("exit", broken)
    channel.on("exit", seen.append)
    channel.emit("exit", 7)

    assert seen == [7]
    assert "raised" in caplog.text


def test_subscription_cancel_inside_callback():
    channel = EventChannel()
    seen = []

    def handler(value):
        seen.append(value)
        sub.cancel()

    sub = channel.on("message", handler)
    channel.emit("message", 1)
    channel.emit("message", 2)

    assert seen == [1]


def test_countdown_fires_on_nth_matching_event():
    bus = ControlBus()
    fired = []
    bus.countdown(ControlEvent.READY, 3, fired.append, predicate=lambda w: w % 2 == 0)

    for worker in [1, 2, 3, 4, 5]:
        bus.publish(ControlEvent.READY, worker)
    assert fired == []

    bus.publish(ControlEvent.READY, 6)
    bus.publish(ControlEvent.READY, 8)

    assert fired == [6]
    assert bus.listener_count() == 0


def test_replicated_countdowns_fire_together():
    bus = ControlBus()
    fired = []
    for name in ("old-1", "old-2"):
        bus.countdown(ControlEvent.READY, 2, lambda _w, name=name: fired.append(name))

    bus.publish(ControlEvent.READY, "new-1")
    bus.publish(ControlEvent.READY, "new-2")

    assert sorted(fired) == ["old-1", "old-2"]
    assert bus.listener_count(ControlEvent.READY) == 0


def test_repeated_countdowns_leave_no_subscribers():
    bus = ControlBus()
    for _ in range(30):
        bus.countdown(ControlEvent.READY, 1, lambda _w: None)
        bus.publish(ControlEvent.READY, "w")

    assert bus.listener_count() == 0


def test_countdown_rejects_non_positive_count():
    with pytest.raises(ValueError):
        ControlBus().countdown(ControlEvent.READY, 0, lambda _w: None)


def test_control_bus_only_accepts_control_events():
    bus = ControlBus()

    with pytest.raises(TypeError):
        bus.publish("ready", "w")
    with pytest.raises(TypeError):
        bus.countdown("ready", 1, lambda _w: None)


def test_clear_drops_pending_countdowns():
    bus = ControlBus()
    fired = []
    bus.countdown(ControlEvent.READY, 2, fired.append)
    bus.countdown(ControlEvent.READY, 3, fired.append)

    bus.clear()
    bus.publish(ControlEvent.READY, "a")
    bus.publish(ControlEvent.READY, "b")
    bus.publish(ControlEvent.READY, "c")

    assert fired == []
    assert bus.listener_count() == 0
