import logging

from runflow.services.event_queue import ControlMessage, DataMessage
from runflow.services.stream_manager import StreamManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_get_queue_creates_or_ignores():
    streams = StreamManager()
    assert streams.get_queue("r1", if_not_found="ignore") is None

    queue = streams.get_queue("r1")
    assert streams.get_queue("r1") is queue
    assert streams.get_queue("r1", if_not_found="ignore") is queue


def test_publish_and_finish_feed_the_queue():
    streams = StreamManager()
    streams.publish("r1", "values", {"x": 1})
    streams.finish("r1")

    queue = streams.get_queue("r1")
    assert queue._buffer[0] == DataMessage("values", {"x": 1})
    assert queue._buffer[1] == ControlMessage("done")


def test_try_lock_is_exclusive_and_unlock_is_idempotent():
    streams = StreamManager()
    token = streams.try_lock("r1")
    assert token is not None
    assert streams.try_lock("r1") is None
    assert streams.is_locked("r1")
    assert streams.get_control("r1") is token

    streams.unlock("r1")
    streams.unlock("r1")
    assert not streams.is_locked("r1")
    assert streams.get_control("r1") is None


def test_double_lock_replaces_token_and_logs(caplog):
    streams = StreamManager()
    first = streams.lock("r1")
    with caplog.at_level(logging.ERROR):
        second = streams.lock("r1")
    assert first is not second
    assert streams.get_control("r1") is second
    assert "already locked" in caplog.text


def test_abort_fires_the_locked_token():
    streams = StreamManager()
    assert streams.abort("r1", "interrupt") is False

    token = streams.lock("r1")
    assert streams.abort("r1", "rollback") is True
    assert token.cancelled
    assert token.reason == "rollback"


def test_terminal_queues_are_evicted_after_retention():
    clock = FakeClock()
    streams = StreamManager(retention_seconds=10, clock=clock)
    streams.publish("done-run", "values", 1)
    streams.finish("done-run")
    streams.publish("live-run", "values", 1)

    clock.now = 9
    assert streams.get_queue("done-run", if_not_found="ignore") is not None

    clock.now = 11
    assert streams.evict_expired() == ["done-run"]
    assert streams.get_queue("done-run", if_not_found="ignore") is None
    assert streams.get_queue("live-run", if_not_found="ignore") is not None


def test_locked_runs_are_not_evicted():
    clock = FakeClock()
    streams = StreamManager(retention_seconds=1, clock=clock)
    streams.finish("r1")
    streams.lock("r1")
    streams.mark_terminal("r1")

    clock.now = 5
    assert streams.evict_expired() == []
    streams.unlock("r1")
    assert streams.evict_expired() == ["r1"]
