"""
In-process pub/sub transport.

Used by tests and single-process deployments. Besides plain fan-out it
can simulate the failures the channel must survive: forcibly dropping
every open connection, refusing new connections and failing publishes.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Sequence

_DROPPED = object()


class _MemoryListener:
    def __init__(self, broker: InMemoryTransport):
        self._broker = broker
        self._queue: queue.Queue = queue.Queue()
        self.channels: set[str] = set()
        self.closed = False
        self.dropped = False

    def subscribe(self, channels: Sequence[str]) -> None:
        if self.dropped:
            raise ConnectionError("connection lost")
        self.channels.update(channels)

    def get_message(self, timeout: float) -> tuple[str, str] | None:
        if self.dropped:
            raise ConnectionError("connection lost")
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _DROPPED:
            raise ConnectionError("connection lost")
        return item

    def ping(self) -> None:
        if self.dropped or self._broker.refuse_connections:
            raise ConnectionError("ping failed")

    def close(self) -> None:
        self.closed = True
        self._broker._remove(self)

    def _deliver(self, channel: str, data: str) -> None:
        self._queue.put((channel, data))

    def _drop(self) -> None:
        self.dropped = True
        self._queue.put(_DROPPED)


class _MemoryPublisher:
    def __init__(self, broker: InMemoryTransport):
        self._broker = broker
        self.closed = False

    def publish(self, channel: str, data: str) -> int:
        if self.closed or self._broker.fail_publishes:
            raise ConnectionError("publisher connection lost")
        return self._broker._fan_out(channel, data)

    def ping(self) -> None:
        if self.closed or self._broker.fail_publishes:
            raise ConnectionError("ping failed")

    def close(self) -> None:
        self.closed = True


class InMemoryTransport:
    """Broker shared by every channel created against it.

    With *record* set, every published ``(channel, data)`` pair is kept in
    :attr:`published`; off by default so a long-running process does not
    accumulate messages.
    """

    def __init__(self, *, record: bool = False) -> None:
        self.record = record
        self._lock = threading.Lock()
        self._listeners: list[_MemoryListener] = []
        self.refuse_connections = False
        self.fail_publishes = False
        self.listener_connects = 0
        self.published: list[tuple[str, str]] = []

    def connect_listener(self) -> _MemoryListener:
        with self._lock:
            self.listener_connects += 1
            if self.refuse_connections:
                raise ConnectionError("broker unavailable")
            listener = _MemoryListener(self)
            self._listeners.append(listener)
            return listener

    def connect_publisher(self) -> _MemoryPublisher:
        if self.refuse_connections:
            raise ConnectionError("broker unavailable")
        return _MemoryPublisher(self)

    def _fan_out(self, channel: str, data: str) -> int:
        with self._lock:
            if self.record:
                self.published.append((channel, data))
            targets = [l for l in self._listeners if channel in l.channels and not l.closed]
        for listener in targets:
            listener._deliver(channel, data)
        return len(targets)

    def _remove(self, listener: _MemoryListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def drop_connections(self) -> int:
        """Kill every open listener connection without a clean close."""
        with self._lock:
            victims = list(self._listeners)
            self._listeners.clear()
        for listener in victims:
            listener._drop()
        return len(victims)

    def inject(self, channel: str, data: str) -> int:
        """Deliver a raw message, bypassing any publisher."""
        return self._fan_out(channel, data)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
