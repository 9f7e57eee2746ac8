"""Connection contracts the notification channel is written against.

A transport hands out two kinds of connections: a listener that
subscribes and receives, and a publisher that sends. Either may raise
any exception when the underlying connection is gone; the channel treats
every such error as "reconnect".
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol


class ListenerConnection(Protocol):
    def subscribe(self, channels: Sequence[str]) -> None: ...

    def get_message(self, timeout: float) -> tuple[str, str] | None:
        """Next ``(channel, data)`` pair, or ``None`` if *timeout* elapsed."""
        ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class PublisherConnection(Protocol):
    def publish(self, channel: str, data: str) -> int: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class Transport(Protocol):
    def connect_listener(self) -> ListenerConnection: ...

    def connect_publisher(self) -> PublisherConnection: ...
