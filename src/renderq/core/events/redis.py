"""
Redis Pub/Sub transport.

The listener uses a dedicated client in subscribed mode; publishing goes
through a second client so a slow consumer never blocks announcements.
Messages are fire-and-forget and not persisted.

Requires: ``pip install redis``
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import redis

__all__ = ["RedisTransport"]


def _text(value: Any) -> str:
    # Undecodable bytes become U+FFFD and fail validation in the channel.
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class _RedisListener:
    def __init__(self, client: redis.Redis):
        self._client = client
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)

    def subscribe(self, channels: Sequence[str]) -> None:
        self._pubsub.subscribe(*channels)

    def get_message(self, timeout: float) -> tuple[str, str] | None:
        message = self._pubsub.get_message(timeout=timeout)
        if message is None or message.get("type") != "message":
            return None
        return _text(message["channel"]), _text(message["data"])

    def ping(self) -> None:
        # In subscribed mode PING goes over the pub/sub socket itself.
        self._pubsub.ping()

    def close(self) -> None:
        try:
            self._pubsub.close()
        finally:
            self._client.close()


class _RedisPublisher:
    def __init__(self, client: redis.Redis):
        self._client = client

    def publish(self, channel: str, data: str) -> int:
        return int(self._client.publish(channel, data))

    def ping(self) -> None:
        self._client.ping()

    def close(self) -> None:
        self._client.close()


class RedisTransport:
    """Pub/sub over a Redis server.

    Example::

        transport = RedisTransport("redis://localhost:6379/0")
        channel = NotificationChannel(transport)
        channel.start()
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        connect_timeout: float = 5.0,
        socket_timeout: float | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._connect_timeout = connect_timeout
        self._socket_timeout = socket_timeout

    def _client(self) -> redis.Redis:
        return redis.Redis.from_url(
            self._redis_url,
            socket_connect_timeout=self._connect_timeout,
            socket_timeout=self._socket_timeout,
            socket_keepalive=True,
        )

    def connect_listener(self) -> _RedisListener:
        client = self._client()
        client.ping()
        return _RedisListener(client)

    def connect_publisher(self) -> _RedisPublisher:
        client = self._client()
        client.ping()
        return _RedisPublisher(client)
