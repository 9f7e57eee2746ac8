"""
Notification messages and the pub/sub channel that carries them.

Two logical channels exist:

* ``renderq:job-available`` - hint that wakes idle workers without polling
* ``renderq:job-completed`` - terminal job results that wake waiters

Messages are validated on receipt; anything that does not match the wire
shape is logged and dropped. Delivery is at-most-once, so every consumer
treats a message as a hint and the job store as the source of truth.

Transports:

* :class:`InMemoryTransport` - in-process broker (tests, single process)
* :class:`~renderq.core.events.redis.RedisTransport` - Redis Pub/Sub
"""

from renderq.core.events.channel import ChannelStatus, NotificationChannel
from renderq.core.events.memory import InMemoryTransport
from renderq.core.events.models import (
    DEFAULT_CHANNELS,
    JOB_AVAILABLE_CHANNEL,
    JOB_COMPLETED_CHANNEL,
    JobAvailable,
    NotificationEvent,
)

__all__ = [
    "DEFAULT_CHANNELS",
    "JOB_AVAILABLE_CHANNEL",
    "JOB_COMPLETED_CHANNEL",
    "ChannelStatus",
    "InMemoryTransport",
    "JobAvailable",
    "NotificationChannel",
    "NotificationEvent",
]
