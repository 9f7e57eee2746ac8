"""
Resilient notification channel.

One listener connection subscribes to the job-available and job-completed
channels; a separate publisher connection sends. The listener runs on its
own daemon thread:

* any error or unexpected close tears the connection down, waits
  ``reconnect_policy.delay(n)`` and reconnects + resubscribes;
* a keepalive ping every ``keepalive_interval`` seconds exercises the
  connection so silently dropped sockets are detected;
* each valid message is handed to the registered handlers on the listener
  thread. Handlers must only resolve futures or flip flags.

A failed publish is logged and reported as ``False``; waiters compensate
by polling the job store.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from renderq.core.events.models import (
    DEFAULT_CHANNELS,
    JOB_AVAILABLE_CHANNEL,
    JOB_COMPLETED_CHANNEL,
    JobAvailable,
    NotificationEvent,
)
from renderq.core.events.transport import ListenerConnection, PublisherConnection, Transport
from renderq.core.logging import get_logger
from renderq.execution.retry import BackoffPolicy

log = get_logger(__name__)

Handler = Callable[[Any], None]


@dataclass
class ChannelStatus:
    running: bool
    listener_connected: bool
    publisher_connected: bool
    subscribed_channels: list[str] = field(default_factory=list)
    reconnect_attempts: int = 0
    next_reconnect_delay: float | None = None
    reconnects: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "listener_connected": self.listener_connected,
            "publisher_connected": self.publisher_connected,
            "subscribed_channels": list(self.subscribed_channels),
            "reconnect_attempts": self.reconnect_attempts,
            "next_reconnect_delay": self.next_reconnect_delay,
            "reconnects": self.reconnects,
        }


def _close_quietly(conn: Any, what: str) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except Exception as exc:
        log.debug("connection_close_failed", connection=what, error=str(exc))


class NotificationChannel:
    """Lifecycle-managed listener + publisher pair."""

    def __init__(
        self,
        transport: Transport,
        *,
        channels: Sequence[str] | None = None,
        reconnect_policy: BackoffPolicy | None = None,
        keepalive_interval: float = 15.0,
        receive_timeout: float = 0.5,
        name: str = "renderq-listener",
    ):
        self._transport = transport
        self._channels = list(channels or DEFAULT_CHANNELS)
        self._reconnect_policy = reconnect_policy or BackoffPolicy(
            base=1.0, factor=2.0, cap=30.0, jitter_seconds=1.0
        )
        self._keepalive_interval = keepalive_interval
        self._receive_timeout = min(receive_timeout, keepalive_interval)
        self._name = name
        self._decoders: dict[str, type[BaseModel]] = {
            JOB_COMPLETED_CHANNEL: NotificationEvent,
            JOB_AVAILABLE_CHANNEL: JobAvailable,
        }

        self._handlers: dict[str, dict[str, Handler]] = {c: {} for c in self._channels}
        self._handlers_lock = threading.Lock()

        self._stop = threading.Event()
        self._connected = threading.Event()
        self._thread: threading.Thread | None = None
        self._listener: ListenerConnection | None = None

        self._publisher: PublisherConnection | None = None
        self._publish_lock = threading.Lock()

        self._state_lock = threading.Lock()
        self._reconnect_attempts = 0
        self._next_delay: float | None = None
        self._reconnects = 0
        self._ever_connected = False

    # ------------------------------------------------------------------ #
    # Handler registry
    # ------------------------------------------------------------------ #

    def add_handler(self, channel: str, handler: Handler) -> str:
        """Register *handler* for decoded messages on *channel*. Returns an id."""
        handler_id = f"h_{uuid.uuid4().hex[:12]}"
        with self._handlers_lock:
            if channel not in self._handlers:
                raise ValueError(f"channel not subscribed: {channel}")
            self._handlers[channel][handler_id] = handler
        return handler_id

    def remove_handler(self, handler_id: str) -> bool:
        with self._handlers_lock:
            for handlers in self._handlers.values():
                if handlers.pop(handler_id, None) is not None:
                    return True
        return False

    def on_job_completed(self, handler: Handler) -> str:
        return self.add_handler(JOB_COMPLETED_CHANNEL, handler)

    def on_job_available(self, handler: Handler) -> str:
        return self.add_handler(JOB_AVAILABLE_CHANNEL, handler)

    def handler_count(self, channel: str | None = None) -> int:
        with self._handlers_lock:
            if channel is not None:
                return len(self._handlers.get(channel, {}))
            return sum(len(h) for h in self._handlers.values())

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._ensure_publisher()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        log.info("notification_channel_started", channels=self._channels)

    def stop(self, timeout: float = 5.0) -> None:
        """Unsubscribe and close both connections."""
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                log.warning("listener_thread_still_running", timeout=timeout)
        self._thread = None
        with self._publish_lock:
            _close_quietly(self._publisher, "publisher")
            self._publisher = None
        log.info("notification_channel_stopped")

    def wait_until_connected(self, timeout: float) -> bool:
        return self._connected.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> ChannelStatus:
        with self._state_lock:
            return ChannelStatus(
                running=self.is_running,
                listener_connected=self._connected.is_set(),
                publisher_connected=self._publisher is not None,
                subscribed_channels=list(self._channels) if self._connected.is_set() else [],
                reconnect_attempts=self._reconnect_attempts,
                next_reconnect_delay=self._next_delay,
                reconnects=self._reconnects,
            )

    # ------------------------------------------------------------------ #
    # Listener loop
    # ------------------------------------------------------------------ #

    def _run(self) -> None:
        failures = 0
        while not self._stop.is_set():
            try:
                conn = self._transport.connect_listener()
                conn.subscribe(self._channels)
            except Exception as exc:
                failures = self._backoff("listener_connect_failed", failures, exc)
                continue

            with self._state_lock:
                self._listener = conn
                self._reconnect_attempts = 0
                self._next_delay = None
                if self._ever_connected:
                    self._reconnects += 1
                self._ever_connected = True
            self._connected.set()
            failures = 0
            log.info("listener_connected", channels=self._channels)

            try:
                self._listen(conn)
            except Exception as exc:
                if not self._stop.is_set():
                    log.warning("listener_connection_lost", error=str(exc))
            finally:
                self._connected.clear()
                with self._state_lock:
                    self._listener = None
                _close_quietly(conn, "listener")

            if not self._stop.is_set():
                failures = self._backoff("listener_reconnect_scheduled", failures, None)

    def _backoff(self, event: str, failures: int, exc: Exception | None) -> int:
        delay = self._reconnect_policy.delay(failures)
        failures += 1
        with self._state_lock:
            self._reconnect_attempts = failures
            self._next_delay = delay
        log.warning(
            event,
            attempt=failures,
            retry_in=round(delay, 3),
            error=str(exc) if exc is not None else None,
        )
        self._stop.wait(delay)
        return failures

    def _listen(self, conn: ListenerConnection) -> None:
        last_ping = time.monotonic()
        while not self._stop.is_set():
            message = conn.get_message(timeout=self._receive_timeout)
            if message is not None:
                self._dispatch(*message)
            if time.monotonic() - last_ping >= self._keepalive_interval:
                conn.ping()
                self._keepalive_publisher()
                last_ping = time.monotonic()

    def _dispatch(self, channel: str, data: str) -> None:
        decoder = self._decoders.get(channel)
        if decoder is None:
            log.debug("notification_unknown_channel", channel=channel)
            return
        try:
            message = decoder.model_validate_json(data)
        except (PydanticValidationError, ValueError) as exc:
            log.warning("notification_payload_invalid", channel=channel, error=str(exc)[:200])
            return

        with self._handlers_lock:
            handlers = list(self._handlers.get(channel, {}).items())
        for handler_id, handler in handlers:
            try:
                handler(message)
            except Exception:
                log.exception("notification_handler_error", channel=channel, handler_id=handler_id)

    # ------------------------------------------------------------------ #
    # Publisher
    # ------------------------------------------------------------------ #

    def _ensure_publisher(self) -> PublisherConnection | None:
        with self._publish_lock:
            if self._publisher is None:
                try:
                    self._publisher = self._transport.connect_publisher()
                except Exception as exc:
                    log.warning("publisher_connect_failed", error=str(exc))
                    return None
            return self._publisher

    def _keepalive_publisher(self) -> None:
        with self._publish_lock:
            if self._publisher is not None:
                try:
                    self._publisher.ping()
                    return
                except Exception as exc:
                    log.warning("publisher_keepalive_failed", error=str(exc))
                    _close_quietly(self._publisher, "publisher")
                    self._publisher = None
        self._ensure_publisher()

    def publish(self, channel: str, message: Any) -> bool:
        """Send *message* (a wire model) on *channel*. Never raises."""
        data = message.to_wire() if hasattr(message, "to_wire") else str(message)
        with self._publish_lock:
            try:
                if self._publisher is None:
                    self._publisher = self._transport.connect_publisher()
                self._publisher.publish(channel, data)
                return True
            except Exception as exc:
                log.warning("notification_publish_failed", channel=channel, error=str(exc))
                _close_quietly(self._publisher, "publisher")
                self._publisher = None
                return False

    def publish_completion(self, event: Any) -> bool:
        return self.publish(JOB_COMPLETED_CHANNEL, event)

    def publish_job_available(self, queue_name: str, job_id: str | None = None) -> bool:
        return self.publish(JOB_AVAILABLE_CHANNEL, JobAvailable(queue=queue_name, job_id=job_id))
