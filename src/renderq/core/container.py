"""
Lazy-initialised composition root.

:class:`RenderqContainer` builds every renderq component from
:class:`RenderqSettings` on first access and tears them down in the
documented order on :meth:`close`.

Usage::

    from renderq.core.container import RenderqContainer

    with RenderqContainer() as c:
        c.start()
        job_id = c.admission.submit("user-1", payload)
        event = c.waiters.wait_for_completion(job_id, timeout=60)
"""

from __future__ import annotations

from typing import Any

from renderq.core.events.channel import NotificationChannel
from renderq.core.events.memory import InMemoryTransport
from renderq.core.logging import get_logger
from renderq.core.orm.session import create_renderq_engine, init_db, renderq_session_factory
from renderq.core.settings import RenderqSettings, get_settings
from renderq.execution.admission import AdmissionController
from renderq.execution.backends.memory import InMemoryQueueBackend
from renderq.execution.backends.protocol import EnqueueOptions
from renderq.execution.backends.sql import SqlQueueBackend
from renderq.execution.circuit_breaker import CircuitBreaker
from renderq.execution.dlq import DeadLetterQueue
from renderq.execution.health import AlertThresholds, HealthMonitor, HealthThresholds
from renderq.execution.retry import BackoffPolicy
from renderq.execution.store import JobStore
from renderq.execution.waiters import CompletionWaiterRegistry
from renderq.execution.worker import RenderWorker
from renderq.observability.metrics import JobMetrics

log = get_logger(__name__)


def create_transport(settings: RenderqSettings) -> Any:
    """Redis pub/sub when ``redis_url`` is set, else an in-process broker."""
    if settings.redis_url:
        from renderq.core.events.redis import RedisTransport

        return RedisTransport(settings.redis_url)
    return InMemoryTransport()


class RenderqContainer:
    """Lazy-initialised dependency container.

    Components are created on first property access and disposed via
    :meth:`close` (or the context-manager protocol).
    """

    def __init__(self, settings: RenderqSettings | None = None, *, create_tables: bool = True):
        self._settings = settings
        self._create_tables = create_tables
        self._engine: Any | None = None
        self._session_factory: Any | None = None
        self._store: JobStore | None = None
        self._backend: Any | None = None
        self._breaker: CircuitBreaker | None = None
        self._transport: Any | None = None
        self._channel: NotificationChannel | None = None
        self._waiters: CompletionWaiterRegistry | None = None
        self._admission: AdmissionController | None = None
        self._metrics: JobMetrics | None = None
        self._dlq: DeadLetterQueue | None = None
        self._health: HealthMonitor | None = None
        self._worker: RenderWorker | None = None

    # ── Properties (lazy) ────────────────────────────────────────

    @property
    def settings(self) -> RenderqSettings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def engine(self) -> Any:
        """SQLAlchemy :class:`~sqlalchemy.engine.Engine`."""
        if self._engine is None:
            self._engine = create_renderq_engine(self.settings.database_url)
            if self._create_tables:
                init_db(self._engine)
        return self._engine

    @property
    def session_factory(self) -> Any:
        if self._session_factory is None:
            self._session_factory = renderq_session_factory(self.engine)
        return self._session_factory

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore(self.session_factory)
        return self._store

    @property
    def backend(self) -> Any:
        """Queue backend selected by ``queue_backend``."""
        if self._backend is None:
            cap = self.settings.retry_delay_cap_seconds
            if self.settings.queue_backend == "memory":
                self._backend = InMemoryQueueBackend(retry_delay_cap=cap)
            else:
                self._backend = SqlQueueBackend(self.session_factory, retry_delay_cap=cap)
        return self._backend

    @property
    def breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(
                name="enqueue",
                failure_threshold=self.settings.breaker_failure_threshold,
                reset_timeout=self.settings.breaker_reset_timeout,
            )
        return self._breaker

    @property
    def transport(self) -> Any:
        if self._transport is None:
            self._transport = create_transport(self.settings)
        return self._transport

    @property
    def channel(self) -> NotificationChannel:
        if self._channel is None:
            s = self.settings
            self._channel = NotificationChannel(
                self.transport,
                reconnect_policy=BackoffPolicy(
                    base=s.reconnect_base_delay,
                    factor=2.0,
                    cap=s.reconnect_max_delay,
                    jitter_seconds=s.reconnect_jitter,
                ),
                keepalive_interval=s.keepalive_interval,
            )
        return self._channel

    @property
    def waiters(self) -> CompletionWaiterRegistry:
        if self._waiters is None:
            s = self.settings
            self._waiters = CompletionWaiterRegistry(
                self.store,
                self.channel,
                poll_policy=BackoffPolicy(
                    base=s.poll_initial_interval,
                    factor=s.poll_backoff_factor,
                    cap=s.poll_max_interval,
                ),
                default_timeout=s.wait_timeout,
            )
        return self._waiters

    @property
    def metrics(self) -> JobMetrics:
        if self._metrics is None:
            self._metrics = JobMetrics()
        return self._metrics

    @property
    def dlq(self) -> DeadLetterQueue:
        if self._dlq is None:
            self._dlq = DeadLetterQueue(self.session_factory)
        return self._dlq

    def enqueue_options(self) -> EnqueueOptions:
        s = self.settings
        return EnqueueOptions(
            retry_limit=s.retry_limit,
            retry_delay=s.retry_delay_seconds,
            retry_backoff=s.retry_backoff,
            expire_in_seconds=s.expire_in_seconds,
        )

    @property
    def admission(self) -> AdmissionController:
        if self._admission is None:
            s = self.settings
            self._admission = AdmissionController(
                self.store,
                self.backend,
                self.breaker,
                queue_name=s.queue_name,
                max_concurrent_jobs_per_user=s.max_concurrent_jobs_per_user,
                stale_job_minutes=s.stale_job_minutes,
                enqueue_options=self.enqueue_options(),
                enqueue_attempts=s.enqueue_attempts,
                enqueue_retry_policy=BackoffPolicy(base=s.enqueue_retry_base, factor=2.0, cap=5.0),
                inline_wait_ms=s.inline_wait_ms,
                channel=self.channel,
                waiters=self.waiters,
                metrics=self.metrics,
            )
        return self._admission

    def worker(self, renderer: Any, finalizer: Any = None, **overrides: Any) -> RenderWorker:
        """Build the process's render worker (one per container)."""
        if self._worker is not None:
            return self._worker
        s = self.settings
        options: dict[str, Any] = {
            "queue_name": s.queue_name,
            "concurrency": s.worker_concurrency,
            "poll_interval": s.poll_interval,
            "drain_timeout": s.drain_timeout,
            "maintenance_interval": s.maintenance_interval,
            "dead_letter_enabled": s.dead_letter_enabled,
        }
        options.update(overrides)
        self._worker = RenderWorker(
            self.store,
            self.backend,
            renderer,
            finalizer,
            channel=self.channel,
            dlq=self.dlq,
            metrics=self.metrics,
            **options,
        )
        if self._health is not None:
            self._health.worker = self._worker
        return self._worker

    def build_health_monitor(
        self, *, channel: Any = None, worker: Any = None, metrics: Any = None
    ) -> HealthMonitor:
        """Monitor over the durable stores plus whichever runtime parts are given."""
        s = self.settings
        return HealthMonitor(
            self.store,
            self.backend,
            queue_name=s.queue_name,
            channel=channel,
            worker=worker,
            metrics=metrics,
            dlq=self.dlq,
            thresholds=HealthThresholds(
                pending_backlog=s.pending_backlog_threshold,
                failure_margin=s.failure_margin,
                dlq_warning_count=s.dlq_warning_count,
                error_rate=s.alert_error_rate,
            ),
            alert_thresholds=AlertThresholds(
                error_rate=s.alert_error_rate,
                avg_processing_ms=s.alert_response_time_ms,
                active_jobs=s.alert_active_jobs,
                queue_depth=s.alert_queue_depth,
            ),
            interval=s.health_interval,
            enabled=s.health_sampling_enabled,
            housekeeping_threshold=s.housekeeping_threshold,
            retention_hours=s.retention_hours,
        )

    @property
    def health(self) -> HealthMonitor:
        """Monitor of this process: stores, channel, worker and metrics."""
        if self._health is None:
            self._health = self.build_health_monitor(
                channel=self.channel, worker=self._worker, metrics=self.metrics
            )
        return self._health

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the notification channel and (if enabled) health sampling."""
        self.channel.start()
        self.waiters  # completion handler registered before messages flow
        self.health.start()

    def close(self) -> None:
        """Shut down in order: worker, health, waiters, channel, engine."""
        steps = (
            ("worker", self._worker, "close"),
            ("health", self._health, "stop"),
            ("waiters", self._waiters, "shutdown"),
            ("channel", self._channel, "stop"),
            ("engine", self._engine, "dispose"),
        )
        for name, component, method in steps:
            if component is None:
                continue
            try:
                getattr(component, method)()
            except Exception:
                log.warning("component_shutdown_failed", component=name, exc_info=True)

    def __enter__(self) -> RenderqContainer:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
