"""Tests for the RenderqContainer composition root."""

import threading
from unittest.mock import patch

import pytest

from renderq.core.container import RenderqContainer, create_transport
from renderq.core.events import InMemoryTransport
from renderq.core.settings import RenderqSettings
from renderq.execution.backends.memory import InMemoryQueueBackend
from renderq.execution.backends.sql import SqlQueueBackend
from renderq.execution.models import JobStatus
from tests._support.fakes import BlockingRenderer, ScriptedRenderer, make_payload, wait_until


@pytest.fixture
def settings(database_url):
    return RenderqSettings(
        database_url=database_url,
        retry_delay_seconds=0,
        poll_interval=0.05,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_jitter=0,
        poll_initial_interval=0.05,
    )


class TestWiring:
    def test_components_are_lazy_singletons(self, settings):
        with RenderqContainer(settings) as container:
            assert container._engine is None
            assert container.store is container.store
            assert container.admission is container.admission
            assert container._engine is not None
            assert isinstance(container.backend, SqlQueueBackend)
            assert isinstance(container.transport, InMemoryTransport)
            assert container.breaker.name == "enqueue"
            assert container.breaker.failure_threshold == 3

    def test_memory_backend_selected(self, database_url):
        settings = RenderqSettings(database_url=database_url, queue_backend="memory")
        with RenderqContainer(settings) as container:
            assert isinstance(container.backend, InMemoryQueueBackend)

    def test_enqueue_options_from_settings(self, settings):
        options = RenderqContainer(settings).enqueue_options()
        assert options.retry_limit == 5
        assert options.retry_delay == 0
        assert options.expire_in_seconds == 7200

    def test_redis_transport_when_url_set(self):
        with patch("renderq.core.events.redis.RedisTransport") as transport_cls:
            transport = create_transport(RenderqSettings(redis_url="redis://localhost:6379/0"))
        transport_cls.assert_called_once_with("redis://localhost:6379/0")
        assert transport is transport_cls.return_value

    def test_worker_is_built_once_and_attached_to_health(self, settings):
        with RenderqContainer(settings) as container:
            health = container.health
            worker = container.worker(ScriptedRenderer(), concurrency=4)
            assert container.worker(ScriptedRenderer()) is worker
            assert worker.concurrency == 4
            assert health.worker is worker

    def test_cli_health_monitor_has_only_durable_components(self, settings):
        with RenderqContainer(settings) as container:
            report = container.build_health_monitor().check()
            assert [c.name for c in report.components] == ["database", "queue", "dead_letters"]


class TestEndToEnd:
    def test_submit_render_and_wait(self, settings):
        """Full path through the container: admission, worker, channel, waiter."""
        with RenderqContainer(settings) as container:
            container.start()
            assert container.channel.wait_until_connected(5)
            worker = container.worker(ScriptedRenderer())
            thread = worker.start_background()

            result = container.admission.submit_and_wait("user-1", make_payload(), wait_ms=5000)

            assert result.status == JobStatus.COMPLETED
            assert result.output_url.endswith(f"renders/user-1/{result.job_id}.mp4")
            assert wait_until(lambda: container.metrics.count("succeeded") == 1)

        thread.join(5)
        assert not thread.is_alive()

    def test_close_resolves_pending_waiters(self, settings):
        container = RenderqContainer(settings)
        container.start()
        future = container.waiters.watch("never-finishes", timeout=60)
        container.close()
        assert future.result(timeout=1) is None
        assert wait_until(lambda: not container.channel.is_running)

    def test_close_drains_background_worker_first(self, settings):
        """close() waits for the in-flight render before stopping the channel."""
        container = RenderqContainer(settings)
        container.start()
        assert container.channel.wait_until_connected(5)
        renderer = BlockingRenderer()
        worker = container.worker(renderer)
        thread = worker.start_background()
        job_id = container.admission.submit("user-1", make_payload())
        assert renderer.started.acquire(timeout=5)

        published = []
        publish = container.channel.publish_completion

        def record_publish(event):
            ok = publish(event)
            published.append((event.job_id, ok, container.channel.is_running))
            return ok

        container.channel.publish_completion = record_publish
        release = threading.Timer(0.2, renderer.release)
        release.start()
        try:
            container.close()
        finally:
            renderer.release()
            release.cancel()

        assert not thread.is_alive()
        assert worker.get_stats().completed == 1
        assert container.store.get(job_id).status == JobStatus.COMPLETED
        assert published == [(job_id, True, True)]


class TestInMemoryTransportRecording:
    def test_container_transport_does_not_record(self, settings):
        with RenderqContainer(settings) as container:
            container.transport.connect_publisher().publish("renderq:job-completed", "{}")
            assert container.transport.record is False
            assert container.transport.published == []
