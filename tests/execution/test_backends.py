"""Contract tests run against both queue adapters."""

import threading
from datetime import timedelta

from sqlalchemy import update

from renderq.core.errors import TransientBackendError
from renderq.core.orm.tables import QueueJobTable
from renderq.core.timestamps import utc_now
from renderq.execution.backends.memory import InMemoryQueueBackend
from renderq.execution.backends.protocol import (
    EnqueueOptions,
    QueueBackend,
    QueueJob,
    QueueState,
    QueueStats,
    retry_policy_for,
)

QUEUE = "render-video"
NOW_RETRY = EnqueueOptions(retry_limit=3, retry_delay=0.0)


def message(job_id: str) -> dict:
    return {"jobId": job_id, "userId": "user-1", "payload": {}}


def age(backend, queue_job_id: str, seconds: float, session_factory=None) -> None:
    """Push a queue job's creation time into the past."""
    past = utc_now() - timedelta(seconds=seconds)
    if isinstance(backend, InMemoryQueueBackend):
        backend._jobs[queue_job_id].created_at = past
        return
    with session_factory() as session, session.begin():
        session.execute(
            update(QueueJobTable).where(QueueJobTable.id == queue_job_id).values(created_at=past)
        )


class TestEnqueue:
    def test_satisfies_protocol(self, backend):
        assert isinstance(backend, QueueBackend)

    def test_enqueue_then_fetch(self, backend):
        handle = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(singleton_key="job-1"))
        assert handle.deduplicated is False

        jobs = backend.fetch(QUEUE, batch_size=5)
        assert [j.id for j in jobs] == [handle.id]
        job = jobs[0]
        assert job.state == QueueState.ACTIVE
        assert job.payload["jobId"] == "job-1"
        assert job.attempt == 0
        assert job.started_at is not None

    def test_singleton_key_deduplicates_live_job(self, backend):
        """Enqueueing the same key twice yields one live job."""
        first = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(singleton_key="job-1"))
        second = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(singleton_key="job-1"))
        assert second.deduplicated is True
        assert second.id == first.id
        assert backend.stats(QUEUE).pending == 1

    def test_singleton_key_free_after_completion(self, backend):
        first = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(singleton_key="job-1"))
        backend.fetch(QUEUE)
        backend.complete(first.id)
        again = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(singleton_key="job-1"))
        assert again.deduplicated is False
        assert again.id != first.id

    def test_start_after_delays_delivery(self, backend):
        backend.enqueue(QUEUE, message("later"), EnqueueOptions(start_after=3600))
        assert backend.fetch(QUEUE) == []
        assert backend.stats(QUEUE).pending == 1

    def test_queues_are_isolated(self, backend):
        backend.enqueue("thumbnails", message("t"), EnqueueOptions())
        assert backend.fetch(QUEUE) == []
        assert len(backend.fetch("thumbnails")) == 1


class TestFetch:
    def test_batch_size_limits_claims(self, backend):
        for i in range(4):
            backend.enqueue(QUEUE, message(f"job-{i}"), EnqueueOptions())
        assert len(backend.fetch(QUEUE, batch_size=3)) == 3
        assert len(backend.fetch(QUEUE, batch_size=3)) == 1
        assert backend.fetch(QUEUE, batch_size=0) == []

    def test_competing_consumers_never_share_a_job(self, backend):
        """Concurrent fetches claim disjoint job sets."""
        for i in range(20):
            backend.enqueue(QUEUE, message(f"job-{i}"), EnqueueOptions())

        claimed: list[list[QueueJob]] = []
        lock = threading.Lock()

        def consume():
            while True:
                try:
                    jobs = backend.fetch(QUEUE, batch_size=2)
                except TransientBackendError:
                    continue  # lock contention; retry
                if not jobs:
                    return
                with lock:
                    claimed.append(jobs)

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        ids = [j.id for batch in claimed for j in batch]
        assert len(ids) == 20
        assert len(set(ids)) == 20


class TestFailAndRetry:
    def test_non_final_failure_schedules_retry(self, backend):
        handle = backend.enqueue(QUEUE, message("job-1"), NOW_RETRY)
        backend.fetch(QUEUE)

        outcome = backend.fail(handle.id, "encoder crashed")
        assert outcome.final is False
        assert outcome.attempt == 1
        assert outcome.retry_in == 0.0

        job = backend.get(handle.id)
        assert job.state == QueueState.RETRY
        assert job.last_error == "encoder crashed"

        redelivered = backend.fetch(QUEUE)
        assert redelivered[0].id == handle.id
        assert redelivered[0].attempt == 1

    def test_retry_limit_exhaustion_is_terminal(self, backend):
        """After retry_limit deliveries the job fails and is never redelivered."""
        handle = backend.enqueue(QUEUE, message("job-1"), NOW_RETRY)
        finals = []
        for _ in range(3):
            (job,) = backend.fetch(QUEUE)
            finals.append((job.attempt, job.is_final_attempt, backend.fail(job.id, "boom").final))

        assert finals == [(0, False, False), (1, False, False), (2, True, True)]
        assert backend.get(handle.id).state == QueueState.FAILED
        assert backend.fetch(QUEUE) == []

    def test_backoff_delay_defers_redelivery(self, backend):
        handle = backend.enqueue(QUEUE, message("job-1"), EnqueueOptions(retry_limit=3, retry_delay=60))
        backend.fetch(QUEUE)
        outcome = backend.fail(handle.id, "boom")
        assert outcome.retry_in == 60.0
        assert backend.fetch(QUEUE) == []

    def test_fail_of_unclaimed_job_is_ignored(self, backend):
        handle = backend.enqueue(QUEUE, message("job-1"), NOW_RETRY)
        outcome = backend.fail(handle.id, "boom")
        assert outcome.final is True
        assert backend.get(handle.id).state == QueueState.CREATED

    def test_complete_requires_active(self, backend):
        handle = backend.enqueue(QUEUE, message("job-1"), NOW_RETRY)
        assert backend.complete(handle.id) is False
        backend.fetch(QUEUE)
        assert backend.complete(handle.id) is True
        assert backend.complete(handle.id) is False


class TestExpiry:
    def test_expire_stale_abandons_old_live_jobs(self, backend, session_factory):
        old = backend.enqueue(QUEUE, message("old"), EnqueueOptions(expire_in_seconds=60))
        fresh = backend.enqueue(QUEUE, message("fresh"), EnqueueOptions(expire_in_seconds=60))
        age(backend, old.id, 120, session_factory)

        expired = backend.expire_stale()

        assert [j.id for j in expired] == [old.id]
        assert expired[0].payload["jobId"] == "old"
        assert backend.get(old.id).state == QueueState.EXPIRED
        assert backend.get(old.id).last_error == "expired"
        assert backend.get(fresh.id).state == QueueState.CREATED
        assert [j.id for j in backend.fetch(QUEUE)] == [fresh.id]

    def test_stats_and_purge(self, backend):
        done = backend.enqueue(QUEUE, message("done"), EnqueueOptions())
        backend.enqueue(QUEUE, message("waiting"), EnqueueOptions(start_after=3600))
        backend.fetch(QUEUE)
        backend.complete(done.id)

        stats = backend.stats(QUEUE)
        assert stats.to_dict() == {"pending": 1, "active": 0, "completed": 1, "failed": 0}
        assert stats.total == 2

        assert backend.purge_terminal(3600) == 0
        assert backend.purge_terminal(-1) == 1
        assert backend.get(done.id) is None


class TestHelpers:
    def test_stats_from_counts_merges_states(self):
        stats = QueueStats.from_counts({"created": 2, "retry": 1, "failed": 1, "expired": 2})
        assert stats.pending == 3
        assert stats.failed == 3

    def test_retry_policy_constant_without_backoff(self):
        job = QueueJob(
            id="q", queue_name=QUEUE, payload={}, state=QueueState.ACTIVE, retry_delay=10, retry_backoff=False
        )
        assert retry_policy_for(job).delays(3) == [10.0, 10.0, 10.0]

    def test_retry_policy_doubles_with_cap(self):
        job = QueueJob(id="q", queue_name=QUEUE, payload={}, state=QueueState.ACTIVE, retry_delay=30)
        assert retry_policy_for(job, cap=100).delays(4) == [30.0, 60.0, 100.0, 100.0]
