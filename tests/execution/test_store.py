"""Tests for JobStore conditional transitions, history and reaping."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from renderq.core.orm.tables import RenderJobTable
from renderq.core.timestamps import utc_now
from renderq.execution.models import InvalidTransitionError, JobStatus
from renderq.execution.store import STALE_JOB_ERROR


def backdate(session_factory, job_id: str, minutes: float) -> None:
    with session_factory() as session, session.begin():
        session.execute(
            update(RenderJobTable)
            .where(RenderJobTable.id == job_id)
            .values(updated_at=utc_now() - timedelta(minutes=minutes))
        )


class TestInsert:
    def test_insert_creates_queued_row(self, store, payload):
        job = store.insert("job-1", "user-1", payload)
        assert job is not None
        assert job.status == JobStatus.QUEUED

        stored = store.get("job-1")
        assert stored.user_id == "user-1"
        assert stored.payload == payload
        assert stored.attempt == 0
        assert stored.created_at is not None

    def test_duplicate_insert_returns_none(self, store, payload):
        """A second insert with the same id changes nothing."""
        store.insert("job-1", "user-1", payload)
        assert store.insert("job-1", "user-2", payload) is None
        assert store.get("job-1").user_id == "user-1"
        assert len(store.transitions("job-1")) == 1

    def test_get_missing(self, store):
        assert store.get("nope") is None


class TestTransitions:
    def test_full_success_path(self, store, payload):
        store.insert("job-1", "user-1", payload)
        assert store.mark_processing("job-1", attempt=0)
        assert store.mark_completed("job-1", "https://cdn/renders/job-1.mp4")

        job = store.get("job-1")
        assert job.status == JobStatus.COMPLETED
        assert job.output_url == "https://cdn/renders/job-1.mp4"
        assert job.error is None

        history = [(t.from_status, t.to_status) for t in store.transitions("job-1")]
        assert history == [
            (None, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
        ]

    def test_requeue_keeps_error_and_attempt(self, store, payload):
        store.insert("job-1", "user-1", payload)
        store.mark_processing("job-1", attempt=0)
        assert store.mark_requeued("job-1", "encoder crashed")
        store.mark_processing("job-1", attempt=1)

        job = store.get("job-1")
        assert job.status == JobStatus.PROCESSING
        assert job.attempt == 1
        assert job.error == "encoder crashed"

        requeue = store.transitions("job-1")[2]
        assert requeue.to_status == JobStatus.QUEUED
        assert requeue.error == "encoder crashed"
        assert requeue.attempt == 0

    def test_conditional_update_loses_race(self, store, payload):
        """Only the first of two competing transitions applies."""
        store.insert("job-1", "user-1", payload)
        assert store.mark_processing("job-1", attempt=0) is True
        assert store.mark_processing("job-1", attempt=0) is False

    def test_terminal_rows_are_never_rewritten(self, store, payload):
        store.insert("job-1", "user-1", payload)
        store.mark_processing("job-1", attempt=0)
        store.mark_completed("job-1", "https://cdn/a.mp4")

        assert store.mark_failed("job-1", "late failure") is False
        assert store.mark_requeued("job-1", "late retry") is False
        job = store.get("job-1")
        assert job.status == JobStatus.COMPLETED
        assert job.error is None

    def test_illegal_transition_raises(self, store, payload):
        store.insert("job-1", "user-1", payload)
        with pytest.raises(InvalidTransitionError):
            store.transition("job-1", JobStatus.COMPLETED, expected=[JobStatus.QUEUED])

    def test_mark_failed_from_queued(self, store, payload):
        store.insert("job-1", "user-1", payload)
        assert store.mark_failed("job-1", "enqueue failed", expected=[JobStatus.QUEUED])
        assert store.get("job-1").status == JobStatus.FAILED

    def test_mark_failed_checks_owner(self, store, payload):
        store.insert("job-1", "user-1", payload)
        assert store.mark_failed("job-1", "x", user_id="someone-else") is False
        assert store.get("job-1").status == JobStatus.QUEUED


class TestQueries:
    def test_count_active(self, store, payload):
        for i in range(3):
            store.insert(f"job-{i}", "user-1", payload)
        store.insert("other", "user-2", payload)
        store.mark_processing("job-0", attempt=0)
        store.mark_completed("job-0", "https://cdn/x.mp4")
        store.mark_processing("job-1", attempt=0)

        assert store.count_active("user-1") == 2
        assert store.count_active("user-2") == 1
        assert store.count_active("nobody") == 0

    def test_list_jobs_filters(self, store, payload):
        store.insert("a", "user-1", payload)
        store.insert("b", "user-1", payload)
        store.insert("c", "user-2", payload)
        store.mark_failed("b", "boom")

        assert {j.id for j in store.list_jobs(user_id="user-1")} == {"a", "b"}
        assert [j.id for j in store.list_jobs(status=JobStatus.FAILED)] == ["b"]
        queued = store.list_jobs(status=[JobStatus.QUEUED, JobStatus.PROCESSING])
        assert {j.id for j in queued} == {"a", "c"}
        assert len(store.list_jobs(limit=1)) == 1

    def test_counts_by_status(self, store, payload):
        store.insert("a", "user-1", payload)
        store.insert("b", "user-1", payload)
        store.mark_failed("b", "boom")
        assert store.counts_by_status() == {
            "queued": 1,
            "processing": 0,
            "completed": 0,
            "failed": 1,
        }

    def test_ping(self, store):
        store.ping()


class TestReapStale:
    def test_reaps_only_old_active_jobs_of_user(self, store, session_factory, payload):
        store.insert("old-queued", "user-1", payload)
        store.insert("old-processing", "user-1", payload)
        store.insert("fresh", "user-1", payload)
        store.insert("other-user", "user-2", payload)
        store.mark_processing("old-processing", attempt=0)
        for job_id in ("old-queued", "old-processing", "other-user"):
            backdate(session_factory, job_id, minutes=11)

        reaped = store.reap_stale("user-1", timedelta(minutes=10))

        assert sorted(reaped) == ["old-processing", "old-queued"]
        for job_id in reaped:
            job = store.get(job_id)
            assert job.status == JobStatus.FAILED
            assert job.error == STALE_JOB_ERROR
        assert store.get("fresh").status == JobStatus.QUEUED
        assert store.get("other-user").status == JobStatus.QUEUED

    def test_terminal_jobs_untouched(self, store, session_factory, payload):
        store.insert("done", "user-1", payload)
        store.mark_processing("done", attempt=0)
        store.mark_completed("done", "https://cdn/done.mp4")
        backdate(session_factory, "done", minutes=60)

        assert store.reap_stale("user-1", timedelta(minutes=10)) == []
        assert store.get("done").status == JobStatus.COMPLETED
