"""Tests for renderq.cli - command smoke tests via CliRunner.

Every command runs against a file-backed SQLite database under ``tmp_path``
passed with ``--database-url``; rows are seeded through the job store and
dead-letter queue fixtures bound to the same file.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import patch

import pytest
import structlog
from typer.testing import CliRunner

from renderq import __version__
from renderq.cli.app import app
from renderq.cli.utils import load_factory
from renderq.core.errors import ConfigError
from tests._support.fakes import make_payload

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Keep log lines out of the command output parsed as JSON."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        cache_logger_on_first_use=False,
    )
    with patch("renderq.cli.app.configure_logging"):
        yield
    structlog.reset_defaults()


def invoke(*args: str):
    return runner.invoke(app, list(args))


# ─── Root ────────────────────────────────────────────────────────────────


class TestRoot:
    def test_version(self):
        """--version prints the package version and exits 0."""
        result = invoke("--version")
        assert result.exit_code == 0
        assert f"renderq {__version__}" in result.output

    def test_no_args_shows_help(self):
        """Bare invocation lists the sub-commands."""
        result = invoke()
        assert "jobs" in result.output
        assert "dlq" in result.output


# ─── db ──────────────────────────────────────────────────────────────────


class TestDbInit:
    def test_creates_tables(self, tmp_path):
        """db init creates the schema in a fresh database."""
        url = f"sqlite:///{tmp_path / 'fresh.db'}"
        result = invoke("db", "init", "--database-url", url)
        assert result.exit_code == 0
        assert "Initialised" in result.output
        assert (tmp_path / "fresh.db").exists()

    def test_idempotent(self, database_url, engine):
        """Running db init on an initialised database succeeds."""
        result = invoke("db", "init", "-d", database_url)
        assert result.exit_code == 0


# ─── jobs ────────────────────────────────────────────────────────────────


class TestJobsCommands:
    def test_show_json(self, database_url, store):
        """jobs show --json prints the job as JSON."""
        store.insert("job-1", "user-1", make_payload())
        result = invoke("jobs", "show", "job-1", "-d", database_url, "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["id"] == "job-1"
        assert data["status"] == "queued"

    def test_show_with_history(self, database_url, store):
        """--history adds the recorded transitions."""
        store.insert("job-1", "user-1", make_payload())
        store.mark_processing("job-1", attempt=0)
        store.mark_completed("job-1", "https://cdn.example.com/out.mp4")
        result = invoke("jobs", "show", "job-1", "--history", "-d", database_url)
        assert result.exit_code == 0
        assert "Transitions" in result.output
        assert "completed" in result.output

    def test_show_missing(self, database_url, engine):
        """Unknown job ids exit 1 with an error."""
        result = invoke("jobs", "show", "nope", "-d", database_url)
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_list_json(self, database_url, store):
        """jobs list --json returns every job."""
        store.insert("job-1", "user-1", make_payload())
        store.insert("job-2", "user-2", make_payload())
        result = invoke("jobs", "list", "-d", database_url, "--json")
        assert result.exit_code == 0
        ids = {row["id"] for row in json.loads(result.stdout)}
        assert ids == {"job-1", "job-2"}

    def test_list_filters(self, database_url, store):
        """--user and --status narrow the listing."""
        store.insert("job-1", "user-1", make_payload())
        store.insert("job-2", "user-1", make_payload())
        store.insert("job-3", "user-2", make_payload())
        store.mark_failed("job-2", "boom")

        result = invoke(
            "jobs", "list", "--user", "user-1", "--status", "queued", "-d", database_url, "--json"
        )
        assert result.exit_code == 0
        assert [row["id"] for row in json.loads(result.stdout)] == ["job-1"]

    def test_list_empty(self, database_url, engine):
        """An empty table prints a placeholder."""
        result = invoke("jobs", "list", "-d", database_url)
        assert result.exit_code == 0
        assert "No items" in result.output


# ─── dlq ─────────────────────────────────────────────────────────────────


class TestDlqCommands:
    def _park(self, dlq, job_id: str = "job-1"):
        return dlq.forward(
            job_id, "render-video", {"jobId": job_id}, "renderer crashed", attempts=3, user_id="user-1"
        )

    def test_list_unresolved(self, database_url, dlq):
        """dlq list shows unresolved entries only."""
        first = self._park(dlq, "job-1")
        second = self._park(dlq, "job-2")
        dlq.resolve(second.id)

        result = invoke("dlq", "list", "-d", database_url, "--json")
        assert result.exit_code == 0
        assert [row["id"] for row in json.loads(result.stdout)] == [first.id]

    def test_list_all(self, database_url, dlq):
        """--all includes resolved entries."""
        self._park(dlq, "job-1")
        dlq.resolve(self._park(dlq, "job-2").id)

        result = invoke("dlq", "list", "--all", "-d", database_url, "--json")
        assert result.exit_code == 0
        assert len(json.loads(result.stdout)) == 2

    def test_resolve(self, database_url, dlq):
        """dlq resolve marks the entry handled and records who did it."""
        entry = self._park(dlq)
        result = invoke("dlq", "resolve", entry.id, "--by", "ops", "-d", database_url)
        assert result.exit_code == 0
        assert "Resolved" in result.output

        resolved = dlq.get(entry.id)
        assert resolved.resolved
        assert resolved.resolved_by == "ops"

    def test_resolve_twice_fails(self, database_url, dlq):
        """Resolving an already resolved entry exits 1."""
        entry = self._park(dlq)
        dlq.resolve(entry.id)
        result = invoke("dlq", "resolve", entry.id, "-d", database_url)
        assert result.exit_code == 1
        assert "already resolved" in result.output


# ─── health ──────────────────────────────────────────────────────────────


class TestHealthCommand:
    def test_healthy(self, database_url, engine):
        """A fresh database reports HEALTHY and exits 0."""
        result = invoke("health", "-d", database_url)
        assert result.exit_code == 0
        assert "HEALTHY" in result.output

    def test_json_components(self, database_url, engine):
        """The CLI checks only durable components."""
        result = invoke("health", "-d", database_url, "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        names = {c["name"] for c in data["components"]}
        assert names == {"database", "queue", "dead_letters"}

    def test_unhealthy_exit_code(self, database_url, engine):
        """An unreachable database exits 1."""
        with patch(
            "renderq.execution.store.JobStore.ping", side_effect=RuntimeError("db down")
        ):
            result = invoke("health", "-d", database_url)
        assert result.exit_code == 1
        assert "UNHEALTHY" in result.output


# ─── worker ──────────────────────────────────────────────────────────────


class TestWorkerCommand:
    def test_bad_renderer_path(self, database_url):
        """A malformed --renderer exits 1 before any worker is built."""
        result = invoke("worker", "start", "--renderer", "not-a-factory", "-d", database_url)
        assert result.exit_code == 1
        assert "module:factory" in result.output

    def test_missing_module(self, database_url):
        """An unimportable renderer module exits 1."""
        result = invoke("worker", "start", "-r", "no_such_module_xyz:make", "-d", database_url)
        assert result.exit_code == 1
        assert "Cannot import" in result.output


class TestLoadFactory:
    def test_calls_factory(self):
        """Callables are invoked and their result returned."""
        assert load_factory("tests._support.fakes:RecordingFinalizer").keys == []

    def test_missing_attribute(self):
        """A missing attribute raises ConfigError."""
        with pytest.raises(ConfigError, match="no attribute"):
            load_factory("tests._support.fakes:nothing_here")
