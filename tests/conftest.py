"""
Shared pytest fixtures for renderq tests.

This module provides:
- Settings isolation (``RENDERQ_*`` env vars cleared, settings cache reset)
- A file-backed SQLite engine per test under ``tmp_path``
- Job store, queue backends and dead-letter queue bound to that database
- An in-memory pub/sub transport and a started notification channel

Scripted collaborators live in ``tests._support.fakes``.
"""

import sys
from pathlib import Path
from typing import Any, Iterator

import pytest

# Ensure renderq and tests._support are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from renderq.core.events import InMemoryTransport, NotificationChannel
from renderq.core.orm.session import create_renderq_engine, init_db, renderq_session_factory
from renderq.core.settings import clear_settings_cache
from renderq.execution.backends.memory import InMemoryQueueBackend
from renderq.execution.backends.sql import SqlQueueBackend
from renderq.execution.dlq import DeadLetterQueue
from renderq.execution.retry import BackoffPolicy
from renderq.execution.store import JobStore
from tests._support.fakes import make_payload


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep host RENDERQ_* variables and .env files out of every test."""
    for var in ("RENDERQ_DATABASE_URL", "RENDERQ_REDIS_URL", "RENDERQ_ENVIRONMENT", "RENDERQ_QUEUE_BACKEND"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Persistence
# =============================================================================


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'renderq.db'}"


@pytest.fixture
def engine(database_url: str):
    engine = create_renderq_engine(database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return renderq_session_factory(engine)


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def sql_backend(session_factory) -> SqlQueueBackend:
    return SqlQueueBackend(session_factory)


@pytest.fixture
def memory_backend() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest.fixture(params=["memory", "sql"])
def backend(request, memory_backend, session_factory):
    """Each queue adapter in turn; both honour the same contract."""
    if request.param == "memory":
        return memory_backend
    return SqlQueueBackend(session_factory)


@pytest.fixture
def dlq(session_factory) -> DeadLetterQueue:
    return DeadLetterQueue(session_factory)


# =============================================================================
# Notifications
# =============================================================================


@pytest.fixture
def fast_reconnect() -> BackoffPolicy:
    return BackoffPolicy(base=0.01, factor=2.0, cap=0.05)


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport(record=True)


@pytest.fixture
def channel(transport: InMemoryTransport, fast_reconnect: BackoffPolicy) -> Iterator[NotificationChannel]:
    channel = NotificationChannel(
        transport,
        reconnect_policy=fast_reconnect,
        keepalive_interval=0.2,
        receive_timeout=0.02,
    )
    channel.start()
    assert channel.wait_until_connected(5.0)
    yield channel
    channel.stop()


@pytest.fixture
def payload() -> dict[str, Any]:
    return make_payload()
