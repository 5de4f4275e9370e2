"""Tests for job processing outcomes in the worker loop."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from medsched_workers.config import Config
from medsched_workers.health import build_response
from medsched_workers.logging import current_context
from medsched_workers.worker import Worker


class _FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class _FakeCursor:
    def __init__(self):
        self.execute = AsyncMock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _make_mock_conn():
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=_FakeTransaction())
    cursor = _FakeCursor()
    conn.cursor = MagicMock(return_value=cursor)
    return conn, cursor


def _worker():
    return Worker(Config(database_url="postgresql://x", listen_database_url="postgresql://x"))


def _job(**overrides):
    job = {
        "id": 9,
        "patient_id": None,
        "job_type": "medication.missed_sweep",
        "payload": {"due_runs": 1},
        "attempt": 1,
        "max_retries": 3,
    }
    job.update(overrides)
    return job


@pytest.mark.asyncio
async def test_unknown_job_type_is_dead_lettered():
    conn, cursor = _make_mock_conn()
    await _worker()._process_job(conn, _job(job_type="nope"))
    sql = cursor.execute.call_args.args[0]
    assert "status = 'dead'" in sql


@pytest.mark.asyncio
async def test_successful_job_completes_with_patient_in_payload():
    conn, _ = _make_mock_conn()
    handler = AsyncMock(__name__="handler")
    with patch("medsched_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(patient_id="p1"))
    assert handler.await_args.args[1] == {"due_runs": 1, "patient_id": "p1"}
    assert "status = 'completed'" in conn.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_failed_job_is_retried_with_backoff():
    conn, cursor = _make_mock_conn()
    handler = AsyncMock(side_effect=RuntimeError("boom"), __name__="handler")
    with patch("medsched_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(attempt=2))
    sql, params = cursor.execute.call_args.args
    assert "status = 'pending'" in sql
    assert params[1] == 4.0


@pytest.mark.asyncio
async def test_failed_job_at_max_retries_is_dead():
    conn, cursor = _make_mock_conn()
    handler = AsyncMock(side_effect=RuntimeError("boom"), __name__="handler")
    with patch("medsched_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(attempt=3))
    assert "status = 'dead'" in cursor.execute.call_args.args[0]


class _RecordingTransaction:
    def __init__(self, log):
        self.log = log

    async def __aenter__(self):
        self.log.append("begin")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.log.append("commit" if exc_type is None else "rollback")
        return False


def _recording_conn(log):
    conn, cursor = _make_mock_conn()
    conn.transaction = MagicMock(side_effect=lambda: _RecordingTransaction(log))

    async def execute(sql, params=None):
        log.append("complete" if "status = 'completed'" in sql else sql)

    conn.execute = AsyncMock(side_effect=execute)
    return conn, cursor


@pytest.mark.asyncio
async def test_job_handler_runs_inside_the_job_transaction():
    log = []
    conn, _ = _recording_conn(log)
    handler = AsyncMock(
        side_effect=lambda conn, payload: log.append("handler"), __name__="handler"
    )
    with (
        patch("medsched_workers.worker.get_handler", return_value=handler),
        patch("medsched_workers.worker.commits_own_work", return_value=False),
    ):
        await _worker()._process_job(conn, _job())
    assert log == ["begin", "handler", "complete", "commit"]


@pytest.mark.asyncio
async def test_self_committing_handler_runs_outside_the_job_transaction():
    log = []
    conn, _ = _recording_conn(log)
    handler = AsyncMock(
        side_effect=lambda conn, payload: log.append("handler"), __name__="handler"
    )
    with (
        patch("medsched_workers.worker.get_handler", return_value=handler),
        patch("medsched_workers.worker.commits_own_work", return_value=True),
    ):
        await _worker()._process_job(conn, _job())
    assert log == ["handler", "begin", "complete", "commit"]
    conn.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_self_committing_failure_rolls_back_and_retries():
    log = []
    conn, cursor = _recording_conn(log)
    handler = AsyncMock(side_effect=RuntimeError("boom"), __name__="handler")
    with (
        patch("medsched_workers.worker.get_handler", return_value=handler),
        patch("medsched_workers.worker.commits_own_work", return_value=True),
    ):
        await _worker()._process_job(conn, _job(attempt=1))
    conn.rollback.assert_awaited_once()
    assert "complete" not in log
    assert "status = 'pending'" in cursor.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_job_runs_under_its_log_context():
    conn, _ = _make_mock_conn()
    seen = {}
    handler = AsyncMock(
        side_effect=lambda conn, payload: seen.update(current_context()), __name__="handler"
    )
    with patch("medsched_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job())
    assert seen["medsched_job_id"] == 9
    assert seen["medsched_job_type"] == "medication.missed_sweep"
    assert current_context() == {}


def _body(raw: bytes) -> dict:
    return json.loads(raw.split(b"\r\n\r\n", 1)[1])


@pytest.mark.asyncio
async def test_metrics_endpoint():
    raw = await build_response("/metrics", "postgresql://x")
    assert raw.startswith(b"HTTP/1.1 200 OK")
    assert "sweeps" in _body(raw)


@pytest.mark.asyncio
async def test_unknown_path_is_404():
    raw = await build_response("/nope", "postgresql://x")
    assert raw.startswith(b"HTTP/1.1 404")


@pytest.mark.asyncio
async def test_health_degraded_when_db_unreachable():
    with patch("medsched_workers.health._check_db", AsyncMock(return_value="error")):
        raw = await build_response("/health", "postgresql://x")
    assert raw.startswith(b"HTTP/1.1 503")
    assert _body(raw)["db"] == "error"
