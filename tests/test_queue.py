"""Tests for the rq queue layer and Redis stream events."""

import json
from unittest.mock import MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from agentctl import queue


def test_get_redis_reuses_pool_per_url():
    queue._pools.clear()
    try:
        a = queue.get_redis("redis://localhost:6379/5")
        b = queue.get_redis("redis://localhost:6379/5")
        c = queue.get_redis("redis://localhost:6379/6")
        assert a.connection_pool is b.connection_pool
        assert a.connection_pool is not c.connection_pool
    finally:
        queue._pools.clear()


def test_get_queue_has_no_default_timeout():
    with patch("agentctl.queue.get_redis") as mock_redis, patch("agentctl.queue.Queue") as MockQueue:
        queue.get_queue()
    MockQueue.assert_called_once_with(
        queue.QUEUE_RUNS, connection=mock_redis.return_value, default_timeout=-1
    )


def test_publish_event_writes_stream_entry():
    with patch("agentctl.queue.get_redis") as mock_redis:
        conn = MagicMock()
        mock_redis.return_value = conn
        queue.publish_event("run:status", "run_1", "executing", extra={"task_id": "auto-run_1"})

    conn.xadd.assert_called_once()
    stream, fields = conn.xadd.call_args.args
    assert stream == queue.EVENTS_STREAM
    assert conn.xadd.call_args.kwargs == {
        "maxlen": queue.EVENTS_STREAM_MAXLEN,
        "approximate": True,
    }
    event = json.loads(fields["data"])
    assert event["type"] == "run:status"
    assert event["id"] == "run_1"
    assert event["status"] == "executing"
    assert event["source"] == "controller"
    assert event["task_id"] == "auto-run_1"
    assert event["v"] == queue.EVENT_VERSION
    assert event["event_id"]


def test_publish_event_swallows_redis_errors(caplog):
    with patch("agentctl.queue.get_redis") as mock_redis:
        conn = MagicMock()
        conn.xadd.side_effect = RedisConnectionError("refused")
        mock_redis.return_value = conn
        queue.publish_event("run:status", "run_1", "failed")
    assert "Event publish failed" in caplog.text


def test_read_events_decodes_oldest_first():
    newest = {"type": "run:status", "id": "run_1", "status": "completed"}
    oldest = {"type": "run:status", "id": "run_1", "status": "planning"}
    with patch("agentctl.queue.get_redis") as mock_redis:
        conn = MagicMock()
        conn.xrevrange.return_value = [
            (b"2-0", {b"data": json.dumps(newest).encode()}),
            (b"1-1", {b"data": b"not json"}),
            (b"1-0", {b"data": json.dumps(oldest).encode()}),
        ]
        mock_redis.return_value = conn
        events = queue.read_events(count=3)

    conn.xrevrange.assert_called_once_with(queue.EVENTS_STREAM, count=3)
    assert [e["status"] for e in events] == ["planning", "completed"]
    assert [e["_stream_id"] for e in events] == ["1-0", "2-0"]


def test_read_events_redis_unavailable():
    with patch("agentctl.queue.get_redis") as mock_redis:
        conn = MagicMock()
        conn.xrevrange.side_effect = RedisConnectionError("refused")
        mock_redis.return_value = conn
        assert queue.read_events() == []


def test_enqueue_autonomous_run_calls_rq():
    """enqueue_autonomous_run should hand the job function and options to rq."""
    mock_job = MagicMock()
    mock_job.id = "run-abc"
    with (
        patch("agentctl.queue.get_queue") as mock_get_queue,
        patch("agentctl.queue._spawn_worker") as mock_spawn,
    ):
        mock_q = MagicMock()
        mock_q.enqueue.return_value = mock_job
        mock_get_queue.return_value = mock_q

        from agentctl.jobs import run_autonomous

        job = queue.enqueue_autonomous_run(
            "Add a health endpoint",
            options={"auto_pr": True},
            config_path="/etc/agentctl.toml",
            url="redis://q:6379/0",
        )

    assert job is mock_job
    mock_get_queue.assert_called_once_with(queue.QUEUE_RUNS, "redis://q:6379/0")
    args, kwargs = mock_q.enqueue.call_args
    assert args == (run_autonomous, "Add a health endpoint")
    assert kwargs["options"] == {"auto_pr": True}
    assert kwargs["config_path"] == "/etc/agentctl.toml"
    assert kwargs["job_id"].startswith("run-")
    assert kwargs["failure_ttl"] == queue.FAILURE_TTL
    assert kwargs["on_failure"].func == "agentctl.jobs.on_run_failure"
    mock_spawn.assert_called_once_with(queue.QUEUE_RUNS, url="redis://q:6379/0")


def test_enqueue_without_worker_spawn():
    with (
        patch("agentctl.queue.get_queue") as mock_get_queue,
        patch("agentctl.queue._spawn_worker") as mock_spawn,
    ):
        queue.enqueue_autonomous_run("x", spawn_worker=False)
    assert mock_get_queue.return_value.enqueue.call_args.kwargs["options"] == {}
    mock_spawn.assert_not_called()


def test_spawn_worker_runs_burst_worker():
    with patch("agentctl.queue.subprocess.Popen") as mock_popen:
        queue._spawn_worker(queue.QUEUE_RUNS, url="redis://q:6379/0")
    cmd = mock_popen.call_args.args[0]
    assert cmd[1:] == ["-m", "rq.cli", "worker", "--burst", "--url", "redis://q:6379/0", queue.QUEUE_RUNS]
    assert mock_popen.call_args.kwargs["start_new_session"] is True
