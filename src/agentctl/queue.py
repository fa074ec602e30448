"""rq-based job queue and Redis stream events for agentctl.

Autonomous runs can execute in-process (``agentctl run start --wait``) or be
handed to an rq worker (``--enqueue``).  Run status changes are published to
a Redis stream for dashboards and tailing; publishing is best-effort.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import uuid
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.job import Job

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("AGENTCTL_REDIS_URL", "redis://localhost:6379/0")

QUEUE_RUNS = "agentctl:runs"

FAILURE_TTL = 7 * 24 * 3600  # failed jobs expire from Redis after 7 days

EVENTS_STREAM = "agentctl:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("AGENTCTL_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1

_pools: dict[str, ConnectionPool] = {}


def get_redis(url: str | None = None) -> Redis:
    url = url or REDIS_URL
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = ConnectionPool.from_url(url)
    return Redis(connection_pool=pool)


def get_queue(name: str = QUEUE_RUNS, url: str | None = None) -> Queue:
    # No rq-level timeout; runs bound their own steps with explicit timeouts.
    return Queue(name, connection=get_redis(url), default_timeout=-1)


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    source: str = "controller",
    extra: dict | None = None,
    url: str | None = None,
) -> None:
    """Publish an event to the Redis stream. Best-effort, never raises."""
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    try:
        get_redis(url).xadd(
            EVENTS_STREAM,
            {"data": json.dumps(event)},
            maxlen=EVENTS_STREAM_MAXLEN,
            approximate=True,
        )
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


def read_events(count: int = 50, url: str | None = None) -> list[dict]:
    """Most recent stream events, oldest first. Empty if Redis is unavailable."""
    try:
        entries = get_redis(url).xrevrange(EVENTS_STREAM, count=count)
    except RedisError:
        log.warning("Event read failed (Redis unavailable)")
        return []
    events: list[dict] = []
    for entry_id, fields in reversed(entries):
        data = fields.get(b"data") or fields.get("data")
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data) if data else None
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
            events.append(event)
    return events


def enqueue_autonomous_run(
    objective: str,
    *,
    options: dict | None = None,
    config_path: str | None = None,
    url: str | None = None,
    spawn_worker: bool = True,
) -> Job:
    """Queue an autonomous run for an rq worker and make sure one is running."""
    from agentctl.jobs import run_autonomous

    q = get_queue(QUEUE_RUNS, url)
    job = q.enqueue(
        run_autonomous,
        objective,
        options=options or {},
        config_path=config_path,
        job_id=f"run-{uuid.uuid4().hex[:12]}",
        on_failure=Callback("agentctl.jobs.on_run_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Autonomous run: {objective[:60]}",
    )
    if spawn_worker:
        _spawn_worker(QUEUE_RUNS, url=url or REDIS_URL)
    return job


def _spawn_worker(queue_name: str, *, url: str) -> None:
    """Spawn a burst rq worker that exits once the queue is drained."""
    cmd = [sys.executable, "-m", "rq.cli", "worker", "--burst", "--url", url, queue_name]
    subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    log.info("Spawned rq worker for %s", queue_name)
