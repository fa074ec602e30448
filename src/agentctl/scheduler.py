"""Recurring maintenance job scheduler.

A fixed set of named jobs, each on its own interval and asyncio timer task.
Counters, history and the running flag persist in ``scheduler.json`` so
they survive restarts; timers only live as long as the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypedDict

from agentctl.errors import UnknownJobError
from agentctl.store import JsonDocumentStore, utcnow

log = logging.getLogger(__name__)

MAX_HISTORY = 100
MIN_INTERVAL_MS = 60_000

ONE_HOUR_MS = 60 * 60 * 1000
ONE_DAY_MS = 24 * ONE_HOUR_MS
ONE_WEEK_MS = 7 * ONE_DAY_MS

DEFAULT_INTERVALS: dict[str, int] = {
    "quality-scan": ONE_HOUR_MS,
    "architecture-sweep": ONE_DAY_MS,
    "doc-gardening": ONE_DAY_MS,
    "gc-sweep": ONE_WEEK_MS,
}
JOB_NAMES = tuple(DEFAULT_INTERVALS)

JobExecutor = Callable[[str], Awaitable[Any]]


class JobState(TypedDict):
    name: str
    interval_ms: int
    enabled: bool
    last_run_at: str | None
    next_run_at: str | None
    success_count: int
    failure_count: int
    last_error: str | None


class JobHistoryEntry(TypedDict):
    run_id: str
    job_name: str
    status: str
    started_at: str
    finished_at: str
    duration_ms: int
    error: str | None


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _new_job(name: str) -> JobState:
    return JobState(
        name=name,
        interval_ms=DEFAULT_INTERVALS[name],
        enabled=True,
        last_run_at=None,
        next_run_at=None,
        success_count=0,
        failure_count=0,
        last_error=None,
    )


def compute_next_run(name: str, job: JobState, now: datetime) -> datetime:
    """When *job* should next fire, given local time *now* (timezone-aware).

    A job that ran before fires one interval after its last run, if that is
    still in the future.  Otherwise each job has a preferred first slot:
    quality-scan at the next full hour, architecture-sweep at 06:00,
    doc-gardening at 07:00 and gc-sweep on Sunday at 03:00.
    """
    if job.get("last_run_at"):
        candidate = _parse(job["last_run_at"]) + timedelta(milliseconds=job["interval_ms"])
        if candidate > now:
            return candidate

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if name == "quality-scan":
        hour = now.replace(minute=0, second=0, microsecond=0)
        return hour if hour == now else hour + timedelta(hours=1)
    if name in ("architecture-sweep", "doc-gardening"):
        target = midnight + timedelta(hours=6 if name == "architecture-sweep" else 7)
        return target if target > now else target + timedelta(days=1)
    if name == "gc-sweep":
        # isoweekday: Monday=1 .. Sunday=7
        days = 7 - (now.isoweekday() % 7)
        return midnight + timedelta(days=days, hours=3)
    return now + timedelta(milliseconds=job["interval_ms"])


def _cap_history(history: list[JobHistoryEntry], name: str) -> list[JobHistoryEntry]:
    """Drop the oldest entries of *name* beyond MAX_HISTORY; other jobs keep theirs."""
    excess = sum(1 for entry in history if entry["job_name"] == name) - MAX_HISTORY
    kept: list[JobHistoryEntry] = []
    for entry in history:
        if excess > 0 and entry["job_name"] == name:
            excess -= 1
            continue
        kept.append(entry)
    return kept


class JobScheduler:
    """Runs the fixed maintenance jobs on independent intervals.

    *executor* is awaited with the job name; raising marks the run failed.
    """

    def __init__(
        self,
        path: Path,
        executor: JobExecutor | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = JsonDocumentStore(path, "state")
        self.executor = executor
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    # -- State --

    async def _load(self) -> dict[str, Any]:
        state = await self._store.aload()
        state.setdefault("running", False)
        state.setdefault("started_at", None)
        jobs = state.setdefault("jobs", {})
        for name in JOB_NAMES:
            if not isinstance(jobs.get(name), dict):
                jobs[name] = _new_job(name)
        if not isinstance(state.get("history"), list):
            state["history"] = []
        return state

    @staticmethod
    def _status(state: dict[str, Any]) -> dict[str, Any]:
        return {
            "running": state["running"],
            "started_at": state["started_at"],
            "jobs": [state["jobs"][name] for name in JOB_NAMES],
        }

    @staticmethod
    def _job(state: dict[str, Any], name: str) -> JobState:
        if name not in JOB_NAMES:
            raise UnknownJobError(f"Unknown job: {name}")
        return state["jobs"][name]

    @property
    def armed_jobs(self) -> list[str]:
        return sorted(self._timers)

    # -- Lifecycle --

    async def start(self) -> dict[str, Any]:
        """Arm a timer per enabled job. Idempotent; keeps the original start time."""
        async with self._lock:
            state = await self._load()
            if self._timers:
                return self._status(state)
            now = self._clock()
            if not state["running"] or not state["started_at"]:
                state["started_at"] = _iso(now)
            state["running"] = True
            armed = [name for name in JOB_NAMES if state["jobs"][name]["enabled"]]
            for name in armed:
                job = state["jobs"][name]
                job["next_run_at"] = _iso(compute_next_run(name, job, now))
            # Timers read next_run_at from disk, so persist before arming.
            await self._store.asave(state)
            for name in armed:
                self._arm(name)
            log.info("Scheduler started with %d jobs", len(self._timers))
            return self._status(state)

    async def stop(self) -> dict[str, Any]:
        timers, self._timers = self._timers, {}
        for timer in timers.values():
            timer.cancel()
        for timer in timers.values():
            try:
                await timer
            except asyncio.CancelledError:
                pass
        async with self._lock:
            state = await self._load()
            state["running"] = False
            for job in state["jobs"].values():
                job["next_run_at"] = None
            await self._store.asave(state)
        log.info("Scheduler stopped")
        return self._status(state)

    async def status(self) -> dict[str, Any]:
        return self._status(await self._load())

    async def job_history(self, name: str) -> list[JobHistoryEntry]:
        state = await self._load()
        self._job(state, name)
        return [entry for entry in state["history"] if entry["job_name"] == name]

    async def set_job_interval(self, name: str, interval_ms: int) -> JobState:
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, int) or interval_ms < MIN_INTERVAL_MS:
            raise ValueError(f"interval_ms must be an integer >= {MIN_INTERVAL_MS}, got: {interval_ms}")
        async with self._lock:
            state = await self._load()
            job = self._job(state, name)
            job["interval_ms"] = interval_ms
            rearm = name in self._timers
            if rearm:
                self._timers.pop(name).cancel()
                job["next_run_at"] = _iso(self._clock() + timedelta(milliseconds=interval_ms))
            await self._store.asave(state)
            if rearm:
                self._arm(name)
            return job

    async def trigger_job(self, name: str) -> JobHistoryEntry:
        """Run *name* now, out of band, and record the outcome."""
        if name not in JOB_NAMES:
            raise UnknownJobError(f"Unknown job: {name}")
        return await self._execute(name)

    # -- Execution --

    def _arm(self, name: str) -> None:
        self._timers[name] = asyncio.create_task(self._timer_loop(name), name=f"scheduler:{name}")

    async def _timer_loop(self, name: str) -> None:
        while True:
            state = await self._load()
            job = state["jobs"][name]
            delay = job["interval_ms"] / 1000
            if job.get("next_run_at"):
                delay = max(0.0, (_parse(job["next_run_at"]) - self._clock()).total_seconds())
            await asyncio.sleep(delay)
            await self._execute(name)

    async def _execute(self, name: str) -> JobHistoryEntry:
        started_at = utcnow()
        started = time.monotonic()
        status, error = "success", None
        try:
            if self.executor is not None:
                await self.executor(name)
        except Exception as exc:
            status, error = "failure", str(exc) or type(exc).__name__
            log.warning("Scheduled job %s failed: %s", name, error)
        duration_ms = math.floor((time.monotonic() - started) * 1000)
        entry = JobHistoryEntry(
            run_id=f"sched_{int(time.time() * 1000)}_{secrets.token_hex(3)}",
            job_name=name,
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            duration_ms=duration_ms,
            error=error,
        )

        async with self._lock:
            state = await self._load()
            job = state["jobs"][name]
            job["last_run_at"] = entry["finished_at"]
            if status == "success":
                job["success_count"] += 1
                job["last_error"] = None
            else:
                job["failure_count"] += 1
                job["last_error"] = error
            job["next_run_at"] = _iso(self._clock() + timedelta(milliseconds=job["interval_ms"]))
            state["history"].append(entry)
            state["history"] = _cap_history(state["history"], name)
            await self._store.asave(state)
        log.info("Scheduled job %s finished: %s (%dms)", name, status, duration_ms)
        return entry
