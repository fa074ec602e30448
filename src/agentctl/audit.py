"""Structured audit trail for every command run through the gateway.

One entry per invocation: recorded as ``running`` before spawn and closed
with a terminal state (``succeeded``, ``failed`` or ``killed``).  The log is
append-only and retention-capped: the oldest entries are evicted first once
``max_entries`` is exceeded.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TypedDict

from agentctl.store import JsonDocumentStore, utcnow

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 5000
AUDIT_STATES = {"running", "succeeded", "failed", "killed"}


class AuditEntry(TypedDict):
    id: str
    task_id: str
    command: list[str]
    cwd: str
    state: str
    exit_code: int | None
    started_at: str
    finished_at: str | None
    duration_ms: int | None
    stdout_bytes: int
    stderr_bytes: int
    error: str | None


@dataclass
class AuditMetrics:
    total_commands: int = 0
    succeeded_commands: int = 0
    failed_commands: int = 0
    killed_commands: int = 0
    avg_duration_ms: int = 0
    total_duration_ms: int = 0
    command_frequency: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _elapsed_ms(started_at: str, finished_at: str) -> int:
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(finished_at)
    return int((end - start).total_seconds() * 1000)


class CommandAuditLogger:
    """Audit entries cached in memory, persisted to one JSON document."""

    def __init__(self, path: Path, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._store = JsonDocumentStore(path, "entries", default=list)
        self._max_entries = max_entries
        self._entries: list[AuditEntry] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._entries = await self._store.aload()
        self._loaded = True

    def _evict(self) -> None:
        excess = len(self._entries) - self._max_entries
        if excess > 0:
            del self._entries[:excess]

    async def record_start(self, task_id: str, command: list[str], cwd: str) -> str:
        """Append a ``running`` entry and return its audit id."""
        async with self._lock:
            await self._ensure_loaded()
            audit_id = f"audit_{secrets.token_hex(8)}"
            self._entries.append(
                AuditEntry(
                    id=audit_id,
                    task_id=task_id,
                    command=list(command),
                    cwd=cwd,
                    state="running",
                    exit_code=None,
                    started_at=utcnow(),
                    finished_at=None,
                    duration_ms=None,
                    stdout_bytes=0,
                    stderr_bytes=0,
                    error=None,
                )
            )
            self._evict()
            await self._store.asave(self._entries)
            return audit_id

    async def record_end(
        self,
        audit_id: str,
        state: str,
        exit_code: int | None,
        stdout_bytes: int,
        stderr_bytes: int,
        error: str | None = None,
    ) -> None:
        if state not in AUDIT_STATES - {"running"}:
            raise ValueError(f"Invalid terminal audit state '{state}'")
        async with self._lock:
            await self._ensure_loaded()
            entry = next((e for e in self._entries if e["id"] == audit_id), None)
            if entry is None:
                # Already evicted by retention.
                log.debug("Audit entry %s no longer present", audit_id)
                return
            finished_at = utcnow()
            entry["state"] = state
            entry["exit_code"] = exit_code
            entry["finished_at"] = finished_at
            entry["duration_ms"] = _elapsed_ms(entry["started_at"], finished_at)
            entry["stdout_bytes"] = stdout_bytes
            entry["stderr_bytes"] = stderr_bytes
            entry["error"] = error
            await self._store.asave(self._entries)

    async def get_entries(self, task_id: str | None = None, limit: int = 50) -> list[AuditEntry]:
        """Most recent first, optionally filtered by task."""
        async with self._lock:
            await self._ensure_loaded()
            rows = [e for e in self._entries if task_id is None or e["task_id"] == task_id]
        rows.reverse()
        return rows[:limit]

    async def get_metrics(self, task_id: str | None = None) -> AuditMetrics:
        async with self._lock:
            await self._ensure_loaded()
            rows = [e for e in self._entries if task_id is None or e["task_id"] == task_id]

        metrics = AuditMetrics(total_commands=len(rows))
        durations = [e["duration_ms"] for e in rows if e["duration_ms"] is not None]
        for entry in rows:
            if entry["state"] == "succeeded":
                metrics.succeeded_commands += 1
            elif entry["state"] == "failed":
                metrics.failed_commands += 1
            elif entry["state"] == "killed":
                metrics.killed_commands += 1
            binary = entry["command"][0] if entry["command"] else "unknown"
            metrics.command_frequency[binary] = metrics.command_frequency.get(binary, 0) + 1
        metrics.total_duration_ms = sum(durations)
        if durations:
            metrics.avg_duration_ms = round(metrics.total_duration_ms / len(durations))
        return metrics

    async def clear(self) -> None:
        async with self._lock:
            self._entries = []
            self._loaded = True
            await self._store.asave(self._entries)
