"""Persisted task registry and its status state machine."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypedDict

from agentctl.errors import DuplicateTaskError, InvalidTransitionError, TaskNotFoundError
from agentctl.store import JsonDocumentStore, utcnow

log = logging.getLogger(__name__)

VALID_TASK_STATUSES = {
    "created",
    "mutating",
    "verifying",
    "fixing",
    "ready",
    "pr_opened",
    "failed",
}
TASK_TERMINAL_STATUSES = {"pr_opened"}

# Legal edges. Same-state transitions are always allowed (no-op).
VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "created": frozenset({"mutating", "failed"}),
    "mutating": frozenset({"verifying", "failed"}),
    "verifying": frozenset({"ready", "fixing", "failed"}),
    "fixing": frozenset({"verifying", "failed"}),
    "ready": frozenset({"pr_opened", "mutating", "failed"}),
    "failed": frozenset({"created", "ready", "mutating"}),
    "pr_opened": frozenset(),
}


class TaskRecord(TypedDict):
    task_id: str
    workspace_path: str
    branch_name: str
    thread_id: str
    status: str
    created_at: str
    updated_at: str


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in VALID_TRANSITIONS.get(current, frozenset())


def new_task_record(
    task_id: str, workspace_path: str, branch_name: str, thread_id: str
) -> TaskRecord:
    now = utcnow()
    return TaskRecord(
        task_id=task_id,
        workspace_path=workspace_path,
        branch_name=branch_name,
        thread_id=thread_id,
        status="created",
        created_at=now,
        updated_at=now,
    )


class TaskRegistry:
    """Tasks keyed by id, persisted as one ``tasks.json`` document.

    Tasks are never deleted; a failed task is re-readied or re-created
    through the ``failed`` edges.
    """

    def __init__(self, path: Path) -> None:
        self._store = JsonDocumentStore(path, "tasks")

    async def create_task(self, record: TaskRecord) -> TaskRecord:
        tasks = await self._store.aload()
        task_id = record["task_id"]
        if task_id in tasks:
            raise DuplicateTaskError(f"Task already exists: {task_id}")
        for other in tasks.values():
            if other.get("branch_name") == record["branch_name"]:
                raise DuplicateTaskError(
                    f"Branch name already used by another task: {record['branch_name']}"
                )
        if record["status"] not in VALID_TASK_STATUSES:
            raise ValueError(f"Invalid task status '{record['status']}'")
        tasks[task_id] = dict(record)
        await self._store.asave(tasks)
        log.info("Created task %s on branch %s", task_id, record["branch_name"])
        return record

    async def get_task(self, task_id: str) -> TaskRecord | None:
        tasks = await self._store.aload()
        return tasks.get(task_id)

    async def list_tasks(self, status: str | None = None) -> list[TaskRecord]:
        tasks = await self._store.aload()
        rows = [tasks[key] for key in sorted(tasks)]
        if status is not None:
            rows = [row for row in rows if row.get("status") == status]
        return rows

    async def update_task_status(self, task_id: str, status: str) -> TaskRecord:
        if status not in VALID_TASK_STATUSES:
            raise ValueError(
                f"Invalid task status '{status}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
            )
        tasks = await self._store.aload()
        task = tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        current = task["status"]
        if not can_transition(current, status):
            raise InvalidTransitionError(current, status)
        if current != status:
            task["status"] = status
            task["updated_at"] = utcnow()
            await self._store.asave(tasks)
            log.debug("Task %s: %s -> %s", task_id, current, status)
        return task

    async def set_thread_id(self, task_id: str, thread_id: str) -> TaskRecord:
        tasks = await self._store.aload()
        task = tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        task["thread_id"] = thread_id
        task["updated_at"] = utcnow()
        await self._store.asave(tasks)
        return task
