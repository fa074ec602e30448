"""Named, timestamped progress markers per task."""

from __future__ import annotations

import secrets
from pathlib import Path
from typing import Any, TypedDict

from agentctl.store import JsonDocumentStore, utcnow

MAX_CHECKPOINTS_PER_TASK = 20


class Checkpoint(TypedDict):
    id: str
    task_id: str
    label: str
    created_at: str
    metadata: dict[str, Any]


class CheckpointManager:
    def __init__(self, path: Path, max_per_task: int = MAX_CHECKPOINTS_PER_TASK) -> None:
        self._store = JsonDocumentStore(path, "checkpoints")
        self.max_per_task = max_per_task

    async def create(
        self, task_id: str, label: str, metadata: dict[str, Any] | None = None
    ) -> Checkpoint:
        """Append a checkpoint, evicting the oldest beyond ``max_per_task``."""
        checkpoints = await self._store.aload()
        checkpoint = Checkpoint(
            id=f"cp_{secrets.token_hex(6)}",
            task_id=task_id,
            label=label,
            created_at=utcnow(),
            metadata=metadata or {},
        )
        rows = checkpoints.setdefault(task_id, [])
        rows.append(checkpoint)
        del rows[: max(0, len(rows) - self.max_per_task)]
        await self._store.asave(checkpoints)
        return checkpoint

    async def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        checkpoints = await self._store.aload()
        return checkpoints.get(task_id, [])

    async def latest(self, task_id: str) -> Checkpoint | None:
        rows = await self.list_checkpoints(task_id)
        return rows[-1] if rows else None

    async def get(self, task_id: str, checkpoint_id: str) -> Checkpoint | None:
        rows = await self.list_checkpoints(task_id)
        return next((row for row in rows if row["id"] == checkpoint_id), None)
