"""Executors behind the scheduler's fixed maintenance jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from pathlib import Path

from agentctl.collaborators import QualityScorer
from agentctl.gateway import CommandExecutionGateway
from agentctl.tasks import TaskRegistry
from agentctl.workspace import WorkspaceManager

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
# Tasks that may still be worked on; their workspaces are never swept.
ACTIVE_TASK_STATUSES = {"created", "mutating", "verifying", "fixing"}


@dataclass
class SweepResult:
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def list_stale_workspaces(
    paths: Iterable[Path], older_than_days: int, *, now: float | None = None
) -> list[Path]:
    """The workspace directories in *paths* not modified for *older_than_days*."""
    cutoff = (now if now is not None else time.time()) - older_than_days * SECONDS_PER_DAY
    stale: list[Path] = []
    for path in paths:
        try:
            if path.stat().st_mtime < cutoff:
                stale.append(path)
        except OSError as exc:
            log.debug("Skipping unreadable workspace %s: %s", path, exc)
    return stale


class MaintenanceJobs:
    """Dispatches scheduler job names to their implementations.

    ``quality-scan`` scores every ``ready`` task.  ``architecture-sweep`` and
    ``doc-gardening`` run their configured command (``[scheduler.commands]``)
    in each live task workspace and are skipped when none is configured.
    ``gc-sweep`` deletes stale workspaces.
    """

    def __init__(
        self,
        tasks: TaskRegistry,
        workspaces: WorkspaceManager,
        gateway: CommandExecutionGateway,
        scorer: QualityScorer,
        *,
        stale_days: int = 7,
        commands: dict[str, list[str]] | None = None,
    ) -> None:
        self.tasks = tasks
        self.workspaces = workspaces
        self.gateway = gateway
        self.scorer = scorer
        self.stale_days = stale_days
        self.commands = commands or {}

    async def run(self, job_name: str) -> None:
        handlers = {
            "quality-scan": self.quality_scan,
            "architecture-sweep": self.architecture_sweep,
            "doc-gardening": self.doc_gardening,
            "gc-sweep": self.gc_sweep,
        }
        handler = handlers.get(job_name)
        if handler is None:
            raise ValueError(f"No maintenance handler for job '{job_name}'")
        await handler()

    async def quality_scan(self) -> dict[str, float]:
        scores: dict[str, float] = {}
        for task in await self.tasks.list_tasks(status="ready"):
            scores[task["task_id"]] = await self.scorer.score(task["task_id"])
        log.info("Quality scan scored %d tasks", len(scores))
        return scores

    async def _run_in_live_workspaces(self, job_name: str) -> None:
        command = self.commands.get(job_name)
        if not command:
            log.debug("No command configured for %s, skipping", job_name)
            return
        failures: list[str] = []
        for task in await self.tasks.list_tasks():
            if task["status"] == "pr_opened" or not Path(task["workspace_path"]).is_dir():
                continue
            result = await self.gateway.execute(task["task_id"], command, allow_non_zero_exit=True)
            if not result.ok:
                failures.append(f"{task['task_id']} (exit {result.exit_code})")
        if failures:
            raise RuntimeError(f"{job_name} failed for: {', '.join(failures)}")

    async def architecture_sweep(self) -> None:
        await self._run_in_live_workspaces("architecture-sweep")

    async def doc_gardening(self) -> None:
        await self._run_in_live_workspaces("doc-gardening")

    async def gc_sweep(self) -> SweepResult:
        active = {
            Path(task["workspace_path"]).resolve()
            for task in await self.tasks.list_tasks()
            if task["status"] in ACTIVE_TASK_STATUSES
        }
        result = SweepResult()
        for path in list_stale_workspaces(self.workspaces.list_workspaces(), self.stale_days):
            if path.resolve() in active:
                result.skipped.append(str(path))
                continue
            try:
                await asyncio.to_thread(self.workspaces.remove_workspace, path)
                result.removed.append(str(path))
            except OSError as exc:
                log.warning("Could not remove stale workspace %s: %s", path, exc)
                result.skipped.append(str(path))
        log.info("GC sweep removed %d workspaces", len(result.removed))
        return result
