"""Merge queue: priority + FIFO ordering of pending merges.

Also probes branch freshness against the integration branch, detects
conflicts without touching the working tree (``git merge-tree``), and
auto-rebases stale branches.  ``dequeue`` is a single hand-off; callers
that consume concurrently must serialize externally.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TypedDict

from agentctl.errors import AgentctlError
from agentctl.gateway import CommandExecutionGateway
from agentctl.git_ops import parse_merge_tree_conflicts
from agentctl.store import JsonDocumentStore, utcnow

log = logging.getLogger(__name__)

MERGE_STATUSES = {"waiting", "ready", "rebasing", "blocked", "merging", "merged"}
DEQUEUE_STATUSES = {"waiting", "ready"}


class MergeQueueEntry(TypedDict):
    task_id: str
    pr_number: int
    priority: int
    branch_name: str
    enqueued_at: str
    status: str
    conflict_detected: bool
    last_checked_at: str | None


@dataclass
class FreshnessResult:
    fresh: bool
    behind_by: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RebaseResult:
    success: bool
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConflictReport:
    task_id: str
    has_conflicts: bool
    conflict_files: list[str] = field(default_factory=list)
    base_sha: str = "unknown"
    head_sha: str = "unknown"
    checked_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _sort_key(entry: MergeQueueEntry) -> tuple[int, str]:
    # ISO timestamps sort lexically; list.sort is stable for exact ties.
    return (-entry["priority"], entry["enqueued_at"])


class MergeQueueManager:
    """Queue persisted in ``merge-queue.json``; git runs through the gateway."""

    def __init__(
        self,
        path: Path,
        gateway: CommandExecutionGateway,
        *,
        remote: str = "origin",
        base_branch: str = "main",
    ) -> None:
        self._store = JsonDocumentStore(path, "entries", default=list)
        self.gateway = gateway
        self.remote = remote
        self.base_branch = base_branch

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.base_branch}"

    async def _git(self, task_id: str, *args: str, allow_non_zero_exit: bool = False):
        return await self.gateway.execute(
            task_id, ["git", *args], allow_non_zero_exit=allow_non_zero_exit
        )

    async def _fetch(self, task_id: str, *, required: bool) -> None:
        await self._git(
            task_id, "fetch", self.remote, self.base_branch, allow_non_zero_exit=not required
        )

    async def _update(self, task_id: str, **changes) -> MergeQueueEntry | None:
        entries = await self._store.aload()
        entry = next((e for e in entries if e["task_id"] == task_id), None)
        if entry is None:
            return None
        entry.update(changes)
        await self._store.asave(entries)
        return entry

    async def enqueue(self, task_id: str, pr_number: int, priority: int = 0) -> MergeQueueEntry:
        """Insert, or update in place, the live entry for *task_id*."""
        entries = await self._store.aload()
        existing = next((e for e in entries if e["task_id"] == task_id), None)
        if existing is not None:
            existing.update(
                pr_number=pr_number, priority=priority, status="waiting", conflict_detected=False
            )
            entries.sort(key=_sort_key)
            await self._store.asave(entries)
            return existing

        branch_name = f"agent/{task_id}"
        try:
            result = await self._git(task_id, "rev-parse", "--abbrev-ref", "HEAD")
            branch_name = result.stdout.strip() or branch_name
        except (AgentctlError, OSError, ValueError) as exc:
            log.debug("Using fallback branch name for %s: %s", task_id, exc)

        entry = MergeQueueEntry(
            task_id=task_id,
            pr_number=pr_number,
            priority=priority,
            branch_name=branch_name,
            enqueued_at=utcnow(),
            status="waiting",
            conflict_detected=False,
            last_checked_at=None,
        )
        entries.append(entry)
        entries.sort(key=_sort_key)
        await self._store.asave(entries)
        log.info("Enqueued %s (PR #%s, priority %s)", task_id, pr_number, priority)
        return entry

    async def dequeue(self) -> MergeQueueEntry | None:
        entries = await self._store.aload()
        entry = next((e for e in entries if e["status"] in DEQUEUE_STATUSES), None)
        if entry is None:
            return None
        entry["status"] = "merging"
        await self._store.asave(entries)
        return entry

    async def check_freshness(self, task_id: str) -> FreshnessResult:
        """Compare ``merge-base HEAD <remote>/<base>`` with the upstream tip.

        Any failure reports ``behind_by=-1`` rather than raising.
        """
        try:
            await self._fetch(task_id, required=False)
            merge_base = (await self._git(task_id, "merge-base", "HEAD", self.upstream)).stdout.strip()
            tip = (await self._git(task_id, "rev-parse", self.upstream)).stdout.strip()
            if merge_base == tip:
                result = FreshnessResult(fresh=True, behind_by=0)
            else:
                counted = await self._git(task_id, "rev-list", "--count", f"{merge_base}..{self.upstream}")
                try:
                    behind = int(counted.stdout.strip())
                except ValueError:
                    behind = 0
                result = FreshnessResult(fresh=False, behind_by=behind)
        except (AgentctlError, OSError, ValueError) as exc:
            log.warning("Freshness check failed for %s: %s", task_id, exc)
            return FreshnessResult(fresh=False, behind_by=-1)
        await self._update(task_id, last_checked_at=utcnow())
        return result

    async def rebase_onto_main(self, task_id: str) -> RebaseResult:
        """Rebase onto the upstream integration branch.

        On conflict the rebase is aborted and the entry is marked blocked.
        """
        await self._update(task_id, status="rebasing")
        try:
            await self._fetch(task_id, required=True)
            rebase = await self._git(task_id, "rebase", self.upstream, allow_non_zero_exit=True)
            if rebase.exit_code != 0:
                await self._git(task_id, "rebase", "--abort", allow_non_zero_exit=True)
                await self._update(
                    task_id, status="blocked", conflict_detected=True, last_checked_at=utcnow()
                )
                return RebaseResult(
                    success=False,
                    error=f"Rebase failed with conflicts: {rebase.stderr[:500]}",
                )
        except (AgentctlError, OSError, ValueError) as exc:
            await self._update(
                task_id, status="blocked", conflict_detected=True, last_checked_at=utcnow()
            )
            return RebaseResult(success=False, error=str(exc))

        await self._update(task_id, status="ready", conflict_detected=False, last_checked_at=utcnow())
        log.info("Rebased %s onto %s", task_id, self.upstream)
        return RebaseResult(success=True)

    async def detect_conflicts(self, task_id: str) -> ConflictReport:
        """Probe a three-way merge with ``git merge-tree``; never mutates the tree."""
        now = utcnow()
        try:
            await self._fetch(task_id, required=True)
            head_sha = (await self._git(task_id, "rev-parse", "HEAD")).stdout.strip()
            base_sha = (await self._git(task_id, "rev-parse", self.upstream)).stdout.strip()
            probe = await self._git(
                task_id,
                "merge-tree",
                "--write-tree",
                "--name-only",
                self.upstream,
                "HEAD",
                allow_non_zero_exit=True,
            )
        except (AgentctlError, OSError, ValueError) as exc:
            log.warning("Conflict probe failed for %s: %s", task_id, exc)
            return ConflictReport(task_id=task_id, has_conflicts=False, checked_at=now)

        has_conflicts = probe.exit_code != 0
        files = parse_merge_tree_conflicts(probe.stdout) if has_conflicts else []
        changes: dict = {"conflict_detected": has_conflicts, "last_checked_at": now}
        if has_conflicts:
            changes["status"] = "blocked"
        await self._update(task_id, **changes)
        return ConflictReport(
            task_id=task_id,
            has_conflicts=has_conflicts,
            conflict_files=files,
            base_sha=base_sha,
            head_sha=head_sha,
            checked_at=now,
        )

    async def status(self) -> dict:
        entries = await self._store.aload()
        return {
            "entries": entries,
            "depth": len(entries),
            "blocked_count": sum(1 for e in entries if e["status"] == "blocked"),
            "ready_count": sum(1 for e in entries if e["status"] == "ready"),
        }

    async def mark_merged(self, task_id: str) -> bool:
        """Mark merged and drop the entry from the live queue."""
        entries = await self._store.aload()
        remaining = [e for e in entries if e["task_id"] != task_id]
        if len(remaining) == len(entries):
            return False
        await self._store.asave(remaining)
        log.info("Merged %s", task_id)
        return True

    async def remove(self, task_id: str) -> bool:
        entries = await self._store.aload()
        remaining = [e for e in entries if e["task_id"] != task_id]
        if len(remaining) == len(entries):
            return False
        await self._store.asave(remaining)
        return True
