"""Tests for the merge queue (ordering in memory, git probes against real repos)."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

import pytest
from conftest import FakeRunner, git, requires_git, result

from agentctl.audit import CommandAuditLogger
from agentctl.config import GatewayConfig
from agentctl.gateway import CommandExecutionGateway
from agentctl.merge_queue import MergeQueueManager


def _git_version() -> tuple[int, int]:
    try:
        out = subprocess.run(["git", "--version"], capture_output=True, text=True).stdout
    except OSError:
        return (0, 0)
    match = re.search(r"(\d+)\.(\d+)", out)
    return (int(match.group(1)), int(match.group(2))) if match else (0, 0)


requires_merge_tree = pytest.mark.skipif(
    _git_version() < (2, 38), reason="git merge-tree --write-tree needs git >= 2.38"
)


@pytest.fixture()
def fake_queue(state_dir, make_gateway):
    runner = FakeRunner({("git", "rev-parse", "--abbrev-ref"): result(stdout="ai/feature\n")})
    return MergeQueueManager(state_dir / "merge-queue.json", make_gateway(runner))


@pytest.mark.asyncio
async def test_priority_then_fifo(fake_queue):
    await fake_queue.enqueue("low", 1, priority=0)
    await fake_queue.enqueue("high", 2, priority=5)
    await fake_queue.enqueue("low2", 3, priority=0)
    status = await fake_queue.status()
    assert [e["task_id"] for e in status["entries"]] == ["high", "low", "low2"]
    assert status["depth"] == 3
    assert status["entries"][0]["branch_name"] == "ai/feature"


@pytest.mark.asyncio
async def test_reenqueue_updates_in_place(fake_queue):
    await fake_queue.enqueue("a", 1)
    await fake_queue.enqueue("b", 2)
    entry = await fake_queue.enqueue("a", 10, priority=3)
    assert entry["pr_number"] == 10
    status = await fake_queue.status()
    assert status["depth"] == 2
    assert [e["task_id"] for e in status["entries"]] == ["a", "b"]


@pytest.mark.asyncio
async def test_branch_name_fallback(state_dir, make_gateway):
    runner = FakeRunner({("git", "rev-parse"): FileNotFoundError("no workspace")})
    queue = MergeQueueManager(state_dir / "merge-queue.json", make_gateway(runner))
    entry = await queue.enqueue("t9", 4)
    assert entry["branch_name"] == "agent/t9"


@pytest.mark.asyncio
async def test_dequeue_marks_merging_and_skips_blocked(fake_queue, state_dir):
    await fake_queue.enqueue("a", 1, priority=9)
    await fake_queue.enqueue("b", 2)
    # Block "a" the way a failed rebase would.
    await fake_queue._update("a", status="blocked")
    entry = await fake_queue.dequeue()
    assert entry["task_id"] == "b"
    assert entry["status"] == "merging"
    assert await fake_queue.dequeue() is None
    status = await fake_queue.status()
    assert status["blocked_count"] == 1


@pytest.mark.asyncio
async def test_mark_merged_and_remove(fake_queue):
    await fake_queue.enqueue("a", 1)
    await fake_queue.enqueue("b", 2)
    assert await fake_queue.mark_merged("a") is True
    assert await fake_queue.mark_merged("a") is False
    assert await fake_queue.remove("b") is True
    assert await fake_queue.remove("b") is False
    assert (await fake_queue.status())["depth"] == 0


@pytest.mark.asyncio
async def test_freshness_error_reports_minus_one(state_dir, make_gateway):
    runner = FakeRunner({("git", "merge-base"): result(exit_code=128, stderr="fatal")})
    queue = MergeQueueManager(state_dir / "merge-queue.json", make_gateway(runner))
    freshness = await queue.check_freshness("t1")
    assert freshness.fresh is False
    assert freshness.behind_by == -1


# -- real git ---------------------------------------------------------------


@pytest.fixture()
def repos(tmp_path: Path, git_identity_env):
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", "--initial-branch=main", str(remote))

    upstream = tmp_path / "upstream"
    git(tmp_path, "clone", str(remote), str(upstream))
    git(upstream, "symbolic-ref", "HEAD", "refs/heads/main")
    (upstream / "file.txt").write_text("line one\nline two\n")
    git(upstream, "add", "file.txt")
    git(upstream, "commit", "-m", "init")
    git(upstream, "push", "origin", "main")

    workspaces = tmp_path / "workspaces"
    workspace = workspaces / "t1"
    git(tmp_path, "clone", str(remote), str(workspace))
    git(workspace, "switch", "-c", "ai/feature")
    return upstream, workspace


@pytest.fixture()
def git_queue(state_dir, tmp_path):
    gateway = CommandExecutionGateway(
        GatewayConfig(),
        CommandAuditLogger(state_dir / "command-audit.json"),
        lambda task_id: str(tmp_path / "workspaces" / task_id),
    )
    return MergeQueueManager(state_dir / "merge-queue.json", gateway)


def _commit(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)


@pytest.mark.slow
@requires_git
@pytest.mark.asyncio
async def test_enqueue_captures_workspace_branch(repos, git_queue):
    entry = await git_queue.enqueue("t1", 42)
    assert entry["branch_name"] == "ai/feature"


@pytest.mark.slow
@requires_git
@pytest.mark.asyncio
async def test_freshness_and_rebase(repos, git_queue):
    upstream, workspace = repos
    await git_queue.enqueue("t1", 42)
    _commit(workspace, "feature.txt", "feature\n", "feature work")

    fresh = await git_queue.check_freshness("t1")
    assert (fresh.fresh, fresh.behind_by) == (True, 0)
    assert (await git_queue.status())["entries"][0]["last_checked_at"] is not None

    _commit(upstream, "other.txt", "other\n", "main moves on")
    git(upstream, "push", "origin", "main")
    stale = await git_queue.check_freshness("t1")
    assert (stale.fresh, stale.behind_by) == (False, 1)

    rebased = await git_queue.rebase_onto_main("t1")
    assert rebased.success is True
    assert (await git_queue.status())["entries"][0]["status"] == "ready"
    assert (workspace / "other.txt").exists()
    assert (await git_queue.check_freshness("t1")).fresh is True


@pytest.mark.slow
@requires_git
@pytest.mark.asyncio
async def test_conflicting_rebase_aborts_and_blocks(repos, git_queue):
    upstream, workspace = repos
    await git_queue.enqueue("t1", 42)
    _commit(workspace, "file.txt", "feature one\nline two\n", "feature edit")
    _commit(upstream, "file.txt", "main one\nline two\n", "main edit")
    git(upstream, "push", "origin", "main")

    rebased = await git_queue.rebase_onto_main("t1")
    assert rebased.success is False
    assert rebased.error.startswith("Rebase failed with conflicts")
    entry = (await git_queue.status())["entries"][0]
    assert entry["status"] == "blocked"
    assert entry["conflict_detected"] is True
    # The aborted rebase leaves the branch and tree as they were.
    assert not (workspace / ".git" / "rebase-merge").exists()
    assert (workspace / "file.txt").read_text() == "feature one\nline two\n"


@pytest.mark.slow
@requires_git
@requires_merge_tree
@pytest.mark.asyncio
async def test_detect_conflicts_lists_files_without_touching_tree(repos, git_queue):
    upstream, workspace = repos
    await git_queue.enqueue("t1", 42)
    _commit(workspace, "file.txt", "feature one\nline two\n", "feature edit")
    _commit(upstream, "file.txt", "main one\nline two\n", "main edit")
    git(upstream, "push", "origin", "main")
    head_before = git(workspace, "rev-parse", "HEAD").strip()

    report = await git_queue.detect_conflicts("t1")
    assert report.has_conflicts is True
    assert report.conflict_files == ["file.txt"]
    assert report.head_sha == head_before
    assert git(workspace, "rev-parse", "HEAD").strip() == head_before
    assert git(workspace, "status", "--porcelain") == ""
    assert (await git_queue.status())["blocked_count"] == 1


@pytest.mark.slow
@requires_git
@requires_merge_tree
@pytest.mark.asyncio
async def test_detect_conflicts_clean(repos, git_queue):
    upstream, workspace = repos
    await git_queue.enqueue("t1", 42)
    _commit(workspace, "feature.txt", "feature\n", "feature work")
    _commit(upstream, "other.txt", "other\n", "main work")
    git(upstream, "push", "origin", "main")

    report = await git_queue.detect_conflicts("t1")
    assert report.has_conflicts is False
    assert report.conflict_files == []
    entry = (await git_queue.status())["entries"][0]
    assert entry["conflict_detected"] is False
    assert entry["status"] == "waiting"
