"""Tests for per-task workspaces."""

from __future__ import annotations

import pytest
from conftest import git, requires_git

from agentctl.errors import ConfigError
from agentctl.workspace import WorkspaceManager, validate_task_id


@pytest.mark.parametrize("task_id", ["t1", "auto-run_ab12", "A" * 64])
def test_valid_task_ids(task_id):
    assert validate_task_id(f"  {task_id} ") == task_id


@pytest.mark.parametrize("task_id", ["x", "-lead", "../escape", "a/b", "a" * 65, ""])
def test_invalid_task_ids(task_id):
    with pytest.raises(ValueError):
        validate_task_id(task_id)


def test_workspace_path_is_under_root(tmp_path):
    manager = WorkspaceManager(tmp_path / "ws")
    assert manager.workspace_path("t1") == str((tmp_path / "ws" / "t1").resolve())


def test_remove_refuses_outside_root(tmp_path):
    manager = WorkspaceManager(tmp_path / "ws")
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    with pytest.raises(ValueError):
        manager.remove_workspace(outside)
    assert outside.exists()


@pytest.mark.asyncio
async def test_create_without_repo_url(tmp_path):
    with pytest.raises(ConfigError):
        await WorkspaceManager(tmp_path / "ws").create_workspace("t1")


@pytest.mark.asyncio
async def test_create_rejects_non_git_directory(tmp_path):
    manager = WorkspaceManager(tmp_path / "ws", repo_url="unused")
    path = tmp_path / "ws" / "t1"
    path.mkdir(parents=True)
    (path / "stray.txt").write_text("x")
    with pytest.raises(RuntimeError, match="not a git repository"):
        await manager.create_workspace("t1")


@pytest.mark.slow
@requires_git
@pytest.mark.asyncio
async def test_create_clones_and_reuses(tmp_path, git_identity_env):
    source = tmp_path / "source"
    source.mkdir()
    git(source, "init", "--initial-branch=main")
    (source / "README.md").write_text("hello\n")
    git(source, "add", "README.md")
    git(source, "commit", "-m", "init")

    manager = WorkspaceManager(tmp_path / "ws", repo_url=str(source))
    path = await manager.create_workspace("t1")
    assert (tmp_path / "ws" / "t1" / "README.md").exists()
    assert await manager.create_workspace("t1") == path
    assert [p.name for p in manager.list_workspaces()] == ["t1"]

    manager.remove_workspace(tmp_path / "ws" / "t1")
    assert manager.list_workspaces() == []
