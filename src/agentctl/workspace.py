"""Per-task isolated workspaces: one git clone per task id under a root."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path

from agentctl.errors import ConfigError
from agentctl.git_ops import clone_repo

log = logging.getLogger(__name__)

_TASK_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{1,63}$")


def validate_task_id(task_id: str) -> str:
    """Return the trimmed id or raise ValueError.

    Ids are 2-64 chars of ``[a-zA-Z0-9_-]`` starting alphanumeric, so they
    are always safe as a single path component.
    """
    trimmed = task_id.strip()
    if not _TASK_ID_RE.match(trimmed):
        raise ValueError(
            "Invalid task id. Use 2-64 chars from [a-zA-Z0-9_-], "
            "starting with an alphanumeric character."
        )
    return trimmed


class WorkspaceManager:
    def __init__(self, root: Path, repo_url: str | None = None, remote: str = "origin") -> None:
        self.root = Path(root).expanduser().resolve()
        self.repo_url = repo_url
        self.remote = remote

    def workspace_path(self, task_id: str) -> str:
        path = (self.root / validate_task_id(task_id)).resolve()
        if path.parent != self.root:
            raise ValueError(f"Resolved workspace path escaped root: {path}")
        return str(path)

    async def create_workspace(self, task_id: str) -> str:
        """Clone the repository for *task_id*, reusing an existing clone.

        Raises RuntimeError if the path exists but is not a git checkout.
        """
        path = Path(self.workspace_path(task_id))
        self.root.mkdir(parents=True, exist_ok=True)
        if path.exists():
            if not path.is_dir():
                raise RuntimeError(f"Expected directory at path: {path}")
            if (path / ".git").exists():
                return str(path)
            if any(path.iterdir()):
                raise RuntimeError(
                    f"Workspace path already exists and is not a git repository: {path}"
                )
        if not self.repo_url:
            raise ConfigError("workspace.repo_url is not configured")
        log.info("Cloning %s into %s", self.repo_url, path)
        await asyncio.to_thread(clone_repo, self.repo_url, str(path), self.remote)
        return str(path)

    def list_workspaces(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_dir())

    def remove_workspace(self, path: Path) -> None:
        path = Path(path).resolve()
        if path.parent != self.root:
            raise ValueError(f"Refusing to remove path outside workspace root: {path}")
        shutil.rmtree(path)
