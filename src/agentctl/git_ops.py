"""Git operations shared by the controller, merge queue and workers.

Workspace-scoped helpers take a ``run`` callable (normally the command
gateway bound to a task id) so every git invocation is policy-checked and
audited.  Functions raise RuntimeError on failure (not ClickException), so
they can be used from both cli.py and jobs.py.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

log = logging.getLogger(__name__)

# ``run(argv, allow_non_zero_exit=False)`` -> CommandResult
GitRunner = Callable[..., Awaitable[Any]]

_MERGE_CONFLICT_RE = re.compile(r"^CONFLICT \([^)]*\): Merge conflict in (.+)$")


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "task"


def branch_name_for(task_id: str, now: datetime | None = None) -> str:
    """``ai/<UTC yyyymmddHHMMSS>-<slug>`` for a new task branch."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
    return f"ai/{stamp}-{slugify(task_id)}"


def clone_repo(repo_url: str, dest: str, remote: str = "origin") -> None:
    """Shallow-clone *repo_url* into *dest*.

    Raises RuntimeError on failure.
    """
    try:
        subprocess.run(
            ["git", "clone", "--origin", remote, "--depth", "1", "--no-tags", repo_url, dest],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to clone {repo_url}: {e.stderr.strip()}") from None


def parse_merge_tree_conflicts(output: str) -> list[str]:
    """Extract conflicting paths from ``git merge-tree --write-tree --name-only``.

    The first line is the resulting tree id, followed by one conflicted path
    per line, a blank line, then informational ``CONFLICT ...`` messages.
    """
    lines = output.splitlines()
    files: list[str] = []
    in_paths = True
    for line in lines[1:]:
        stripped = line.strip()
        if in_paths:
            if not stripped:
                in_paths = False
                continue
            if not stripped.startswith(("CONFLICT", "Auto-merging")):
                files.append(stripped)
                continue
            in_paths = False
        match = _MERGE_CONFLICT_RE.match(stripped)
        if match:
            files.append(match.group(1).strip())
    return list(dict.fromkeys(files))


async def create_branch(run: GitRunner, branch: str) -> str:
    await run(["git", "switch", "-c", branch])
    return branch


async def current_branch(run: GitRunner) -> str:
    """Name of the checked-out branch. Raises RuntimeError on detached HEAD."""
    result = await run(["git", "rev-parse", "--abbrev-ref", "HEAD"])
    branch = result.stdout.strip()
    if not branch or branch == "HEAD":
        raise RuntimeError("Cannot resolve branch: HEAD is detached")
    return branch


async def commit_all(run: GitRunner, message: str) -> bool:
    """Stage everything and commit. Returns False if there was nothing to commit."""
    message = message.strip()
    if not message:
        raise ValueError("Commit message must not be empty")
    await run(["git", "add", "-A"])
    status = await run(["git", "status", "--porcelain"], allow_non_zero_exit=True)
    if not status.stdout.strip():
        return False
    await run(["git", "commit", "-m", message])
    return True


async def short_head(run: GitRunner) -> str:
    result = await run(["git", "rev-parse", "--short", "HEAD"])
    return result.stdout.strip()


async def push_branch(run: GitRunner, remote: str = "origin", base_branch: str = "main") -> str:
    """Push the current branch with upstream tracking and return its name."""
    branch = await current_branch(run)
    if branch == base_branch:
        raise RuntimeError(
            f"Refusing to push {base_branch} directly. Create and switch to a feature branch first."
        )
    await run(["git", "push", "--set-upstream", remote, branch])
    return branch
