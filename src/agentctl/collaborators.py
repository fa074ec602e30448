"""Collaborator contracts the orchestrator depends on, plus default implementations.

Each collaborator is opaque to the orchestrator: it may fail, and the
orchestrator decides whether that failure is fatal (verify, commit) or
best-effort (quality score, PR creation, review).
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from agentctl import git_ops
from agentctl.errors import TaskNotFoundError
from agentctl.gateway import CommandExecutionGateway
from agentctl.tasks import TaskRegistry
from agentctl.turns import TurnRunner

log = logging.getLogger(__name__)

MAX_FAILURE_LINES = 20


@dataclass
class VerifyResult:
    success: bool
    failures: list[str] = field(default_factory=list)
    exit_code: int | None = None


@dataclass
class FixLoopResult:
    success: bool
    iterations: int
    last_verify: VerifyResult | None = None


@runtime_checkable
class Verifier(Protocol):
    async def verify(self, task_id: str) -> VerifyResult: ...


@runtime_checkable
class FixLoopRunner(Protocol):
    async def run(
        self, task_id: str, max_iterations: int, last_verify: VerifyResult | None = None
    ) -> FixLoopResult: ...


@runtime_checkable
class QualityScorer(Protocol):
    async def score(self, task_id: str) -> float: ...


@runtime_checkable
class ChangeDriver(Protocol):
    async def commit(self, task_id: str, message: str) -> str | None: ...

    async def open_pull_request(self, task_id: str, title: str, body: str) -> str: ...


@runtime_checkable
class Reviewer(Protocol):
    async def review(self, task_id: str, rounds: int) -> bool: ...


@runtime_checkable
class PromptEnricher(Protocol):
    async def enrich(self, objective: str) -> str: ...


def summarize_failures(stdout: str, stderr: str, limit: int = MAX_FAILURE_LINES) -> list[str]:
    """Last *limit* non-blank output lines, stderr first."""
    lines = [line.rstrip() for line in (stderr + "\n" + stdout).splitlines() if line.strip()]
    return lines[-limit:]


class CommandVerifier:
    """Runs the configured verify command in the task workspace via the gateway."""

    def __init__(self, gateway: CommandExecutionGateway, command: list[str]) -> None:
        self.gateway = gateway
        self.command = list(command)

    async def verify(self, task_id: str) -> VerifyResult:
        result = await self.gateway.execute(task_id, self.command, allow_non_zero_exit=True)
        if result.ok:
            return VerifyResult(success=True, exit_code=result.exit_code)
        failures = summarize_failures(result.stdout, result.stderr)
        return VerifyResult(
            success=False,
            failures=failures or [f"{' '.join(self.command)} exited {result.exit_code}"],
            exit_code=result.exit_code,
        )


def build_fix_prompt(iteration: int, max_iterations: int, verify: VerifyResult | None) -> str:
    lines = [
        f"Verification is failing (fix attempt {iteration}/{max_iterations}).",
        "Make the smallest change that makes verification pass.",
    ]
    if verify and verify.failures:
        lines += ["", "Failures:", *(f"  {failure}" for failure in verify.failures)]
    return "\n".join(lines)


class AgentFixLoop:
    """Change-then-reverify until green or the iteration budget is spent.

    Each iteration moves the task ``fixing`` -> ``verifying``.  The returned
    ``iterations`` counts fix attempts made, so two failing verifies followed
    by a pass reports 2.
    """

    def __init__(self, tasks: TaskRegistry, turns: TurnRunner, verifier: Verifier) -> None:
        self.tasks = tasks
        self.turns = turns
        self.verifier = verifier

    async def _enter_verifying(self, task_id: str) -> None:
        task = await self.tasks.get_task(task_id)
        if task and task["status"] not in ("verifying", "fixing"):
            await self.tasks.update_task_status(task_id, "mutating")
            await self.tasks.update_task_status(task_id, "verifying")

    async def run(
        self, task_id: str, max_iterations: int, last_verify: VerifyResult | None = None
    ) -> FixLoopResult:
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got: {max_iterations}")
        task = await self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        await self._enter_verifying(task_id)

        verify = last_verify
        for iteration in range(1, max_iterations + 1):
            await self.tasks.update_task_status(task_id, "fixing")
            await self.turns.run_turn(
                task["thread_id"], build_fix_prompt(iteration, max_iterations, verify)
            )
            await self.tasks.update_task_status(task_id, "verifying")
            verify = await self.verifier.verify(task_id)
            if verify.success:
                return FixLoopResult(success=True, iterations=iteration, last_verify=verify)
            log.info("Fix attempt %d/%d for %s still failing", iteration, max_iterations, task_id)
        return FixLoopResult(success=False, iterations=max_iterations, last_verify=verify)


class VerifyQualityScorer:
    """1.0 when verification passes, otherwise 0.0."""

    def __init__(self, verifier: Verifier) -> None:
        self.verifier = verifier

    async def score(self, task_id: str) -> float:
        result = await self.verifier.verify(task_id)
        return 1.0 if result.success else 0.0


class GitChangeDriver:
    """Commits through the gateway and opens pull requests with ``gh``."""

    def __init__(
        self,
        gateway: CommandExecutionGateway,
        *,
        remote: str = "origin",
        base_branch: str = "main",
    ) -> None:
        self.gateway = gateway
        self.remote = remote
        self.base_branch = base_branch

    def _runner(self, task_id: str) -> git_ops.GitRunner:
        return functools.partial(self.gateway.execute, task_id)

    async def commit(self, task_id: str, message: str) -> str | None:
        """Commit all changes. Returns the short hash, or None if nothing changed."""
        run = self._runner(task_id)
        if not await git_ops.commit_all(run, message):
            return None
        try:
            return await git_ops.short_head(run) or "committed"
        except Exception as exc:
            log.warning("Could not read commit hash for %s: %s", task_id, exc)
            return "committed"

    async def open_pull_request(self, task_id: str, title: str, body: str) -> str:
        title = title.strip()
        if not title:
            raise ValueError("Pull request title must not be empty")
        run = self._runner(task_id)
        branch = await git_ops.push_branch(run, self.remote, self.base_branch)
        result = await self.gateway.execute(
            task_id,
            [
                "gh", "pr", "create",
                "--title", title,
                "--body", body,
                "--base", self.base_branch,
                "--head", branch,
            ],
        )
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise RuntimeError("gh pr create returned no pull request URL")
        return lines[-1].strip()


REVIEW_PROMPT = (
    "Review the changes on this branch against the objective. "
    "Fix any bugs, missing tests or convention violations you find."
)


class AgentReviewer:
    """Bounded review loop: a review turn followed by verification, per round."""

    def __init__(self, tasks: TaskRegistry, turns: TurnRunner, verifier: Verifier) -> None:
        self.tasks = tasks
        self.turns = turns
        self.verifier = verifier

    async def review(self, task_id: str, rounds: int) -> bool:
        task = await self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        for round_no in range(1, rounds + 1):
            await self.turns.run_turn(task["thread_id"], f"{REVIEW_PROMPT}\n\nRound {round_no}/{rounds}.")
            if (await self.verifier.verify(task_id)).success:
                return True
        return False


class PassthroughEnricher:
    async def enrich(self, objective: str) -> str:
        return objective.strip()
