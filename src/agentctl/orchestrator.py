"""Autonomous orchestrator: objective in, phased agent work out.

Given an objective the orchestrator

1. creates a task (workspace + branch + thread) and a four-phase plan,
2. per phase sends one turn, verifies, and fix-loops failures,
3. scores quality, commits, opens a PR and runs a review loop.

Runs are fire-and-forget.  :meth:`AutonomousOrchestrator.start_run`
returns as soon as the run record is persisted; progress is only visible
by polling :meth:`get_run`.  Cancellation is a flag checked between
phases, never an interrupt of work in progress.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypedDict

from agentctl.checkpoints import CheckpointManager
from agentctl.collaborators import (
    ChangeDriver,
    FixLoopRunner,
    PromptEnricher,
    QualityScorer,
    Reviewer,
    Verifier,
)
from agentctl.plans import ExecutionPlanManager, PlanPhase
from agentctl.store import JsonDocumentStore, utcnow
from agentctl.tasks import TaskRecord, TaskRegistry
from agentctl.turns import TurnRunner

log = logging.getLogger(__name__)

RUN_STATUSES = (
    "planning",
    "executing",
    "validating",
    "committing",
    "reviewing",
    "completed",
    "failed",
    "cancelled",
)
RUN_TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
QUALITY_FIX_ITERATIONS = 2
COMMIT_SUBJECT_MAX = 60
PR_TITLE_MAX = 72

TaskFactory = Callable[[str], Awaitable[TaskRecord]]
EventPublisher = Callable[[str, str, str, dict], None]


@dataclass
class RunParams:
    objective: str
    max_phase_fixes: int = 3
    quality_threshold: float = 0.0
    auto_commit: bool = True
    auto_pr: bool = False
    auto_review: bool = False
    review_rounds: int = 2

    def to_dict(self) -> dict:
        return asdict(self)


class PhaseResult(TypedDict):
    phase_index: int
    phase_name: str
    status: str
    turn_id: str | None
    verify_passed: bool
    fix_iterations: int
    duration_ms: int
    error: str | None


class RunRecord(TypedDict):
    run_id: str
    task_id: str
    objective: str
    status: str
    params: dict[str, Any]
    phases: list[PhaseResult]
    started_at: str
    updated_at: str
    finished_at: str | None
    quality_score: float | None
    commit_hash: str | None
    pr_url: str | None
    review_passed: bool | None
    error: str | None


class _RunCancelled(Exception):
    pass


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


def commit_message(objective: str) -> str:
    return f"feat: {_truncate(objective, COMMIT_SUBJECT_MAX)}"


def pr_title(objective: str) -> str:
    return f"feat: {_truncate(objective, PR_TITLE_MAX)}"


def pr_body(record: RunRecord) -> str:
    lines = [
        f"## Autonomous run {record['run_id']}",
        "",
        f"**Objective:** {record['objective']}",
        "",
        "### Phase results",
        "",
    ]
    for phase in record["phases"]:
        mark = "PASS" if phase["status"] == "completed" else "FAIL"
        lines.append(
            f"- [{mark}] **{phase['phase_name']}**: {phase['status']} "
            f"({phase['fix_iterations']} fix iterations, {round(phase['duration_ms'] / 1000)}s)"
        )
        if phase["error"]:
            lines.append(f"  > {phase['error']}")
    if record["quality_score"] is not None:
        lines += ["", f"**Quality score:** {record['quality_score']:.2f}"]
    return "\n".join(lines)


def build_phase_prompt(
    base_prompt: str,
    phase: PlanPhase,
    index: int,
    total: int,
    previous: list[PhaseResult],
) -> str:
    sections = [
        base_prompt,
        "",
        f"--- AUTONOMOUS PHASE {index + 1}/{total}: {phase['name']} ---",
        "",
        f"Phase goal: {phase['description']}",
        "",
    ]
    if previous:
        sections.append("Previous phase results:")
        for prev in previous:
            mark = "[OK]" if prev["status"] == "completed" else "[FAIL]"
            suffix = f": {prev['error']}" if prev["error"] else ""
            sections.append(
                f"  {mark} Phase {prev['phase_index'] + 1} ({prev['phase_name']}): "
                f"{prev['status']}{suffix}"
            )
        sections.append("")
    sections += [
        "Phase instructions:",
        f'1. Focus only on the "{phase["name"]}" phase described above.',
        "2. Build on any work completed in previous phases.",
        "3. Make minimal, correct changes.",
        "4. Ensure all changes pass verification.",
        "5. Follow existing code conventions and architecture.",
    ]
    return "\n".join(sections)


def _no_publish(event_type: str, entity_id: str, status: str, extra: dict) -> None:
    pass


class AutonomousOrchestrator:
    def __init__(
        self,
        path: Path,
        *,
        tasks: TaskRegistry,
        plans: ExecutionPlanManager,
        turns: TurnRunner,
        create_task: TaskFactory,
        verifier: Verifier,
        fix_loop: FixLoopRunner,
        scorer: QualityScorer,
        changes: ChangeDriver,
        reviewer: Reviewer,
        enricher: PromptEnricher,
        checkpoints: CheckpointManager,
        publish: EventPublisher = _no_publish,
    ) -> None:
        self._store = JsonDocumentStore(path, "runs")
        self.tasks = tasks
        self.plans = plans
        self.turns = turns
        self.create_task = create_task
        self.verifier = verifier
        self.fix_loop = fix_loop
        self.scorer = scorer
        self.changes = changes
        self.reviewer = reviewer
        self.enricher = enricher
        self.checkpoints = checkpoints
        self.publish = publish
        self._background: dict[str, asyncio.Task[None]] = {}

    # -- Public API --

    async def start_run(self, params: RunParams) -> RunRecord:
        """Persist a new run record and launch it in the background."""
        if not params.objective.strip():
            raise ValueError("Objective must not be empty")
        if params.max_phase_fixes < 0:
            raise ValueError("max_phase_fixes must be >= 0")
        run_id = f"run_{secrets.token_hex(8)}"
        now = utcnow()
        record = RunRecord(
            run_id=run_id,
            task_id=f"auto-{run_id}",
            objective=params.objective.strip(),
            status="planning",
            params=params.to_dict(),
            phases=[],
            started_at=now,
            updated_at=now,
            finished_at=None,
            quality_score=None,
            commit_hash=None,
            pr_url=None,
            review_passed=None,
            error=None,
        )
        runs = await self._store.aload()
        runs[run_id] = record
        await self._store.asave(runs)

        task = asyncio.create_task(self._execute(record, params), name=f"run:{run_id}")
        self._background[run_id] = task
        task.add_done_callback(lambda _t: self._background.pop(run_id, None))
        log.info("Started run %s: %s", run_id, record["objective"])
        return record

    async def get_run(self, run_id: str) -> RunRecord | None:
        runs = await self._store.aload()
        return runs.get(run_id)

    async def list_runs(self, limit: int = 20) -> list[RunRecord]:
        runs = await self._store.aload()
        ordered = sorted(runs.values(), key=lambda run: run["started_at"], reverse=True)
        return ordered[:limit]

    async def cancel_run(self, run_id: str) -> bool:
        runs = await self._store.aload()
        run = runs.get(run_id)
        if run is None or run["status"] in RUN_TERMINAL_STATUSES:
            return False
        now = utcnow()
        run["status"] = "cancelled"
        run["updated_at"] = now
        run["finished_at"] = now
        await self._store.asave(runs)
        self.publish("run:status", run_id, "cancelled", {"task_id": run["task_id"]})
        log.info("Cancelled run %s", run_id)
        return True

    async def wait_for_run(self, run_id: str) -> RunRecord | None:
        """Await the background execution of *run_id* (if still running here)."""
        task = self._background.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_run(run_id)

    # -- Persistence --

    async def _save(self, record: RunRecord) -> None:
        """Persist *record*; a concurrent cancellation always wins."""
        runs = await self._store.aload()
        stored = runs.get(record["run_id"])
        if stored is not None and stored["status"] == "cancelled":
            record["status"] = "cancelled"
            record["finished_at"] = stored["finished_at"]
        record["updated_at"] = utcnow()
        runs[record["run_id"]] = record
        await self._store.asave(runs)

    async def _set_status(self, record: RunRecord, status: str) -> None:
        await self._check_cancelled(record)
        record["status"] = status
        await self._save(record)
        self.publish("run:status", record["run_id"], status, {"task_id": record["task_id"]})

    async def _check_cancelled(self, record: RunRecord) -> None:
        stored = await self.get_run(record["run_id"])
        if stored is None or stored["status"] == "cancelled":
            raise _RunCancelled

    # -- Execution --

    async def _execute(self, record: RunRecord, params: RunParams) -> None:
        task_id = record["task_id"]
        try:
            await self._set_status(record, "planning")
            task = await self.create_task(task_id)
            plan = await self.plans.create_plan(task_id, params.objective)

            await self._set_status(record, "executing")
            for index, phase in enumerate(plan["phases"]):
                await self._check_cancelled(record)
                result = await self._run_phase(record, params, task, plan["phases"], index)
                record["phases"].append(result)
                await self._save(record)

            if not any(p["status"] == "completed" for p in record["phases"]):
                raise RuntimeError("All phases failed: no changes to commit")

            await self._set_status(record, "validating")
            await self._validate(record, params)

            if params.auto_commit:
                await self._set_status(record, "committing")
                record["commit_hash"] = await self.changes.commit(
                    task_id, commit_message(params.objective)
                )

            if params.auto_pr and record["commit_hash"]:
                await self._set_status(record, "reviewing")
                await self._open_pr_and_review(record, params)

            record["status"] = "completed"
            record["finished_at"] = utcnow()
            await self._finish_task(task_id, opened_pr=bool(record["pr_url"]))
        except _RunCancelled:
            log.info("Run %s cancelled; stopping at phase boundary", record["run_id"])
            record["status"] = "cancelled"
        except Exception as exc:
            log.warning("Run %s failed: %s", record["run_id"], exc)
            record["status"] = "failed"
            record["error"] = str(exc)
            record["finished_at"] = utcnow()
            try:
                await self.tasks.update_task_status(task_id, "failed")
            except Exception:
                log.debug("Could not mark task %s failed", task_id, exc_info=True)

        try:
            await self._save(record)
        except Exception:
            log.exception("Failed to persist final state of run %s", record["run_id"])
            return
        self.publish("run:status", record["run_id"], record["status"], {"task_id": task_id})

    async def _run_phase(
        self,
        record: RunRecord,
        params: RunParams,
        task: TaskRecord,
        phases: list[PlanPhase],
        index: int,
    ) -> PhaseResult:
        task_id = record["task_id"]
        phase = phases[index]
        started = time.monotonic()
        result = PhaseResult(
            phase_index=index,
            phase_name=phase["name"],
            status="completed",
            turn_id=None,
            verify_passed=False,
            fix_iterations=0,
            duration_ms=0,
            error=None,
        )
        try:
            await self.plans.update_phase_status(task_id, index, "in_progress")
            await self.tasks.update_task_status(task_id, "mutating")
            base_prompt = await self.enricher.enrich(params.objective)
            prompt = build_phase_prompt(base_prompt, phase, index, len(phases), record["phases"])
            turn = await self.turns.run_turn(task["thread_id"], prompt)
            result["turn_id"] = turn.turn_id

            await self.tasks.update_task_status(task_id, "verifying")
            verify = await self.verifier.verify(task_id)
            if verify.success:
                result["verify_passed"] = True
            else:
                fix = await self.fix_loop.run(task_id, params.max_phase_fixes, verify)
                result["fix_iterations"] = fix.iterations
                result["verify_passed"] = fix.success
                if not fix.success:
                    result["status"] = "failed"
                    result["error"] = (
                        f"Verification did not pass after {fix.iterations} fix iterations"
                    )

            if result["status"] == "completed":
                await self.tasks.update_task_status(task_id, "ready")
                await self.plans.update_phase_status(task_id, index, "completed")
                await self._checkpoint(record, index, phase["name"])
            else:
                await self.plans.update_phase_status(task_id, index, "failed")
                await self.tasks.update_task_status(task_id, "failed")
        except Exception as exc:
            log.warning("Phase %d (%s) of %s failed: %s", index, phase["name"], task_id, exc)
            result["status"] = "failed"
            result["error"] = str(exc)
            for step in (
                self.plans.update_phase_status(task_id, index, "failed"),
                self.tasks.update_task_status(task_id, "failed"),
            ):
                try:
                    await step
                except Exception:
                    log.debug("Could not record failure of phase %d", index, exc_info=True)

        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        return result

    async def _checkpoint(self, record: RunRecord, index: int, name: str) -> None:
        try:
            await self.checkpoints.create(
                record["task_id"],
                f"Phase {index}: {name} completed",
                {"run_id": record["run_id"], "phase_index": index},
            )
        except Exception as exc:
            log.warning("Checkpoint after phase %d of %s failed: %s", index, record["task_id"], exc)

    async def _validate(self, record: RunRecord, params: RunParams) -> None:
        task_id = record["task_id"]
        try:
            record["quality_score"] = await self.scorer.score(task_id)
        except Exception as exc:
            log.warning("Quality scoring failed for %s: %s", task_id, exc)
        score = record["quality_score"]
        if score is None or params.quality_threshold <= 0 or score >= params.quality_threshold:
            return
        try:
            await self.fix_loop.run(task_id, QUALITY_FIX_ITERATIONS)
            record["quality_score"] = await self.scorer.score(task_id)
        except Exception as exc:
            log.warning("Quality fix round failed for %s: %s", task_id, exc)

    async def _open_pr_and_review(self, record: RunRecord, params: RunParams) -> None:
        task_id = record["task_id"]
        try:
            record["pr_url"] = await self.changes.open_pull_request(
                task_id, pr_title(params.objective), pr_body(record)
            )
        except Exception as exc:
            log.warning("PR creation failed for %s: %s", task_id, exc)
            record["error"] = f"PR creation failed: {exc}"
        if params.auto_review and record["pr_url"]:
            try:
                record["review_passed"] = await self.reviewer.review(task_id, params.review_rounds)
            except Exception as exc:
                log.warning("Review loop failed for %s: %s", task_id, exc)

    async def _finish_task(self, task_id: str, *, opened_pr: bool) -> None:
        try:
            await self.tasks.update_task_status(task_id, "ready")
            if opened_pr:
                await self.tasks.update_task_status(task_id, "pr_opened")
        except Exception as exc:
            log.warning("Could not finalize task %s: %s", task_id, exc)
