"""Composition root: builds every component from one :class:`Config`.

The CLI and the rq job both go through :class:`Controller`, so the wiring
between registry, gateway, agent client and orchestrator lives in one place.
"""

from __future__ import annotations

import functools
import logging
from typing import Any

from agentctl import git_ops, queue
from agentctl.audit import CommandAuditLogger
from agentctl.checkpoints import CheckpointManager
from agentctl.client import AppServerClient
from agentctl.collaborators import (
    AgentFixLoop,
    AgentReviewer,
    CommandVerifier,
    GitChangeDriver,
    PassthroughEnricher,
    VerifyQualityScorer,
)
from agentctl.config import Config
from agentctl.errors import DuplicateTaskError
from agentctl.gateway import CommandExecutionGateway
from agentctl.maintenance import MaintenanceJobs
from agentctl.merge_queue import MergeQueueManager
from agentctl.orchestrator import AutonomousOrchestrator, RunParams
from agentctl.paths import (
    AUDIT_FILE,
    CHECKPOINTS_FILE,
    MERGE_QUEUE_FILE,
    PLANS_FILE,
    POLICIES_FILE,
    RUNS_FILE,
    SCHEDULER_FILE,
    TASKS_FILE,
)
from agentctl.plans import ExecutionPlanManager
from agentctl.scheduler import JobScheduler
from agentctl.tasks import TaskRecord, TaskRegistry, new_task_record
from agentctl.turns import TurnRunner
from agentctl.workspace import WorkspaceManager, validate_task_id

log = logging.getLogger(__name__)

RUN_OPTION_KEYS = (
    "max_phase_fixes",
    "quality_threshold",
    "auto_commit",
    "auto_pr",
    "auto_review",
    "review_rounds",
)


def run_options_to_params(objective: str, config: Config, options: dict[str, Any] | None = None) -> RunParams:
    """Orchestrator defaults from config, overridden by explicit *options* (None values ignored)."""
    defaults = config.orchestrator
    values: dict[str, Any] = {key: getattr(defaults, key) for key in RUN_OPTION_KEYS}
    for key, value in (options or {}).items():
        if key not in RUN_OPTION_KEYS:
            raise ValueError(f"Unknown run option: {key}")
        if value is not None:
            values[key] = value
    return RunParams(objective=objective, **values)


class Controller:
    def __init__(self, config: Config, *, client: AppServerClient | None = None) -> None:
        self.config = config
        state = config.state_dir

        self.tasks = TaskRegistry(state / TASKS_FILE)
        self.plans = ExecutionPlanManager(state / PLANS_FILE)
        self.audit = CommandAuditLogger(state / AUDIT_FILE, config.gateway.max_audit_entries)
        self.checkpoints = CheckpointManager(state / CHECKPOINTS_FILE)
        self.workspaces = WorkspaceManager(
            config.workspace.root, config.workspace.repo_url, config.workspace.remote
        )
        self.gateway = CommandExecutionGateway(
            config.gateway,
            self.audit,
            self.workspaces.workspace_path,
            policies_path=state / POLICIES_FILE,
        )
        self.merge_queue = MergeQueueManager(
            state / MERGE_QUEUE_FILE,
            self.gateway,
            remote=config.workspace.remote,
            base_branch=config.workspace.base_branch,
        )

        agent = config.agent
        self.client = client or AppServerClient(
            agent.command,
            agent.args,
            env=agent.env or None,
            request_timeout=agent.request_timeout_s,
            stop_timeout=agent.stop_timeout_s,
            auto_approve=agent.auto_approve,
        )
        self.turns = TurnRunner(self.client, turn_timeout=agent.turn_timeout_s, model=agent.model)

        self.verifier = CommandVerifier(self.gateway, config.orchestrator.verify_command)
        self.fix_loop = AgentFixLoop(self.tasks, self.turns, self.verifier)
        self.scorer = VerifyQualityScorer(self.verifier)
        self.changes = GitChangeDriver(
            self.gateway,
            remote=config.workspace.remote,
            base_branch=config.workspace.base_branch,
        )
        self.reviewer = AgentReviewer(self.tasks, self.turns, self.verifier)
        self.enricher = PassthroughEnricher()

        self.maintenance = MaintenanceJobs(
            self.tasks,
            self.workspaces,
            self.gateway,
            self.scorer,
            stale_days=config.workspace.stale_days,
            commands=config.scheduler.commands,
        )
        self.scheduler = JobScheduler(state / SCHEDULER_FILE, self.maintenance.run)

        self.orchestrator = AutonomousOrchestrator(
            state / RUNS_FILE,
            tasks=self.tasks,
            plans=self.plans,
            turns=self.turns,
            create_task=self.create_task,
            verifier=self.verifier,
            fix_loop=self.fix_loop,
            scorer=self.scorer,
            changes=self.changes,
            reviewer=self.reviewer,
            enricher=self.enricher,
            checkpoints=self.checkpoints,
            publish=self._publish,
        )

    def _publish(self, event_type: str, entity_id: str, status: str, extra: dict) -> None:
        queue.publish_event(event_type, entity_id, status, extra=extra, url=self.config.redis_url)

    async def create_task(self, task_id: str) -> TaskRecord:
        """Provision workspace, branch and agent thread, then register the task."""
        task_id = validate_task_id(task_id)
        if await self.tasks.get_task(task_id) is not None:
            raise DuplicateTaskError(f"Task already exists: {task_id}")
        workspace_path = await self.workspaces.create_workspace(task_id)
        branch = git_ops.branch_name_for(task_id)
        await git_ops.create_branch(functools.partial(self.gateway.execute, task_id), branch)
        thread_id = await self.turns.start_thread(workspace_path)
        record = await self.tasks.create_task(
            new_task_record(task_id, workspace_path, branch, thread_id)
        )
        log.info("Provisioned task %s (thread %s)", task_id, thread_id)
        return record

    async def start_run(self, objective: str, options: dict[str, Any] | None = None):
        return await self.orchestrator.start_run(
            run_options_to_params(objective, self.config, options)
        )

    async def start_scheduler(self) -> dict[str, Any]:
        """Apply configured intervals, then arm the job timers."""
        for name, interval_ms in self.config.scheduler.intervals.items():
            await self.scheduler.set_job_interval(name, interval_ms)
        return await self.scheduler.start()

    async def close(self) -> None:
        # Only a scheduler armed in this process is stopped; one-shot CLI
        # commands must not flip the persisted running flag.
        if self.scheduler.armed_jobs:
            await self.scheduler.stop()
        await self.client.stop()
