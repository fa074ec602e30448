"""rq job functions. Each builds its own Controller and event loop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from agentctl.config import load_config
from agentctl.controller import Controller
from agentctl.queue import publish_event

log = logging.getLogger(__name__)


async def _run_to_completion(controller: Controller, objective: str, options: dict | None) -> str:
    try:
        record = await controller.start_run(objective, options)
        final = await controller.orchestrator.wait_for_run(record["run_id"])
    finally:
        await controller.close()
    if final is None:
        return f"{record['run_id']}:missing"
    log.info("Run %s finished: %s", final["run_id"], final["status"])
    return f"{final['run_id']}:{final['status']}"


def run_autonomous(objective: str, options: dict | None = None, config_path: str | None = None) -> str:
    """Execute an autonomous run start to finish inside an rq worker.

    Returns ``"<run_id>:<status>"``.
    """
    config = load_config(Path(config_path) if config_path else None)
    controller = Controller(config)
    return asyncio.run(_run_to_completion(controller, objective, options))


def on_run_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a run job itself crashes (config errors, worker death)."""
    objective = job.args[0] if job.args else ""
    log.error("Autonomous run job %s failed: %s", job.id, exc_value)
    publish_event(
        "run:job",
        job.id,
        "failed",
        source="worker",
        extra={"objective": objective, "error": str(exc_value)},
    )
