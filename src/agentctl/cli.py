from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from pathlib import Path
from typing import Any, TypeVar

import click

from agentctl import __version__
from agentctl.config import load_config
from agentctl.controller import Controller, run_options_to_params
from agentctl.errors import AgentctlError
from agentctl.scheduler import JOB_NAMES
from agentctl.tasks import VALID_TASK_STATUSES

log = logging.getLogger(__name__)

T = TypeVar("T")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class _JsonAwareGroup(click.Group):
    """Click group that reports errors as a JSON object on stdout.

    Unknown subcommands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "run": "Run 'agentctl run list' to see runs.",
        "task": "Run 'agentctl task list' to see tasks.",
        "plan": "Run 'agentctl task list' to see tasks with plans.",
        "policy": "Run 'agentctl shell policy list' to see task policies.",
        "merge entry": "Run 'agentctl merge status' to see queued tasks.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _run(fn: Callable[[Controller], Awaitable[T]]) -> T:
    """Build a Controller from the group's config, run *fn* on a fresh loop, close."""
    config_path = click.get_current_context().find_root().obj.get("config_path")

    async def _main() -> T:
        controller = Controller(load_config(config_path))
        try:
            return await fn(controller)
        finally:
            await controller.close()

    try:
        return asyncio.run(_main())
    except (AgentctlError, ValueError, IndexError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="AGENTCTL_CONFIG",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.config/agentctl/config.toml).",
)
@click.option(
    "--log-level",
    envvar="AGENTCTL_LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for stderr output.",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, log_level: str):
    """Orchestrate autonomous coding agents: tasks, runs, commands, merges.

    \b
    Quick start:
      agentctl run start "Add input validation"   Plan, execute, verify, commit
      agentctl run list                           Recent runs, newest first
      agentctl shell exec TASK -- git status      Run a gated command
      agentctl merge status                       Merge queue overview
      agentctl scheduler run                      Serve maintenance jobs

    All output is JSON on stdout; logs go to stderr.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# -- run --


@main.group()
def run():
    """Start, inspect and cancel autonomous runs."""


@run.command("start")
@click.argument("objective")
@click.option("--max-phase-fixes", type=click.IntRange(min=0), default=None)
@click.option("--quality-threshold", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--auto-commit/--no-auto-commit", default=None)
@click.option("--auto-pr/--no-auto-pr", default=None)
@click.option("--auto-review/--no-auto-review", default=None)
@click.option("--review-rounds", type=click.IntRange(min=1), default=None)
@click.option(
    "--wait",
    "mode",
    flag_value="wait",
    default="wait",
    help="Run in this process and print the final record (default).",
)
@click.option(
    "--enqueue",
    "mode",
    flag_value="enqueue",
    help="Hand the run to an rq worker and return immediately.",
)
def run_start(objective: str, mode: str, **options: Any):
    """Run OBJECTIVE through plan, phases, validation, commit and PR."""
    if mode == "enqueue":
        from agentctl.queue import enqueue_autonomous_run

        config_path = click.get_current_context().find_root().obj.get("config_path")
        try:
            config = load_config(config_path)
            run_options_to_params(objective, config, options)
            job = enqueue_autonomous_run(
                objective,
                options={k: v for k, v in options.items() if v is not None},
                config_path=str(config_path) if config_path else None,
                url=config.redis_url,
            )
        except (AgentctlError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc
        _emit({"ok": True, "job_id": job.id, "objective": objective})
        return

    async def _start(c: Controller):
        record = await c.start_run(objective, options)
        return await c.orchestrator.wait_for_run(record["run_id"])

    _emit(_run(_start))


@run.command("show")
@click.argument("run_id")
def run_show(run_id: str):
    """Show one run record."""
    record = _run(lambda c: c.orchestrator.get_run(run_id))
    if record is None:
        raise _not_found("run", run_id)
    _emit(record)


@run.command("list")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, show_default=True)
def run_list(limit: int):
    """List runs, newest first."""
    _emit(_run(lambda c: c.orchestrator.list_runs(limit)))


@run.command("cancel")
@click.argument("run_id")
def run_cancel(run_id: str):
    """Cancel a run; it stops at the next phase boundary."""
    cancelled = _run(lambda c: c.orchestrator.cancel_run(run_id))
    _emit({"ok": cancelled, "run_id": run_id})


# -- task --


@main.group()
def task():
    """Inspect tasks and their state machine."""


@task.command("create")
@click.argument("task_id")
def task_create(task_id: str):
    """Provision a workspace, branch and agent thread for TASK_ID."""
    _emit(_run(lambda c: c.create_task(task_id)))


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show one task."""
    record = _run(lambda c: c.tasks.get_task(task_id))
    if record is None:
        raise _not_found("task", task_id)
    _emit(record)


@task.command("list")
@click.option("--status", "-s", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
def task_list(status: str | None):
    """List tasks, optionally filtered by status."""
    _emit(_run(lambda c: c.tasks.list_tasks(status=status)))


@task.command("set-status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(sorted(VALID_TASK_STATUSES)))
def task_set_status(task_id: str, status: str):
    """Move TASK_ID to STATUS along a legal transition."""
    _emit(_run(lambda c: c.tasks.update_task_status(task_id, status)))


@task.command("checkpoints")
@click.argument("task_id")
@click.option("--latest", is_flag=True, help="Only the most recent checkpoint.")
def task_checkpoints(task_id: str, latest: bool):
    """List progress checkpoints recorded for TASK_ID."""
    if latest:
        _emit(_run(lambda c: c.checkpoints.latest(task_id)))
    else:
        _emit(_run(lambda c: c.checkpoints.list_checkpoints(task_id)))


# -- plan --


@main.group()
def plan():
    """Inspect execution plans."""


@plan.command("create")
@click.argument("task_id")
@click.argument("description")
def plan_create(task_id: str, description: str):
    """Create the four-phase plan for TASK_ID."""
    _emit(_run(lambda c: c.plans.create_plan(task_id, description)))


@plan.command("show")
@click.argument("task_id")
def plan_show(task_id: str):
    """Show the plan for TASK_ID."""
    record = _run(lambda c: c.plans.get_plan(task_id))
    if record is None:
        raise _not_found("plan", task_id)
    _emit(record)


@plan.command("validate")
@click.argument("task_id")
def plan_validate(task_id: str):
    """Check phase dependencies of the plan for TASK_ID."""
    result = _run(lambda c: c.plans.validate_plan(task_id))
    _emit(asdict(result))


# -- shell --


@main.group()
def shell():
    """Run gated commands and manage command policies."""


@shell.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("task_id")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
@click.option("--allow-non-zero-exit", is_flag=True, help="Report failures inline.")
def shell_exec(task_id: str, command: tuple[str, ...], timeout_ms: int | None, allow_non_zero_exit: bool):
    """Run COMMAND in TASK_ID's workspace through the gateway.

    \b
    Example:
      agentctl shell exec my-task -- git status --short
    """
    result = _run(
        lambda c: c.gateway.execute(
            task_id,
            list(command),
            timeout_ms=timeout_ms,
            allow_non_zero_exit=allow_non_zero_exit,
        )
    )
    _emit(result.to_dict())


@shell.group("policy")
def shell_policy():
    """Per-task command policies (overlay the global baseline)."""


@shell_policy.command("set")
@click.argument("task_id")
@click.option("--allow", "allowed_binaries", multiple=True, help="Extra allowed binary.")
@click.option("--deny", "denied_binaries", multiple=True, help="Binary denied for this task.")
@click.option("--deny-pattern", "denied_patterns", multiple=True, help="Regex denied for this task.")
@click.option("--max-concurrent", type=int, default=None)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
def shell_policy_set(
    task_id: str,
    allowed_binaries: tuple[str, ...],
    denied_binaries: tuple[str, ...],
    denied_patterns: tuple[str, ...],
    max_concurrent: int | None,
    timeout_ms: int | None,
):
    """Set the command policy for TASK_ID."""
    policy: dict[str, Any] = {"task_id": task_id}
    if allowed_binaries:
        policy["allowed_binaries"] = list(allowed_binaries)
    if denied_binaries:
        policy["denied_binaries"] = list(denied_binaries)
    if denied_patterns:
        policy["denied_patterns"] = list(denied_patterns)
    if max_concurrent is not None:
        policy["max_concurrent"] = max_concurrent
    if timeout_ms is not None:
        policy["timeout_ms"] = timeout_ms
    _emit(_run(lambda c: c.gateway.set_task_policy(policy)))


@shell_policy.command("show")
@click.argument("task_id")
def shell_policy_show(task_id: str):
    policy = _run(lambda c: c.gateway.get_task_policy(task_id))
    if policy is None:
        raise _not_found("policy", task_id)
    _emit(policy)


@shell_policy.command("remove")
@click.argument("task_id")
def shell_policy_remove(task_id: str):
    removed = _run(lambda c: c.gateway.remove_task_policy(task_id))
    if not removed:
        raise _not_found("policy", task_id)
    _emit({"ok": True, "task_id": task_id})


@shell_policy.command("list")
def shell_policy_list():
    _emit(_run(lambda c: c.gateway.list_task_policies()))


@shell.command("audit")
@click.option("--task", "task_id", default=None, help="Only entries for this task.")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=50, show_default=True)
def shell_audit(task_id: str | None, limit: int):
    """Recent audit entries, newest first."""
    _emit(_run(lambda c: c.audit.get_entries(task_id, limit)))


@shell.command("metrics")
@click.option("--task", "task_id", default=None, help="Only metrics for this task.")
def shell_metrics(task_id: str | None):
    """Aggregate command counts and durations."""
    metrics = _run(lambda c: c.audit.get_metrics(task_id))
    _emit(metrics.to_dict())


@shell.command("clear-audit")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
def shell_clear_audit(yes: bool):
    """Delete every audit entry."""
    if not yes and not click.confirm("Delete all audit entries?", err=True):
        raise click.Abort
    _run(lambda c: c.audit.clear())
    _emit({"ok": True})


# -- merge --


@main.group()
def merge():
    """Priority merge queue for opened pull requests."""


@merge.command("enqueue")
@click.argument("task_id")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.option("--priority", "-P", type=int, default=0, show_default=True)
def merge_enqueue(task_id: str, pr_number: int, priority: int):
    """Queue TASK_ID's pull request PR_NUMBER."""
    _emit(_run(lambda c: c.merge_queue.enqueue(task_id, pr_number, priority)))


@merge.command("dequeue")
def merge_dequeue():
    """Pop the highest-priority entry."""
    _emit(_run(lambda c: c.merge_queue.dequeue()))


@merge.command("status")
def merge_status():
    _emit(_run(lambda c: c.merge_queue.status()))


@merge.command("freshness")
@click.argument("task_id")
def merge_freshness(task_id: str):
    """How far TASK_ID's branch is behind the integration branch."""
    _emit(_run(lambda c: c.merge_queue.check_freshness(task_id)).to_dict())


@merge.command("rebase")
@click.argument("task_id")
def merge_rebase(task_id: str):
    """Rebase TASK_ID onto the integration branch (aborts on conflict)."""
    _emit(_run(lambda c: c.merge_queue.rebase_onto_main(task_id)).to_dict())


@merge.command("conflicts")
@click.argument("task_id")
def merge_conflicts(task_id: str):
    """Trial-merge TASK_ID against the integration branch without touching the tree."""
    _emit(_run(lambda c: c.merge_queue.detect_conflicts(task_id)).to_dict())


@merge.command("mark-merged")
@click.argument("task_id")
def merge_mark_merged(task_id: str):
    if not _run(lambda c: c.merge_queue.mark_merged(task_id)):
        raise _not_found("merge entry", task_id)
    _emit({"ok": True, "task_id": task_id})


@merge.command("remove")
@click.argument("task_id")
def merge_remove(task_id: str):
    if not _run(lambda c: c.merge_queue.remove(task_id)):
        raise _not_found("merge entry", task_id)
    _emit({"ok": True, "task_id": task_id})


# -- scheduler --


@main.group()
def scheduler():
    """Recurring maintenance jobs."""


@scheduler.command("run")
def scheduler_run():
    """Arm all job timers and serve until interrupted."""

    async def _serve(c: Controller):
        _emit(await c.start_scheduler())
        await asyncio.Event().wait()

    try:
        _run(_serve)
    except KeyboardInterrupt:
        log.info("Scheduler interrupted")


@scheduler.command("status")
def scheduler_status():
    _emit(_run(lambda c: c.scheduler.status()))


@scheduler.command("trigger")
@click.argument("name", type=click.Choice(JOB_NAMES))
def scheduler_trigger(name: str):
    """Run job NAME now and print its history entry."""
    _emit(_run(lambda c: c.scheduler.trigger_job(name)))


@scheduler.command("set-interval")
@click.argument("name", type=click.Choice(JOB_NAMES))
@click.argument("interval_ms", type=int)
def scheduler_set_interval(name: str, interval_ms: int):
    """Set job NAME's interval (milliseconds, at least 60000)."""
    _emit(_run(lambda c: c.scheduler.set_job_interval(name, interval_ms)))


@scheduler.command("history")
@click.argument("name", type=click.Choice(JOB_NAMES))
def scheduler_history(name: str):
    _emit(_run(lambda c: c.scheduler.job_history(name)))


# -- events --


@main.command("events")
@click.option("--count", "-n", type=click.IntRange(min=1), default=50, show_default=True)
def events(count: int):
    """Recent run events from the Redis stream, oldest first."""
    from agentctl.queue import read_events

    config_path = click.get_current_context().find_root().obj.get("config_path")
    try:
        config = load_config(config_path)
    except AgentctlError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(read_events(count, url=config.redis_url))
