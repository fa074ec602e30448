"""Command execution gateway: the single choke point for shell execution.

Every command passes, in order:

1. gateway enabled check
2. non-empty argv
3. binary allowlist (global baseline plus task policy additions)
4. binary denylist (task policy)
5. deny patterns (built-in, configured, task policy) matched against the
   space-joined command string
6. global and per-task concurrency ceilings

Rejections happen before anything is spawned or audited.  Accepted commands
are audited (start + terminal outcome) and raced against a timeout.

Deny patterns deliberately match the *joined* command string rather than
individual arguments.  That keeps compatibility with existing policies but
means quoting can both trigger false positives and hide real matches; treat
patterns as a coarse tripwire, not a sandbox.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypedDict

from agentctl.audit import CommandAuditLogger
from agentctl.config import GatewayConfig
from agentctl.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ConcurrencyLimitError,
    GatewayDisabledError,
    PolicyViolationError,
)
from agentctl.store import JsonDocumentStore

log = logging.getLogger(__name__)

KILLED_EXIT_CODE = 137

GLOBAL_DENY_PATTERNS = (
    r"rm\s+-rf\s+/",  # rm -rf /
    r"mkfs",  # disk formatting
    r"dd\s+if=",  # raw disk writes
    r":\(\)\{.*\}",  # fork bombs
)

_READ_CHUNK = 64 * 1024


class CommandPolicy(TypedDict, total=False):
    task_id: str
    allowed_binaries: list[str]
    denied_binaries: list[str]
    denied_patterns: list[str]
    max_concurrent: int
    timeout_ms: int


@dataclass
class CommandResult:
    command: list[str]
    cwd: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    killed: bool = False
    audit_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.killed

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "cwd": self.cwd,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "killed": self.killed,
            "audit_id": self.audit_id,
        }


# ---------------------------------------------------------------------------
# argv runner
# ---------------------------------------------------------------------------


async def _read_capped(
    stream: asyncio.StreamReader, limit: int, overflow: asyncio.Event
) -> bytes:
    chunks: list[bytes] = []
    size = 0
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        if size + len(chunk) > limit:
            chunks.append(chunk[: limit - size])
            size = limit
            overflow.set()
            break
        chunks.append(chunk)
        size += len(chunk)
    return b"".join(chunks)


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def run_command(
    command: list[str],
    cwd: str,
    *,
    timeout: float | None,
    max_output_bytes: int = 2 * 1024 * 1024,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run an argv vector (never a shell string) and capture its output.

    Output beyond *max_output_bytes* per stream kills the process and the
    result is reported as killed.  Exceeding *timeout* (seconds) kills the
    process and raises CommandTimeoutError.
    """
    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=cwd,
        env={**os.environ, **env} if env else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    assert process.stdout and process.stderr
    overflow = asyncio.Event()

    async def _collect() -> tuple[bytes, bytes]:
        out_task = asyncio.create_task(_read_capped(process.stdout, max_output_bytes, overflow))
        err_task = asyncio.create_task(_read_capped(process.stderr, max_output_bytes, overflow))
        readers = asyncio.gather(out_task, err_task)
        overflow_wait = asyncio.create_task(overflow.wait())
        try:
            await asyncio.wait({readers, overflow_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            overflow_wait.cancel()
        # Killing closes the pipes, so the other reader reaches EOF.
        if overflow.is_set():
            _kill(process)
        out, err = await readers
        await process.wait()
        return out, err

    try:
        stdout, stderr = await asyncio.wait_for(_collect(), timeout=timeout)
    except TimeoutError:
        _kill(process)
        await process.wait()
        raise CommandTimeoutError(
            f"Command timed out after {int((timeout or 0) * 1000)}ms: {' '.join(command)}"
        ) from None
    except asyncio.CancelledError:
        _kill(process)
        raise

    returncode = process.returncode if process.returncode is not None else 1
    killed = overflow.is_set() or returncode < 0
    if returncode < 0:
        exit_code = 128 + (-returncode)
    elif overflow.is_set():
        exit_code = KILLED_EXIT_CODE
    else:
        exit_code = returncode
    stderr_text = stderr.decode(errors="replace")
    if overflow.is_set():
        stderr_text += f"\n[output exceeded {max_output_bytes} bytes; process killed]"
    return CommandResult(
        command=list(command),
        cwd=cwd,
        exit_code=exit_code,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr_text,
        duration_ms=int((time.monotonic() - started) * 1000),
        killed=killed,
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        log.debug("Skipping malformed deny pattern %r", pattern)
        return None


class CommandExecutionGateway:
    """Allow/deny enforcement, concurrency ceilings, timeouts and audit.

    Concurrency counters are owned by the instance; :meth:`reset` clears
    them (tests, or after a crashed event loop).
    """

    def __init__(
        self,
        config: GatewayConfig,
        audit: CommandAuditLogger,
        workspace_path: Callable[[str], str],
        *,
        policies_path: Path | None = None,
        runner: Callable[..., object] = run_command,
    ) -> None:
        self.config = config
        self.audit = audit
        self._workspace_path = workspace_path
        self._runner = runner
        self._policy_store = (
            JsonDocumentStore(policies_path, "policies") if policies_path is not None else None
        )
        self._memory_policies: dict[str, CommandPolicy] = {}
        self._active_global = 0
        self._active_per_task: dict[str, int] = {}

    # -- Policies --

    async def _load_policies(self) -> dict[str, CommandPolicy]:
        if self._policy_store is None:
            return self._memory_policies
        return await self._policy_store.aload()

    async def _save_policies(self, policies: dict[str, CommandPolicy]) -> None:
        if self._policy_store is None:
            self._memory_policies = policies
            return
        await self._policy_store.asave(policies)

    async def set_task_policy(self, policy: CommandPolicy) -> CommandPolicy:
        """Set a per-task policy. It overlays, never replaces, the global baseline."""
        task_id = policy.get("task_id")
        if not task_id:
            raise ValueError("Command policy requires a task_id")
        max_concurrent = policy.get("max_concurrent")
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        policies = await self._load_policies()
        policies[task_id] = dict(policy)  # type: ignore[assignment]
        await self._save_policies(policies)
        return policy

    async def get_task_policy(self, task_id: str) -> CommandPolicy | None:
        policies = await self._load_policies()
        return policies.get(task_id)

    async def remove_task_policy(self, task_id: str) -> bool:
        policies = await self._load_policies()
        if task_id not in policies:
            return False
        del policies[task_id]
        await self._save_policies(policies)
        return True

    async def list_task_policies(self) -> list[CommandPolicy]:
        policies = await self._load_policies()
        return [policies[key] for key in sorted(policies)]

    # -- Counters --

    @property
    def active_commands(self) -> int:
        return self._active_global

    def active_for_task(self, task_id: str) -> int:
        return self._active_per_task.get(task_id, 0)

    def reset(self) -> None:
        self._active_global = 0
        self._active_per_task.clear()

    def _acquire(self, task_id: str) -> None:
        self._active_global += 1
        self._active_per_task[task_id] = self._active_per_task.get(task_id, 0) + 1

    def _release(self, task_id: str) -> None:
        self._active_global = max(0, self._active_global - 1)
        current = self._active_per_task.get(task_id, 1)
        if current <= 1:
            self._active_per_task.pop(task_id, None)
        else:
            self._active_per_task[task_id] = current - 1

    # -- Checks --

    def _check_binary(self, binary: str, policy: CommandPolicy | None) -> None:
        allowed = set(self.config.allowed_binaries)
        if policy:
            allowed.update(policy.get("allowed_binaries", []))
        if binary not in allowed:
            raise PolicyViolationError(
                "allowlist",
                f"Command binary not allowlisted: {binary}. Allowed: {', '.join(sorted(allowed))}",
            )
        if policy and binary in policy.get("denied_binaries", []):
            raise PolicyViolationError(
                "denylist", f"Command binary explicitly denied for task: {binary}"
            )

    def _check_patterns(self, command_str: str, policy: CommandPolicy | None) -> None:
        layers: list[tuple[str, tuple[str, ...] | list[str]]] = [
            ("global deny pattern", GLOBAL_DENY_PATTERNS),
            ("configured deny pattern", self.config.deny_patterns),
        ]
        if policy:
            layers.append(("task deny pattern", policy.get("denied_patterns", [])))
        for label, patterns in layers:
            for pattern in patterns:
                regex = _compile(pattern)
                if regex is not None and regex.search(command_str):
                    raise PolicyViolationError(
                        label.replace(" ", "_"), f"Command matches {label}: {pattern}"
                    )

    def _check_concurrency(self, task_id: str, policy: CommandPolicy | None) -> None:
        ceiling = self.config.max_concurrent_global
        if self._active_global >= ceiling:
            raise ConcurrencyLimitError(
                "global_concurrency",
                f"Global concurrent command limit reached ({ceiling}). "
                "Wait for commands to finish.",
            )
        per_task = (policy or {}).get("max_concurrent") or self.config.max_concurrent_per_task
        if self._active_per_task.get(task_id, 0) >= per_task:
            raise ConcurrencyLimitError(
                "task_concurrency",
                f"Per-task concurrent command limit reached for {task_id} ({per_task}). "
                "Wait for commands to finish.",
            )

    # -- Execution --

    async def execute(
        self,
        task_id: str,
        command: list[str],
        *,
        timeout_ms: int | None = None,
        allow_non_zero_exit: bool = False,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run *command* for *task_id* under the full safety envelope.

        Raises PolicyViolationError (pre-spawn), CommandTimeoutError,
        or CommandFailedError on non-zero exit unless *allow_non_zero_exit*
        is set, in which case failures come back inline.
        """
        if not self.config.enabled:
            raise GatewayDisabledError("Shell tool is disabled (SHELL_TOOL_ENABLED=false)")
        if not command:
            raise PolicyViolationError("empty_command", "Command must include at least one token")

        command = list(command)
        policy = await self.get_task_policy(task_id)
        self._check_binary(command[0], policy)
        self._check_patterns(" ".join(command), policy)
        self._check_concurrency(task_id, policy)

        # No await between the concurrency check and the increment.
        self._acquire(task_id)
        try:
            return await self._run_audited(
                task_id,
                command,
                cwd=cwd,
                timeout_ms=timeout_ms or (policy or {}).get("timeout_ms")
                or self.config.default_timeout_ms,
                allow_non_zero_exit=allow_non_zero_exit,
            )
        finally:
            self._release(task_id)

    async def _run_audited(
        self,
        task_id: str,
        command: list[str],
        *,
        cwd: str | None,
        timeout_ms: int,
        allow_non_zero_exit: bool,
    ) -> CommandResult:
        workdir = cwd or self._workspace_path(task_id)
        audit_id = await self.audit.record_start(task_id, command, workdir)
        started = time.monotonic()
        try:
            result = await self._runner(
                command,
                workdir,
                timeout=timeout_ms / 1000,
                max_output_bytes=self.config.max_output_bytes,
            )
        except Exception as exc:
            killed = isinstance(exc, CommandTimeoutError)
            await self.audit.record_end(
                audit_id, "killed" if killed else "failed", None, 0, 0, str(exc)
            )
            log.info("Command %s for %s: %s", command[0], task_id, exc)
            if not allow_non_zero_exit:
                raise
            return CommandResult(
                command=command,
                cwd=workdir,
                exit_code=KILLED_EXIT_CODE if killed else 1,
                stdout="",
                stderr=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
                killed=killed,
                audit_id=audit_id,
            )

        result.audit_id = audit_id
        error = None
        if result.killed:
            state = "killed"
            error = f"terminated by {signal_name(result.exit_code) or 'kill'}"
        elif result.exit_code == 0:
            state = "succeeded"
        else:
            state = "failed"
        await self.audit.record_end(
            audit_id,
            state,
            result.exit_code,
            len(result.stdout.encode()),
            len(result.stderr.encode()),
            error,
        )
        if state != "succeeded" and not allow_non_zero_exit:
            raise CommandFailedError(result)
        return result


def signal_name(exit_code: int) -> str | None:
    """Name of the signal behind a 128+N exit code, if any."""
    if exit_code <= 128:
        return None
    try:
        return signal.Signals(exit_code - 128).name
    except ValueError:
        return None
