"""Tests for the command execution gateway and its argv runner."""

from __future__ import annotations

import asyncio
import shutil

import pytest
from conftest import FakeRunner, result

from agentctl.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ConcurrencyLimitError,
    GatewayDisabledError,
    PolicyViolationError,
)
from agentctl.gateway import KILLED_EXIT_CODE, run_command, signal_name


@pytest.mark.asyncio
async def test_allowed_command_runs_in_task_workspace(make_gateway, tmp_path):
    runner = FakeRunner({("git", "status"): result(stdout="clean\n")})
    gateway = make_gateway(runner)
    res = await gateway.execute("t1", ["git", "status"])
    assert res.ok
    assert res.stdout == "clean\n"
    assert runner.calls == [(["git", "status"], str(tmp_path / "workspaces" / "t1"))]

    [entry] = await gateway.audit.get_entries()
    assert entry["state"] == "succeeded"
    assert entry["id"] == res.audit_id


@pytest.mark.asyncio
async def test_disabled_gateway_rejects_everything(make_gateway):
    gateway = make_gateway(enabled=False)
    with pytest.raises(GatewayDisabledError):
        await gateway.execute("t1", ["git", "status"])


@pytest.mark.asyncio
async def test_empty_command_rejected(make_gateway):
    with pytest.raises(PolicyViolationError) as excinfo:
        await make_gateway().execute("t1", [])
    assert excinfo.value.rule == "empty_command"


@pytest.mark.asyncio
async def test_binary_not_allowlisted_is_rejected_before_spawn(make_gateway):
    runner = FakeRunner()
    gateway = make_gateway(runner)
    with pytest.raises(PolicyViolationError, match="not allowlisted: curl") as excinfo:
        await gateway.execute("t1", ["curl", "https://example.com"])
    assert excinfo.value.rule == "allowlist"
    assert runner.calls == []
    assert await gateway.audit.get_entries() == []


@pytest.mark.asyncio
async def test_task_policy_extends_allowlist_and_denies(make_gateway):
    gateway = make_gateway()
    await gateway.set_task_policy(
        {"task_id": "t1", "allowed_binaries": ["cargo"], "denied_binaries": ["make"]}
    )
    assert (await gateway.execute("t1", ["cargo", "test"])).ok
    with pytest.raises(PolicyViolationError) as excinfo:
        await gateway.execute("t1", ["make", "verify"])
    assert excinfo.value.rule == "denylist"
    # Other tasks keep the global baseline.
    assert (await gateway.execute("t2", ["make", "verify"])).ok
    with pytest.raises(PolicyViolationError):
        await gateway.execute("t2", ["cargo", "test"])


@pytest.mark.asyncio
async def test_global_deny_pattern_blocks_allowlisted_binary(make_gateway):
    with pytest.raises(PolicyViolationError, match="global deny pattern"):
        await make_gateway().execute("t1", ["bash", "-c", "rm -rf /"])


@pytest.mark.asyncio
async def test_configured_and_task_deny_patterns(make_gateway):
    gateway = make_gateway(deny_patterns=[r"push\s+--force"])
    with pytest.raises(PolicyViolationError, match="configured deny pattern"):
        await gateway.execute("t1", ["git", "push", "--force"])

    await gateway.set_task_policy({"task_id": "t1", "denied_patterns": [r"reset\s+--hard"]})
    with pytest.raises(PolicyViolationError, match="task deny pattern"):
        await gateway.execute("t1", ["git", "reset", "--hard"])


@pytest.mark.asyncio
async def test_malformed_deny_pattern_is_skipped(make_gateway):
    gateway = make_gateway(deny_patterns=["(unclosed"])
    assert (await gateway.execute("t1", ["git", "status"])).ok


@pytest.mark.asyncio
async def test_non_zero_exit_raises_unless_allowed(make_gateway):
    runner = FakeRunner({("make",): result(exit_code=2, stderr="boom")})
    gateway = make_gateway(runner)
    with pytest.raises(CommandFailedError) as excinfo:
        await gateway.execute("t1", ["make", "verify"])
    assert excinfo.value.result.exit_code == 2

    inline = await gateway.execute("t1", ["make", "verify"], allow_non_zero_exit=True)
    assert inline.exit_code == 2
    assert not inline.ok
    states = [e["state"] for e in await gateway.audit.get_entries()]
    assert states == ["failed", "failed"]


@pytest.mark.asyncio
async def test_timeout_is_audited_as_killed(make_gateway):
    runner = FakeRunner({("pytest",): CommandTimeoutError("Command timed out after 5ms")})
    gateway = make_gateway(runner)
    with pytest.raises(CommandTimeoutError):
        await gateway.execute("t1", ["pytest"], timeout_ms=5)

    inline = await gateway.execute("t1", ["pytest"], timeout_ms=5, allow_non_zero_exit=True)
    assert inline.killed
    assert inline.exit_code == KILLED_EXIT_CODE
    entries = await gateway.audit.get_entries()
    assert [e["state"] for e in entries] == ["killed", "killed"]
    assert entries[0]["error"].startswith("Command timed out")
    assert gateway.active_commands == 0


@pytest.mark.asyncio
async def test_concurrency_ceilings(make_gateway):
    release = asyncio.Event()
    started = asyncio.Event()

    class BlockingRunner(FakeRunner):
        async def __call__(self, command, cwd, **kwargs):
            started.set()
            await release.wait()
            return await super().__call__(command, cwd, **kwargs)

    gateway = make_gateway(BlockingRunner(), max_concurrent_global=2, max_concurrent_per_task=1)
    first = asyncio.create_task(gateway.execute("t1", ["git", "status"]))
    await started.wait()
    assert gateway.active_commands == 1
    assert gateway.active_for_task("t1") == 1

    with pytest.raises(ConcurrencyLimitError) as excinfo:
        await gateway.execute("t1", ["git", "log"])
    assert excinfo.value.rule == "task_concurrency"

    started.clear()
    second = asyncio.create_task(gateway.execute("t2", ["git", "status"]))
    await started.wait()
    with pytest.raises(ConcurrencyLimitError) as excinfo:
        await gateway.execute("t3", ["git", "status"])
    assert excinfo.value.rule == "global_concurrency"

    release.set()
    await asyncio.gather(first, second)
    assert gateway.active_commands == 0
    assert gateway.active_for_task("t1") == 0


@pytest.mark.asyncio
async def test_policy_max_concurrent_overrides_default(make_gateway):
    gateway = make_gateway()
    with pytest.raises(ValueError):
        await gateway.set_task_policy({"task_id": "t1", "max_concurrent": 0})
    await gateway.set_task_policy({"task_id": "t1", "max_concurrent": 4})
    assert (await gateway.get_task_policy("t1"))["max_concurrent"] == 4


@pytest.mark.asyncio
async def test_policy_crud_persists(make_gateway, state_dir, tmp_path):
    from agentctl.audit import CommandAuditLogger
    from agentctl.config import GatewayConfig
    from agentctl.gateway import CommandExecutionGateway

    def build():
        return CommandExecutionGateway(
            GatewayConfig(),
            CommandAuditLogger(state_dir / "audit.json"),
            lambda task_id: str(tmp_path),
            policies_path=state_dir / "command-policies.json",
        )

    await build().set_task_policy({"task_id": "b", "allowed_binaries": ["cargo"]})
    await build().set_task_policy({"task_id": "a"})
    gateway = build()
    assert [p["task_id"] for p in await gateway.list_task_policies()] == ["a", "b"]
    assert await gateway.remove_task_policy("a") is True
    assert await gateway.remove_task_policy("a") is False
    assert await build().get_task_policy("a") is None
    with pytest.raises(ValueError):
        await gateway.set_task_policy({"allowed_binaries": ["x"]})


@pytest.mark.asyncio
async def test_signalled_command_audit_names_the_signal(make_gateway):
    runner = FakeRunner({("sleep",): result(exit_code=143, killed=True)})
    gateway = make_gateway(runner, allowed_binaries=["sleep"])
    res = await gateway.execute("t1", ["sleep", "9"], allow_non_zero_exit=True)
    assert res.killed
    (entry,) = await gateway.audit.get_entries()
    assert entry["state"] == "killed"
    assert entry["exit_code"] == 143
    assert entry["error"] == "terminated by SIGTERM"


def test_signal_name():
    assert signal_name(137) == "SIGKILL"
    assert signal_name(143) == "SIGTERM"
    assert signal_name(1) is None


@pytest.mark.asyncio
async def test_run_command_captures_output(tmp_path):
    res = await run_command(["echo", "hello"], str(tmp_path), timeout=10)
    assert res.exit_code == 0
    assert res.stdout == "hello\n"
    assert not res.killed


@pytest.mark.asyncio
async def test_run_command_non_zero_exit(tmp_path):
    res = await run_command(["sh", "-c", "echo oops >&2; exit 3"], str(tmp_path), timeout=10)
    assert res.exit_code == 3
    assert res.stderr.strip() == "oops"


@pytest.mark.asyncio
async def test_run_command_timeout_kills(tmp_path):
    with pytest.raises(CommandTimeoutError, match="timed out after 200ms"):
        await run_command(["sleep", "5"], str(tmp_path), timeout=0.2)


@pytest.mark.skipif(shutil.which("yes") is None, reason="yes is not installed")
@pytest.mark.asyncio
async def test_run_command_output_cap_kills(tmp_path):
    res = await run_command(["yes"], str(tmp_path), timeout=10, max_output_bytes=1000)
    assert res.killed
    assert len(res.stdout) == 1000
    assert "output exceeded 1000 bytes" in res.stderr
