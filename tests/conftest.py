"""Shared test fixtures: per-test state directory and config."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentctl.audit import CommandAuditLogger
from agentctl.config import Config, GatewayConfig
from agentctl.gateway import CommandExecutionGateway, CommandResult


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture()
def config(tmp_path: Path, state_dir: Path) -> Config:
    cfg = Config(state_dir=state_dir)
    cfg.workspace.root = tmp_path / "workspaces"
    return cfg


@pytest.fixture()
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "agentctl-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "agentctl-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "agentctl-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "agentctl-tests@example.com")


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    ).stdout


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class FakeRunner:
    """Stand-in for ``gateway.run_command`` that records calls.

    *responses* maps a command prefix (tuple) to a CommandResult template
    or an exception; anything else succeeds with empty output.
    """

    def __init__(self, responses: dict[tuple[str, ...], object] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[list[str], str]] = []

    async def __call__(self, command, cwd, *, timeout, max_output_bytes, env=None):
        self.calls.append((list(command), cwd))
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(command[: len(prefix)]) == prefix:
                response = self.responses[prefix]
                if isinstance(response, BaseException):
                    raise response
                return CommandResult(
                    command=list(command),
                    cwd=cwd,
                    exit_code=response.exit_code,
                    stdout=response.stdout,
                    stderr=response.stderr,
                    killed=response.killed,
                )
        return CommandResult(command=list(command), cwd=cwd, exit_code=0, stdout="", stderr="")


def result(exit_code: int = 0, stdout: str = "", stderr: str = "", killed: bool = False) -> CommandResult:
    return CommandResult(
        command=[], cwd="", exit_code=exit_code, stdout=stdout, stderr=stderr, killed=killed
    )


@pytest.fixture()
def make_gateway(state_dir: Path, tmp_path: Path):
    def _make(runner=None, **overrides) -> CommandExecutionGateway:
        gateway_config = GatewayConfig(**overrides)
        audit = CommandAuditLogger(state_dir / "command-audit.json")
        return CommandExecutionGateway(
            gateway_config,
            audit,
            lambda task_id: str(tmp_path / "workspaces" / task_id),
            runner=runner or FakeRunner(),
        )

    return _make


# -- app-server subprocess fakes --


class FakeStdout:
    """Simulates subprocess stdout that delivers chunks on demand."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, msg: dict) -> None:
        self._queue.put_nowait(json.dumps(msg).encode() + b"\n")

    def feed_raw(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        self._queue.put_nowait(b"")

    async def read(self, _n: int = -1) -> bytes:
        return await self._queue.get()


def make_mock_process(stdout: FakeStdout, returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdin = MagicMock()
    proc.stdin.write = MagicMock()
    proc.stdin.drain = AsyncMock()
    proc.wait = AsyncMock(return_value=returncode)
    proc.stdout = stdout
    # SIGTERM makes the fake exit: stdout reaches EOF.
    proc.send_signal = MagicMock(side_effect=lambda _sig: stdout.close())
    proc.kill = MagicMock(side_effect=stdout.close)
    fake_stderr = FakeStdout()
    fake_stderr.close()
    proc.stderr = fake_stderr
    return proc


def written(proc: MagicMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in proc.stdin.write.call_args_list]


def patched(proc):
    return patch("agentctl.client.asyncio.create_subprocess_exec", AsyncMock(return_value=proc))
