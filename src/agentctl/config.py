"""Controller configuration loaded from ``config.toml``.

Example::

    [agent]
    command = "codex"
    args = ["app-server"]
    request_timeout_s = 30

    [workspace]
    root = "~/agentctl/workspaces"
    repo_url = "git@github.com:acme/widgets.git"

    [gateway]
    allowed_binaries = ["git", "pytest", "make"]
    deny_patterns = ["curl\\s+.*\\|\\s*sh"]

    [orchestrator]
    max_phase_fixes = 3
    auto_commit = true

    [scheduler.intervals]
    gc-sweep = 86400000

    [scheduler.commands]
    doc-gardening = ["make", "docs-check"]

Every key is optional.  Unknown keys are ignored.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentctl.errors import ConfigError
from agentctl.paths import DEFAULT_CONFIG_PATH, DEFAULT_STATE_DIR, DEFAULT_WORKSPACES_ROOT

log = logging.getLogger(__name__)

DEFAULT_ALLOWED_BINARIES = (
    "git",
    "gh",
    "bash",
    "make",
    "python",
    "python3",
    "pytest",
    "uv",
    "pnpm",
    "node",
    "npx",
)


@dataclass
class AgentConfig:
    command: str = "codex"
    args: list[str] = field(default_factory=lambda: ["app-server"])
    request_timeout_s: float = 30.0
    stop_timeout_s: float = 3.0
    turn_timeout_s: float = 1800.0
    auto_approve: bool = True
    model: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class WorkspaceConfig:
    root: Path = DEFAULT_WORKSPACES_ROOT
    repo_url: str | None = None
    base_branch: str = "main"
    remote: str = "origin"
    stale_days: int = 7


@dataclass
class GatewayConfig:
    enabled: bool = True
    allowed_binaries: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_BINARIES))
    deny_patterns: list[str] = field(default_factory=list)
    default_timeout_ms: int = 120_000
    max_concurrent_global: int = 10
    max_concurrent_per_task: int = 5
    max_output_bytes: int = 2 * 1024 * 1024
    max_audit_entries: int = 5000


@dataclass
class OrchestratorConfig:
    max_phase_fixes: int = 3
    quality_threshold: float = 0.0
    auto_commit: bool = True
    auto_pr: bool = False
    auto_review: bool = False
    review_rounds: int = 2
    verify_command: list[str] = field(default_factory=lambda: ["make", "verify"])


@dataclass
class SchedulerConfig:
    intervals: dict[str, int] = field(default_factory=dict)
    commands: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Config:
    state_dir: Path = DEFAULT_STATE_DIR
    agent: AgentConfig = field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    redis_url: str = "redis://localhost:6379/0"


def _apply_section(target: Any, section: Any, name: str) -> None:
    """Copy known keys from a TOML table onto a dataclass instance."""
    if section is None:
        return
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    for key, value in section.items():
        attr = key.replace("-", "_")
        if not hasattr(target, attr):
            log.debug("Ignoring unknown config key %s.%s", name, key)
            continue
        current = getattr(target, attr)
        if isinstance(current, Path):
            value = Path(str(value)).expanduser()
        elif isinstance(current, bool) and not isinstance(value, bool):
            raise ConfigError(f"{name}.{key} must be a boolean")
        elif isinstance(current, int | float) and not isinstance(current, bool):
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ConfigError(f"{name}.{key} must be a number")
        setattr(target, attr, value)


def config_from_dict(raw: dict[str, Any]) -> Config:
    config = Config()
    if "state_dir" in raw:
        config.state_dir = Path(str(raw["state_dir"])).expanduser()
    _apply_section(config.agent, raw.get("agent"), "agent")
    _apply_section(config.workspace, raw.get("workspace"), "workspace")
    _apply_section(config.gateway, raw.get("gateway"), "gateway")
    _apply_section(config.orchestrator, raw.get("orchestrator"), "orchestrator")
    _apply_section(config.scheduler, raw.get("scheduler"), "scheduler")
    queue = raw.get("queue")
    if isinstance(queue, dict) and queue.get("redis_url"):
        config.redis_url = str(queue["redis_url"])
    return config


def _apply_env_overrides(config: Config) -> None:
    if os.environ.get("SHELL_TOOL_ENABLED", "").strip().lower() == "false":
        config.gateway.enabled = False
    redis_url = os.environ.get("AGENTCTL_REDIS_URL")
    if redis_url:
        config.redis_url = redis_url
    state_dir = os.environ.get("AGENTCTL_STATE_DIR")
    if state_dir:
        config.state_dir = Path(state_dir).expanduser()


def load_config(path: Path | None = None) -> Config:
    """Load configuration from *path* (default: ``~/.config/agentctl/config.toml``).

    A missing file yields defaults.  Malformed TOML raises ConfigError.
    """
    path = path or DEFAULT_CONFIG_PATH
    raw: dict[str, Any] = {}
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except FileNotFoundError:
        log.debug("No config file at %s, using defaults", path)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    config = config_from_dict(raw)
    _apply_env_overrides(config)
    return config
