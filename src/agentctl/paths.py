"""Canonical filesystem paths for agentctl configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

AGENTCTL_CONFIG_DIR = Path.home() / ".config" / "agentctl"

_env_config = os.environ.get("AGENTCTL_CONFIG")
DEFAULT_CONFIG_PATH = (
    Path(_env_config).expanduser() if _env_config else AGENTCTL_CONFIG_DIR / "config.toml"
)

_env_state = os.environ.get("AGENTCTL_STATE_DIR")
DEFAULT_STATE_DIR = Path(_env_state).expanduser() if _env_state else AGENTCTL_CONFIG_DIR / "state"

DEFAULT_WORKSPACES_ROOT = AGENTCTL_CONFIG_DIR / "workspaces"

# One JSON document per concern, all under the state directory.
TASKS_FILE = "tasks.json"
PLANS_FILE = "plans.json"
RUNS_FILE = "runs.json"
AUDIT_FILE = "command-audit.json"
MERGE_QUEUE_FILE = "merge-queue.json"
SCHEDULER_FILE = "scheduler.json"
CHECKPOINTS_FILE = "checkpoints.json"
POLICIES_FILE = "command-policies.json"
