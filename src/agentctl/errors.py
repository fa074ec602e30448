"""Exception hierarchy shared by the controller components.

Callers that only care about "something in agentctl went wrong" can catch
:class:`AgentctlError`.  Timeouts additionally subclass :class:`TimeoutError`
so they stay distinguishable from explicit negative results.
"""

from __future__ import annotations

from typing import Any


class AgentctlError(Exception):
    """Base class for all agentctl errors."""


# -- Protocol ---------------------------------------------------------------


class RPCError(AgentctlError):
    """Explicit JSON-RPC error response from the agent."""

    def __init__(self, error: dict[str, Any], *, method: str | None = None) -> None:
        self.code = error.get("code", -1)
        self.data = error.get("data")
        self.method = method
        message = error.get("message", "Unknown RPC error")
        if method:
            message = f"JSON-RPC request failed ({method}): [{self.code}] {message}"
        super().__init__(message)


class RequestTimeoutError(AgentctlError, TimeoutError):
    """A request or notification wait exceeded its deadline."""


class ProcessExitedError(AgentctlError, ConnectionError):
    """The agent subprocess exited (or failed) while requests were pending."""


class ClientNotStartedError(AgentctlError, RuntimeError):
    """A message was written while no agent subprocess is running."""


# -- Persistence ------------------------------------------------------------


class StoreError(AgentctlError):
    """A persisted document exists but could not be read or parsed."""


class ConfigError(AgentctlError):
    """The configuration file is malformed."""


# -- Workflow state ---------------------------------------------------------


class TaskNotFoundError(AgentctlError, KeyError):
    def __str__(self) -> str:  # KeyError quotes its argument otherwise
        return str(self.args[0]) if self.args else ""


class DuplicateTaskError(AgentctlError):
    pass


class InvalidTransitionError(AgentctlError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid task status transition: {current} -> {target}")


class PlanNotFoundError(AgentctlError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class DuplicatePlanError(AgentctlError):
    pass


# -- Command gateway --------------------------------------------------------


class GatewayDisabledError(AgentctlError):
    pass


class PolicyViolationError(AgentctlError):
    """Command rejected before spawn; the message names the violated rule."""

    def __init__(self, rule: str, message: str) -> None:
        self.rule = rule
        super().__init__(message)


class ConcurrencyLimitError(PolicyViolationError):
    pass


class CommandFailedError(AgentctlError):
    """Command exited non-zero and the caller did not opt into inline results."""

    def __init__(self, result: Any) -> None:
        self.result = result
        super().__init__(
            f"Command failed (exit {result.exit_code}): {' '.join(result.command)}\n"
            f"stdout:\n{result.stdout}\nstderr:\n{result.stderr}"
        )


class CommandTimeoutError(AgentctlError, TimeoutError):
    pass


# -- Scheduler --------------------------------------------------------------


class UnknownJobError(AgentctlError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
