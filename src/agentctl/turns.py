"""One agent turn: ``turn/start`` then wait for the matching ``turn/completed``."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from agentctl.client import AppServerClient
from agentctl.errors import RequestTimeoutError

log = logging.getLogger(__name__)

DEFAULT_TURN_TIMEOUT = 1800.0
INTERRUPT_TIMEOUT = 10.0


@dataclass
class TurnResult:
    thread_id: str
    turn_id: str | None
    status: str
    result: dict[str, Any] = field(default_factory=dict)


def _format_turn_error(error: dict[str, Any]) -> str:
    message = error.get("message", "unknown error")
    extra = error.get("additionalDetails")
    return f"Turn failed: {message}" + (f" | {extra}" if extra else "")


class TurnRunner:
    """Runs turns against threads on a shared :class:`AppServerClient`."""

    def __init__(
        self,
        client: AppServerClient,
        *,
        turn_timeout: float = DEFAULT_TURN_TIMEOUT,
        model: str | None = None,
    ) -> None:
        self.client = client
        self.turn_timeout = turn_timeout
        self.model = model
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def ensure_ready(self) -> None:
        """Start and initialize the agent process if it is not running."""
        async with self._init_lock:
            if self.client.running and self._initialized:
                return
            await self.client.start()
            await self.client.initialize()
            self._initialized = True

    async def start_thread(self, cwd: str) -> str:
        await self.ensure_ready()
        params: dict[str, Any] = {"cwd": cwd}
        if self.model:
            params["model"] = self.model
        response = await self.client.start_thread(params)
        return response["thread"]["id"]

    async def resume_thread(self, thread_id: str) -> str:
        await self.ensure_ready()
        response = await self.client.resume_thread(thread_id)
        return response["thread"]["id"]

    async def run_turn(self, thread_id: str, prompt: str) -> TurnResult:
        """Send *prompt* as one turn and wait for it to finish.

        A turn that outlives ``turn_timeout`` is interrupted and
        RequestTimeoutError is raised.  A turn that completes with status
        ``failed`` raises RuntimeError.
        """
        await self.ensure_ready()
        done = asyncio.Event()
        state: dict[str, Any] = {"turn_id": None, "completed": {}}

        def on_started(params: dict) -> None:
            if params.get("threadId") == thread_id:
                state["turn_id"] = (params.get("turn") or {}).get("id")

        def on_completed(params: dict) -> None:
            if params.get("threadId") == thread_id:
                state["completed"] = params
                done.set()

        # Subscribe before sending so a fast completion is never missed.
        self.client.on_notification("turn/started", on_started)
        self.client.on_notification("turn/completed", on_completed)
        try:
            response = await self.client.start_turn(
                {"threadId": thread_id, "input": [{"type": "text", "text": prompt}]}
            )
            turn = (response or {}).get("turn") or {}
            state["turn_id"] = state["turn_id"] or turn.get("id")
            try:
                await asyncio.wait_for(done.wait(), timeout=self.turn_timeout)
            except TimeoutError:
                await self._interrupt(thread_id, state["turn_id"])
                raise RequestTimeoutError(
                    f"Turn on thread {thread_id} did not complete within {self.turn_timeout}s"
                ) from None
        finally:
            self.client.remove_notification_handler("turn/started", on_started)
            self.client.remove_notification_handler("turn/completed", on_completed)

        turn = state["completed"].get("turn") or {}
        status = turn.get("status", "completed")
        if status == "failed":
            raise RuntimeError(_format_turn_error(turn.get("error") or {}))
        return TurnResult(
            thread_id=thread_id,
            turn_id=turn.get("id") or state["turn_id"],
            status=status,
            result=state["completed"],
        )

    async def _interrupt(self, thread_id: str, turn_id: str | None) -> None:
        if not turn_id:
            return
        try:
            await self.client.request(
                "turn/interrupt",
                {"threadId": thread_id, "turnId": turn_id},
                timeout=INTERRUPT_TIMEOUT,
            )
            log.warning("Interrupted timed-out turn %s on thread %s", turn_id, thread_id)
        except Exception:
            log.warning("Failed to interrupt turn %s on thread %s", turn_id, thread_id)
