"""JSON-RPC client for the coding-agent app-server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
from collections.abc import Callable
from typing import Any

from agentctl.errors import (
    ClientNotStartedError,
    ProcessExitedError,
    RequestTimeoutError,
    RPCError,
)

log = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_STOP_TIMEOUT = 3.0
METHOD_NOT_FOUND = -32601

CLIENT_EVENTS = frozenset(
    {
        "notification",
        "server_request",
        "approval_auto_accepted",
        "stderr",
        "protocol_error",
        "exit",
        "error",
        "token_usage",
    }
)

# Canned replies for server-initiated approval requests.
APPROVAL_RESPONSES: dict[str, dict[str, Any]] = {
    "item/fileChange/requestApproval": {"decision": "accept"},
    "item/commandExecution/requestApproval": {
        "decision": "accept",
        "acceptSettings": {"forSession": True},
    },
    "applyPatchApproval": {"decision": "approved_for_session"},
    "execCommandApproval": {"decision": "approved_for_session"},
}

_READ_CHUNK = 64 * 1024


def build_child_env(overrides: dict[str, str] | None = None) -> dict[str, str]:
    """Parent environment plus *overrides*, never leaking ``OPENAI_API_KEY``."""
    env = {**os.environ, **(overrides or {})}
    env.pop("OPENAI_API_KEY", None)
    return env


class AppServerClient:
    """Manages one app-server subprocess and talks JSON-RPC over stdio.

    Messages from the server are classified by shape:
    - Responses (id, no method): matched to pending requests by id
    - Server requests (id and method): auto-approved or answered -32601
    - Notifications (method only): fanned out to listeners

    Listeners subscribe per event name with :meth:`on` (see
    ``CLIENT_EVENTS``) or per notification method with
    :meth:`on_notification`.  Handlers may be plain functions or
    coroutine functions; a failing handler never affects the others.
    """

    def __init__(
        self,
        command: str = "codex",
        args: list[str] | tuple[str, ...] = ("app-server",),
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        auto_approve: bool = True,
        client_name: str = "agentctl",
    ) -> None:
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self._env = env
        self.request_timeout = request_timeout
        self.stop_timeout = stop_timeout
        self.auto_approve = auto_approve
        self.client_name = client_name

        self._process: asyncio.subprocess.Process | None = None
        self._next_id = 1
        self._pending: dict[int, tuple[str, asyncio.Future[Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._buffer = b""
        self._listeners: dict[str, list[Callable]] = {}
        self._notification_handlers: dict[str, list[Callable]] = {}
        self._token_usage: dict[str, dict[str, Any]] = {}
        self._tracking_token_usage = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Lifecycle --

    async def start(self) -> None:
        """Spawn the subprocess. No-op if it is already running."""
        if self._process is not None:
            return
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                cwd=self.cwd,
                env=build_child_env(self._env),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            await self._emit("error", exc)
            raise
        self._buffer = b""
        self._reader_task = asyncio.create_task(self._read_loop(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))
        log.info("Started %s (pid %s)", " ".join([self.command, *self.args]), self._process.pid)

    async def stop(self) -> None:
        """SIGTERM, wait ``stop_timeout`` seconds, then SIGKILL."""
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except TimeoutError:
                log.warning("app-server did not exit within %ss, killing", self.stop_timeout)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if self._reader_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._stderr_task:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        self._reader_task = None
        self._stderr_task = None

    def reset(self) -> None:
        """Drop all per-instance state: pending requests, usage, listeners."""
        self._reject_all_pending(ProcessExitedError("Client reset"))
        self._token_usage.clear()
        self._tracking_token_usage = False
        self._listeners.clear()
        self._notification_handlers.clear()
        self._buffer = b""

    async def __aenter__(self) -> AppServerClient:
        await self.start()
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # -- Listener registry --

    def on(self, event: str, handler: Callable) -> None:
        if event not in CLIENT_EVENTS:
            raise ValueError(f"Unknown client event '{event}'")
        self._listeners.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_notification(self, method: str, handler: Callable) -> None:
        """Register a handler for one server notification method."""
        self._notification_handlers.setdefault(method, []).append(handler)

    def remove_notification_handler(self, method: str, handler: Callable) -> None:
        handlers = self._notification_handlers.get(method, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _call(self, handler: Callable, *args: Any) -> None:
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            log.exception("Listener %r failed", handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            await self._call(handler, *args)

    # -- Token usage --

    def enable_token_usage_tracking(self) -> None:
        self._tracking_token_usage = True

    def get_token_usage(self, thread_id: str) -> dict[str, Any] | None:
        return self._token_usage.get(thread_id)

    # -- Outgoing messages --

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise ClientNotStartedError("app-server is not running")
        process.stdin.write((json.dumps(message) + "\n").encode())
        await process.stdin.drain()

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its response.

        *timeout* defaults to ``request_timeout``.  Raises RPCError on an
        explicit error response, RequestTimeoutError on deadline and
        ProcessExitedError if the subprocess goes away first.
        """
        req_id = self._next_id
        self._next_id += 1

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            message["params"] = params

        # Register before writing so a fast response always finds its future.
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (method, future)
        try:
            await self._write(message)
        except Exception:
            self._pending.pop(req_id, None)
            raise

        limit = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except TimeoutError:
            self._pending.pop(req_id, None)
            raise RequestTimeoutError(
                f"JSON-RPC request timed out after {limit}s: {method}"
            ) from None
        except asyncio.CancelledError:
            self._pending.pop(req_id, None)
            raise

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def respond(self, req_id: int | str, result: dict[str, Any]) -> None:
        await self._write({"jsonrpc": "2.0", "id": req_id, "result": result})

    async def respond_error(self, req_id: int | str, code: int, message: str) -> None:
        await self._write(
            {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}
        )

    async def wait_for_notification(
        self,
        method: str,
        timeout: float | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> dict[str, Any]:
        """Resolve with the params of the first matching notification."""
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

        def _handler(params: dict[str, Any]) -> None:
            if future.done():
                return
            if predicate is None or predicate(params):
                future.set_result(params)

        self.on_notification(method, _handler)
        limit = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except TimeoutError:
            raise RequestTimeoutError(
                f"Timed out after {limit}s waiting for notification {method}"
            ) from None
        finally:
            self.remove_notification_handler(method, _handler)

    # -- Protocol convenience calls --

    async def initialize(self, params: dict[str, Any] | None = None) -> Any:
        from agentctl import __version__

        return await self.request(
            "initialize",
            params
            or {
                "clientInfo": {"name": self.client_name, "version": __version__},
                "capabilities": {"experimentalApi": True},
            },
        )

    async def start_thread(self, params: dict[str, Any]) -> Any:
        return await self.request("thread/start", params)

    async def resume_thread(self, thread_id: str) -> Any:
        return await self.request("thread/resume", {"threadId": thread_id})

    async def fork_thread(self, thread_id: str) -> Any:
        return await self.request("thread/fork", {"threadId": thread_id})

    async def compact_thread(self, thread_id: str) -> Any:
        return await self.request("thread/compact/start", {"threadId": thread_id})

    async def rollback_thread(self, thread_id: str, count: int) -> Any:
        return await self.request("thread/rollback", {"threadId": thread_id, "count": count})

    async def start_turn(self, params: dict[str, Any]) -> Any:
        return await self.request("turn/start", params)

    async def steer_turn(self, params: dict[str, Any]) -> Any:
        return await self.request("turn/steer", params)

    async def interrupt_turn(self, thread_id: str, turn_id: str) -> Any:
        return await self.request("turn/interrupt", {"threadId": thread_id, "turnId": turn_id})

    async def start_review(self, params: dict[str, Any]) -> Any:
        return await self.request("review/start", params)

    # -- Internal --

    def _reject_all_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for _method, future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Read stderr continuously so the OS pipe buffer never fills."""
        assert process.stderr
        while True:
            chunk = await process.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            log.debug("app-server stderr: %s", text.rstrip())
            await self._emit("stderr", text)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                await self._feed(chunk)
        except Exception as exc:
            log.exception("app-server read loop failed")
            self._reject_all_pending(ProcessExitedError(f"app-server read failed: {exc}"))
            if self._process is process:
                self._process = None
            await self._emit("error", exc)
            return
        returncode = await process.wait()
        await self._handle_exit(process, returncode)

    async def _handle_exit(self, process: asyncio.subprocess.Process, returncode: int) -> None:
        if returncode < 0:
            code = None
            try:
                sig = signal.Signals(-returncode).name
            except ValueError:
                sig = str(-returncode)
        else:
            code, sig = returncode, None
        self._reject_all_pending(
            ProcessExitedError(f"app-server exited (code={code}, signal={sig})")
        )
        if self._process is process:
            self._process = None
        log.info("app-server exited (code=%s, signal=%s)", code, sig)
        await self._emit("exit", code, sig)

    async def _feed(self, chunk: bytes) -> None:
        """Buffer raw bytes and handle every complete line."""
        self._buffer += chunk
        while True:
            newline = self._buffer.find(b"\n")
            if newline == -1:
                return
            raw = self._buffer[:newline].strip()
            self._buffer = self._buffer[newline + 1 :]
            if raw:
                await self._handle_line(raw)

    async def _handle_line(self, raw: bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            log.warning("Failed to parse JSON-RPC payload: %s", exc)
            await self._emit("protocol_error", ValueError(f"Failed to parse JSON-RPC payload: {exc}"))
            return
        if not isinstance(message, dict):
            await self._emit("protocol_error", ValueError("JSON-RPC payload is not an object"))
            return

        msg_id = message.get("id")
        method = message.get("method")
        params = message.get("params") or {}

        # Classify by shape, not pending-id membership.
        if method is not None and msg_id is not None:
            await self._handle_server_request(msg_id, method, params)
        elif method is not None:
            await self._dispatch_notification(method, params)
        elif msg_id is not None:
            self._handle_response(msg_id, message)

    def _handle_response(self, msg_id: Any, message: dict[str, Any]) -> None:
        if not isinstance(msg_id, int) or msg_id not in self._pending:
            return
        method, future = self._pending.pop(msg_id)
        if future.done():
            return
        if "error" in message:
            future.set_exception(RPCError(message["error"] or {}, method=method))
            return
        future.set_result(message.get("result"))

    async def _handle_server_request(
        self, msg_id: int | str, method: str, params: dict[str, Any]
    ) -> None:
        if self.auto_approve and method in APPROVAL_RESPONSES:
            await self.respond(msg_id, APPROVAL_RESPONSES[method])
            await self._emit("approval_auto_accepted", method, params)
            return
        await self._emit("server_request", method, params, msg_id)
        log.warning("Unsupported server request: %s", method)
        await self.respond_error(
            msg_id, METHOD_NOT_FOUND, f"Unsupported server-initiated request: {method}"
        )

    async def _dispatch_notification(self, method: str, params: dict[str, Any]) -> None:
        if (
            self._tracking_token_usage
            and method == "thread/tokenUsage/updated"
            and isinstance(params.get("threadId"), str)
        ):
            self._token_usage[params["threadId"]] = params
            await self._emit("token_usage", params)
        await self._emit("notification", method, params)
        for handler in list(self._notification_handlers.get(method, [])):
            await self._call(handler, params)
