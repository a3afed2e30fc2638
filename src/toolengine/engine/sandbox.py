"""Sandbox: the only place handler code runs.

``LocalSandbox`` dispatches on the handler reference type:

* :class:`InProcessFunction`: coroutine functions are awaited, plain
  callables run in a worker thread.
* :class:`ShellCommand`: an asyncio subprocess with rlimits applied in
  the child, terminated (then killed) on timeout or cancellation.
* :class:`RemoteCall`: an ``httpx`` request, only to allowlisted hosts.

Whatever the handler does, ``execute`` returns within
``timeout + grace_period``.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import logging
import os
import string
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx

from toolengine.core.errors import ConfigError, ErrorKind, SandboxError
from toolengine.tools.base import InProcessFunction, RemoteCall, ShellCommand

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from toolengine.tools.base import HandlerRef, ResourceLimits

logger = logging.getLogger(__name__)


# ── Outcome and cancellation ──────────────────────────────────


@dataclass(frozen=True, slots=True)
class Outcome:
    """What one execution attempt produced.

    Handlers may return an ``Outcome`` themselves to report a failure
    kind without raising. ``lingering`` is set when the handler could
    not be stopped and is still running; it resolves once it returns.
    """

    value: Any = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    lingering: asyncio.Future[Any] | None = field(
        default=None, compare=False, repr=False
    )

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, value: Any) -> Outcome:
        return cls(value=value)

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> Outcome:
        return cls(error_kind=kind, message=message)


class CancelToken:
    """Cooperative cancellation signal for one invocation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class Sandbox(Protocol):
    """Protocol for execution backends used by the scheduler."""

    async def execute(
        self,
        handler: HandlerRef,
        parameters: Mapping[str, Any],
        *,
        limits: ResourceLimits,
        timeout: float,
        cancel_token: CancelToken,
    ) -> Outcome:
        """Run ``handler`` and report the outcome. Never raises."""
        ...

    async def aclose(self) -> None:
        """Release backend resources."""
        ...


# ── Exception classification ──────────────────────────────────


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a handler exception to a result error kind."""
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, TimeoutError | httpx.TimeoutException):
        return ErrorKind.SANDBOX_TIMEOUT
    if isinstance(exc, ConnectionError | httpx.TransportError):
        return ErrorKind.CONNECTION_ERROR
    return ErrorKind.HANDLER_ERROR


class _ArgvFormatter(string.Formatter):
    """``{name}`` substitution that fails loudly on unknown names."""

    def get_value(self, key: int | str, args: Any, kwargs: Any) -> Any:
        if isinstance(key, str) and key not in kwargs:
            msg = f"argv placeholder {{{key}}} has no matching parameter"
            raise SandboxError(msg)
        return super().get_value(key, args, kwargs)


_ARGV = _ArgvFormatter()


def _host_allowed(host: str, allowlist: tuple[str, ...]) -> bool:
    for entry in allowlist:
        entry = entry.lower()
        if entry == "*" or host == entry:
            return True
        if entry.startswith(".") and host.endswith(entry):
            return True
    return False


def _make_preexec(limits: ResourceLimits) -> Callable[[], None] | None:
    """Build a child-side hook applying rlimits, or None if unlimited."""
    if (
        limits.cpu_seconds is None
        and limits.memory_bytes is None
        and limits.open_files is None
    ) or os.name != "posix":
        return None

    def _apply() -> None:
        import resource

        if limits.cpu_seconds is not None:
            resource.setrlimit(
                resource.RLIMIT_CPU, (limits.cpu_seconds, limits.cpu_seconds)
            )
        if limits.memory_bytes is not None:
            resource.setrlimit(
                resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes)
            )
        if limits.open_files is not None:
            resource.setrlimit(
                resource.RLIMIT_NOFILE, (limits.open_files, limits.open_files)
            )

    return _apply


class LocalSandbox:
    """Sandbox running handlers on the local host.

    Args:
        max_output: Maximum characters kept from subprocess output.
        grace_period: Seconds a cancelled handler gets to stop before
            it is killed (subprocesses) or abandoned (threads).
        http_client: Optional preconfigured client for remote calls.
    """

    def __init__(
        self,
        *,
        max_output: int = 10_000,
        grace_period: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.max_output = max_output
        self.grace_period = grace_period
        self._client = http_client
        self._owns_client = http_client is None
        self._dispatch: dict[
            type, Callable[[Any, Mapping[str, Any], ResourceLimits], Awaitable[Any]]
        ] = {
            InProcessFunction: self._run_function,
            ShellCommand: self._run_shell,
            RemoteCall: self._run_remote,
        }

    async def execute(
        self,
        handler: HandlerRef,
        parameters: Mapping[str, Any],
        *,
        limits: ResourceLimits,
        timeout: float,
        cancel_token: CancelToken,
    ) -> Outcome:
        runner = self._dispatch.get(type(handler))
        if runner is None:
            msg = f"Unsupported handler type: {type(handler).__name__}"
            return Outcome.error(ErrorKind.HANDLER_ERROR, msg)
        if cancel_token.cancelled:
            return Outcome.error(ErrorKind.CANCELLED, "Cancelled before start")

        task = asyncio.ensure_future(runner(handler, parameters, limits))
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if task in done:
            return self._to_outcome(task)

        if cancel_token.cancelled:
            outcome = Outcome.error(ErrorKind.CANCELLED, "Cancelled while running")
        else:
            outcome = Outcome.error(
                ErrorKind.SANDBOX_TIMEOUT, f"Execution timed out after {timeout}s"
            )
        if not await self._stop(task):
            outcome = replace(outcome, lingering=task)
        return outcome

    async def _stop(self, task: asyncio.Future[Any]) -> bool:
        """Cancel a running handler and wait up to the grace period.

        Returns:
            False if the handler is still running and was abandoned.
        """
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.grace_period)
        if done:
            return True
        logger.warning(
            "Handler did not stop within %.1fs grace period; abandoning it",
            self.grace_period,
        )
        task.add_done_callback(_consume_result)
        return False

    def _to_outcome(self, task: asyncio.Future[Any]) -> Outcome:
        if task.cancelled():
            return Outcome.error(ErrorKind.CANCELLED, "Handler was cancelled")
        exc = task.exception()
        if exc is not None:
            return Outcome.error(classify_exception(exc), str(exc) or type(exc).__name__)
        value = task.result()
        if isinstance(value, Outcome):
            return value
        return Outcome.success(value)

    # ── In-process functions ─────────────────────────────────

    async def _run_function(
        self,
        handler: InProcessFunction,
        parameters: Mapping[str, Any],
        limits: ResourceLimits,
    ) -> Any:
        try:
            fn = handler.resolve()
        except ConfigError as e:
            raise SandboxError(str(e)) from e
        if inspect.iscoroutinefunction(fn):
            return await fn(**parameters)
        work = asyncio.get_running_loop().run_in_executor(
            None, functools.partial(fn, **parameters)
        )
        try:
            result = await asyncio.shield(work)
        except asyncio.CancelledError:
            # Threads cannot be interrupted; stay pending until this one returns.
            await asyncio.wait({work})
            _consume_result(work)
            raise
        if inspect.isawaitable(result):
            return await result
        return result

    # ── Shell commands ───────────────────────────────────────

    async def _run_shell(
        self,
        handler: ShellCommand,
        parameters: Mapping[str, Any],
        limits: ResourceLimits,
    ) -> Outcome:
        str_params = {k: _stringify(v) for k, v in parameters.items()}
        argv = [_ARGV.vformat(arg, (), str_params) for arg in handler.argv]
        stdin_data: bytes | None = None
        if handler.stdin_param is not None:
            stdin_data = str_params.get(handler.stdin_param, "").encode()

        env = None
        if handler.env is not None:
            env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), **handler.env}

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=handler.cwd,
                preexec_fn=_make_preexec(limits),
            )
        except OSError as exc:
            return Outcome.error(
                ErrorKind.HANDLER_ERROR, f"Failed to start process: {exc}"
            )

        try:
            stdout, stderr = await proc.communicate(stdin_data)
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        out = self._truncate(stdout.decode(errors="replace"))
        if proc.returncode != 0:
            err = self._truncate(stderr.decode(errors="replace")).strip()
            detail = err or out.strip() or "(no output)"
            return Outcome.error(
                ErrorKind.HANDLER_ERROR,
                f"Exit code {proc.returncode}: {detail}",
            )
        return Outcome.success(out.rstrip("\n"))

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if still alive halfway through the grace."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period / 2)
        except ProcessLookupError:
            return
        except TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    def _truncate(self, text: str) -> str:
        """Truncate output to max_output characters."""
        if len(text) <= self.max_output:
            return text
        half = self.max_output // 2
        return (
            text[:half]
            + f"\n\n... [truncated {len(text) - self.max_output} chars] ...\n\n"
            + text[-half:]
        )

    # ── Remote calls ─────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def _run_remote(
        self,
        handler: RemoteCall,
        parameters: Mapping[str, Any],
        limits: ResourceLimits,
    ) -> Outcome:
        host = (urlparse(handler.url).hostname or "").lower()
        if not _host_allowed(host, limits.network_allowlist):
            return Outcome.error(
                ErrorKind.PERMISSION_DENIED,
                f"Host {host or handler.url!r} is not in the network allowlist",
            )

        method = handler.method.upper()
        kwargs: dict[str, Any] = {"headers": dict(handler.headers)}
        if method in {"GET", "DELETE"}:
            kwargs["params"] = {k: _stringify(v) for k, v in parameters.items()}
        else:
            kwargs["json"] = dict(parameters)

        response = await self._http().request(method, handler.url, **kwargs)

        if response.status_code >= 500:
            return Outcome.error(
                ErrorKind.CONNECTION_ERROR,
                f"HTTP {response.status_code} from {host}",
            )
        if response.status_code in {401, 403}:
            return Outcome.error(
                ErrorKind.PERMISSION_DENIED,
                f"HTTP {response.status_code} from {host}",
            )
        if response.status_code >= 400:
            return Outcome.error(
                ErrorKind.HANDLER_ERROR,
                f"HTTP {response.status_code}: {self._truncate(response.text)}",
            )
        try:
            return Outcome.success(response.json())
        except ValueError:
            return Outcome.success(self._truncate(response.text))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _consume_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()
