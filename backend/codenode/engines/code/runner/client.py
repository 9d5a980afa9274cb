"""
IsolatedRunnerClient: run a CodeUnit in a short-lived worker subprocess.

One worker per invocation, never reused or retried. The client owns the
absolute deadline (timeout plus CODE_RUNNER_GRACE_MS, so the worker can report
its own timeout first): on expiry the worker is killed and reaped. The worker
also runs under address-space, CPU and open-file rlimits sent with the task.
"""

import asyncio
import inspect
import logging
import math
import os
import sys
import time
from collections import deque
from typing import Any

from codenode.core.config import settings
from codenode.models_code import (
    CodeUnit,
    ErrorDescriptor,
    ErrorKindEnum,
    ExecutionOutcome,
    LogEntry,
    OutputItem,
    Quota,
)

from ..context import HelperContext
from ..errors import CodeExecutionError, SandboxStateError, ScriptTimeoutError, WorkerCrashError
from ..executor import SandboxState
from ..output import standardize_output
from ..whitelist import get_whitelist
from . import protocol

_log = logging.getLogger(__name__)

WORKER_MODULE = "codenode.engines.code.runner.worker"
_STDERR_TAIL_LINES = 20
# Environment passed to the worker; nothing else from the host leaks through
_ENV_PASSTHROUGH = ("PATH", "LANG", "LC_ALL", "SYSTEMROOT", "TMPDIR", "TEMP", "TMP")


class _WorkerExited(Exception):
    pass


def _worker_env() -> dict[str, str]:
    env = {k: os.environ[k] for k in _ENV_PASSTHROUGH if k in os.environ}
    env["PYTHONPATH"] = os.pathsep.join(p for p in sys.path if p)
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONUNBUFFERED"] = "1"
    return env


def _resolve_helper(context: HelperContext, name: str) -> Any:
    head, *rest = name.split(".")
    if head not in context.helpers:
        raise LookupError(f"Unknown helper: {head}")
    target = context.helpers[head]
    for attr in rest:
        if not attr or attr.startswith("_"):
            raise LookupError(f"Invalid helper attribute: {attr!r}")
        target = getattr(target, attr)
    if not callable(target):
        raise TypeError(f"Helper '{name}' is not callable")
    return target


class IsolatedRunnerClient:
    """Runner backend; same contract as InProcessSandbox.run."""

    def __init__(
        self,
        quota: Quota,
        *,
        python_executable: str | None = None,
        grace_ms: int | None = None,
        memory_limit_mb: int | None = None,
        max_open_files: int | None = None,
    ) -> None:
        self.quota = quota
        self.python_executable = python_executable or settings.CODE_RUNNER_PYTHON or sys.executable
        self.grace_ms = grace_ms if grace_ms is not None else settings.CODE_RUNNER_GRACE_MS
        self.memory_limit_mb = (
            memory_limit_mb if memory_limit_mb is not None else settings.CODE_RUNNER_MEMORY_LIMIT_MB
        )
        self.max_open_files = (
            max_open_files if max_open_files is not None else settings.CODE_RUNNER_MAX_OPEN_FILES
        )
        self._state = SandboxState.IDLE
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def state(self) -> SandboxState:
        return self._state

    def _task_payload(self, code_unit: CodeUnit, context: HelperContext) -> bytes:
        allowed = self.quota.allowed_capabilities or get_whitelist().names
        return protocol.encode_message(
            protocol.TASK,
            code=code_unit.source_text,
            language=code_unit.language.value,
            mode=code_unit.execution_mode.value,
            timeout_ms=self.quota.timeout_ms,
            allowed_modules=sorted(allowed),
            context=context.to_wire(),
            limits=self._limits(),
        )

    def _limits(self) -> dict[str, int]:
        """rlimits the worker applies to itself; CPU seconds cover the whole absolute deadline."""
        return {
            "memory_mb": self.memory_limit_mb,
            "cpu_sec": math.ceil((self.quota.timeout_ms + self.grace_ms) / 1000.0) + 1,
            "open_files": self.max_open_files,
        }

    async def run(self, code_unit: CodeUnit, context: HelperContext) -> ExecutionOutcome:
        if self._state != SandboxState.IDLE:
            raise SandboxStateError(
                f"Runner client is {self._state.value}; create a new one per invocation"
            )
        self._state = SandboxState.RUNNING
        started = time.perf_counter()
        limit = (self.quota.timeout_ms + self.grace_ms) / 1000.0

        try:
            proc = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-m",
                WORKER_MODULE,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_worker_env(),
                limit=settings.CODE_RUNNER_MAX_MESSAGE_BYTES,
            )
        except OSError as e:
            _log.error("Failed to start runner worker: %s", e, exc_info=True)
            return self._finish(
                context, started, error=WorkerCrashError(f"Failed to start runner: {e}")
            )

        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        try:
            terminal = await asyncio.wait_for(self._converse(proc, code_unit, context), timeout=limit)
        except asyncio.TimeoutError:
            context.capture.seal()
            await self._kill(proc)
            await self._settle_stderr(stderr_task)
            return self._finish(
                context,
                started,
                error=ScriptTimeoutError(
                    f"Execution timed out after {self.quota.timeout_ms} ms",
                    item_index=context.item_index,
                ),
            )
        except (_WorkerExited, ConnectionResetError, BrokenPipeError):
            terminal = None
        except ValueError as e:
            # StreamReader limit overrun
            await self._kill(proc)
            await self._settle_stderr(stderr_task)
            return self._finish(
                context,
                started,
                error=WorkerCrashError(f"Runner protocol violation: {e}", item_index=context.item_index),
            )
        except asyncio.CancelledError:
            context.capture.seal()
            await self._kill(proc)
            stderr_task.cancel()
            self._state = SandboxState.FAULTED
            raise

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.grace_ms / 1000.0 or None)
        except asyncio.TimeoutError:
            await self._kill(proc)
            returncode = proc.returncode
        await self._settle_stderr(stderr_task)
        return self._conclude(context, started, terminal, returncode)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def _converse(
        self, proc: asyncio.subprocess.Process, code_unit: CodeUnit, context: HelperContext
    ) -> dict[str, Any] | None:
        """Send the task, then pump envelopes until result/error or EOF (None)."""
        assert proc.stdin is not None and proc.stdout is not None
        proc.stdin.write(self._task_payload(code_unit, context))
        await proc.stdin.drain()
        while True:
            line = await proc.stdout.readline()
            if not line:
                return None
            if not line.strip():
                continue
            try:
                msg = protocol.decode_message(line, protocol.WORKER_TO_HOST)
            except protocol.ProtocolError as e:
                _log.warning("Skipping malformed runner message: %s", e)
                continue
            kind = msg["type"]
            if kind == protocol.LOG:
                context.capture.append(LogEntry.model_validate(msg.get("entry") or {}))
            elif kind == protocol.CALL:
                await self._answer_call(proc, context, msg)
            else:
                return msg

    async def _answer_call(
        self, proc: asyncio.subprocess.Process, context: HelperContext, msg: dict[str, Any]
    ) -> None:
        assert proc.stdin is not None
        value, error = None, None
        try:
            fn = _resolve_helper(context, str(msg.get("name", "")))
            value = fn(*(msg.get("args") or []), **(msg.get("kwargs") or {}))
            if inspect.isawaitable(value):
                value = await value
            value = standardize_output(value)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        if proc.returncode is not None:
            raise _WorkerExited()
        proc.stdin.write(
            protocol.encode_message(protocol.CALL_RESULT, id=msg.get("id"), value=value, error=error)
        )
        await proc.stdin.drain()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    async def _settle_stderr(self, task: "asyncio.Task[None]") -> None:
        try:
            await asyncio.wait_for(task, timeout=1.0)
        except asyncio.TimeoutError:
            task.cancel()

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def _crash_details(self, returncode: int | None) -> dict[str, Any]:
        return {"exit_code": returncode, "stderr": "\n".join(self._stderr_tail)}

    def _conclude(
        self,
        context: HelperContext,
        started: float,
        terminal: dict[str, Any] | None,
        returncode: int | None,
    ) -> ExecutionOutcome:
        timeout_msg = f"Execution timed out after {self.quota.timeout_ms} ms"
        if terminal is not None and terminal["type"] == protocol.ERROR:
            descriptor = ErrorDescriptor.model_validate(terminal.get("error") or {})
            if descriptor.item_index is None:
                descriptor.item_index = context.item_index
            error = CodeExecutionError.from_descriptor(descriptor)
            return self._finish(context, started, error=error)
        if returncode == protocol.TIMEOUT_EXIT_CODE:
            return self._finish(
                context, started, error=ScriptTimeoutError(timeout_msg, item_index=context.item_index)
            )
        if terminal is None or returncode != 0:
            _log.warning("Runner worker exited with code %s without a result", returncode)
            return self._finish(
                context,
                started,
                error=WorkerCrashError(
                    f"Runner exited with code {returncode} before returning a result",
                    item_index=context.item_index,
                    details=self._crash_details(returncode),
                ),
            )
        items = [
            OutputItem(
                data=raw.get("json") or {},
                binary_attachments=raw.get("binary"),
                paired_item_index=raw.get("index"),
            )
            for raw in terminal.get("items") or []
        ]
        return self._finish(context, started, items=items)

    def _finish(
        self,
        context: HelperContext,
        started: float,
        *,
        items: list[OutputItem] | None = None,
        error: CodeExecutionError | None = None,
    ) -> ExecutionOutcome:
        if error is not None and error.kind == ErrorKindEnum.TIMEOUT:
            context.capture.seal()
            self._state = SandboxState.TIMED_OUT
            _log.warning("Runner execution timed out after %s ms", self.quota.timeout_ms)
        elif error is not None:
            self._state = SandboxState.FAULTED
        else:
            self._state = SandboxState.COMPLETED
        return ExecutionOutcome(
            result_items=None if error is not None else items,
            error=error.descriptor() if error is not None else None,
            captured_log=context.capture.entries(),
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )
