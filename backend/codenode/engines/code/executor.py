"""
InProcessSandbox: run a CodeUnit inside the host process with RestrictedPython.

One instance serves exactly one invocation:
IDLE -> RUNNING -> COMPLETED | TIMED_OUT | FAULTED. Reuse raises SandboxStateError.

The deadline is enforced with SIGALRM (setitimer) on the main thread and with an
asynchronous-exception watchdog in any other thread. On expiry the log capture
is sealed, so nothing the abandoned code does afterwards is observable.
"""

import ast
import asyncio
import ctypes
import logging
import signal
import threading
import time
import traceback
from collections.abc import Callable
from enum import Enum
from typing import Any

from codenode.core.config import settings
from codenode.models_code import CodeExecutionModeEnum, CodeUnit, ExecutionOutcome, OutputItem, Quota

from .context import HelperContext
from .errors import (
    CapabilityDeniedError,
    CodeExecutionError,
    SandboxStateError,
    ScriptRuntimeError,
    ScriptTimeoutError,
)
from .modules import make_print_collector
from .output import normalize_all_items, normalize_each_item
from .sandbox import (
    CODE_FUNCTION_NAME,
    EXPORT_NAME,
    build_restricted_globals,
    compile_script,
    export_final_expression,
    make_guarded_getattr,
    wrap_code_body,
)
from .whitelist import Whitelist, get_whitelist, make_guarded_import

_log = logging.getLogger(__name__)

CODE_FILENAME = "<code>"
# Re-raise interval after the deadline fired, until the guard is disarmed
_RETRIGGER_SEC = 0.05

_set_async_exc = ctypes.pythonapi.PyThreadState_SetAsyncExc


class SandboxState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAULTED = "faulted"


class DeadlineExpired(BaseException):
    """Raised into user code when the deadline fires; converted to ScriptTimeoutError."""

    pass


class Deadline:
    """
    Context manager that interrupts the current thread after *timeout_sec*, then
    again every _RETRIGGER_SEC until it is closed, so a handler that survives one
    DeadlineExpired meets the next.
    """

    def __init__(self, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        self.expired = False
        self._armed = False
        self._use_alarm = (
            hasattr(signal, "SIGALRM")
            and threading.current_thread() is threading.main_thread()
        )
        self._old_handler: Any = None
        self._thread_id: int | None = None
        self._stop = threading.Event()
        self._watchdog: threading.Thread | None = None

    def __enter__(self) -> "Deadline":
        self._armed = True
        if self._use_alarm:
            self._old_handler = signal.signal(signal.SIGALRM, self._on_alarm)
            signal.setitimer(signal.ITIMER_REAL, self.timeout_sec, _RETRIGGER_SEC)
        else:
            self._thread_id = threading.get_ident()
            self._watchdog = threading.Thread(
                target=self._watch, name="codenode-deadline", daemon=True
            )
            self._watchdog.start()
        return self

    def _on_alarm(self, signum: int, frame: Any) -> None:
        if not self._armed:
            return
        self.expired = True
        raise DeadlineExpired

    def _watch(self) -> None:
        if self._stop.wait(self.timeout_sec):
            return
        while self._armed:
            self.expired = True
            _set_async_exc(ctypes.c_ulong(self._thread_id), ctypes.py_object(DeadlineExpired))
            if self._stop.wait(_RETRIGGER_SEC):
                return

    def _disarm(self) -> None:
        self._armed = False
        if self._use_alarm:
            signal.setitimer(signal.ITIMER_REAL, 0)
            signal.signal(signal.SIGALRM, self._old_handler)
            return
        self._stop.set()
        if self._watchdog is not None:
            self._watchdog.join()
        # Drop an exception the watchdog queued but the thread has not seen yet
        _set_async_exc(ctypes.c_ulong(self._thread_id), None)

    def close(self) -> None:
        while True:
            try:
                self._disarm()
                return
            except DeadlineExpired:
                continue

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        self.close()
        return False


def _syntax_message(exc: SyntaxError) -> str:
    first = exc.args[0] if exc.args else exc.msg
    if isinstance(first, (list, tuple)):
        return "SyntaxError: " + "; ".join(str(e) for e in first)
    if exc.lineno is not None:
        return f"SyntaxError: {exc.msg} (line {exc.lineno})"
    return f"SyntaxError: {first}"


def _user_line(exc: BaseException) -> int | None:
    """Innermost line of user code in the traceback."""
    line = None
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename == CODE_FILENAME:
            line = frame.lineno
    return line


def _describe(exc: BaseException) -> str:
    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    line = _user_line(exc)
    return f"{message} [line {line}]" if line is not None else message


class InProcessSandbox:
    """
    RestrictedPython backend. ``denials`` may be shared by the sandboxes of one
    logical operation so that a denial in an earlier phase still fails a later one.
    """

    def __init__(
        self,
        quota: Quota,
        *,
        whitelist: Whitelist | None = None,
        denials: list[CapabilityDeniedError] | None = None,
    ) -> None:
        self.quota = quota
        if whitelist is not None:
            self._whitelist = whitelist
        elif quota.allowed_capabilities:
            self._whitelist = Whitelist(quota.allowed_capabilities)
        else:
            self._whitelist = get_whitelist()
        self._denials = denials if denials is not None else []
        self._state = SandboxState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SandboxState:
        return self._state

    def _begin(self) -> None:
        with self._lock:
            if self._state != SandboxState.IDLE:
                raise SandboxStateError(
                    f"Sandbox instance is {self._state.value}; create a new one per invocation"
                )
            self._state = SandboxState.RUNNING

    def _settle(self, state: SandboxState) -> None:
        with self._lock:
            if self._state == SandboxState.RUNNING:
                self._state = state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, code_unit: CodeUnit, context: HelperContext) -> ExecutionOutcome:
        """
        Run in a daemon thread. The thread enforces the deadline itself; the
        outer wait adds CODE_RUNNER_GRACE_MS for code stuck inside a C call.
        """
        self._begin()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ExecutionOutcome] = loop.create_future()

        def _deliver(result: ExecutionOutcome | None, exc: BaseException | None) -> None:
            if future.done():
                return
            if exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(result)

        def _target() -> None:
            result, error = None, None
            try:
                result = self._execute(code_unit, context)
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(_deliver, result, error)
            except RuntimeError:
                _log.debug("Event loop closed before sandbox result was delivered")

        threading.Thread(target=_target, name="codenode-sandbox", daemon=True).start()
        limit = self.quota.timeout_sec + settings.CODE_RUNNER_GRACE_MS / 1000.0
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.CancelledError:
            context.capture.seal()
            self._settle(SandboxState.FAULTED)
            raise
        except asyncio.TimeoutError:
            context.capture.seal()
            self._settle(SandboxState.TIMED_OUT)
            _log.warning("Sandbox thread did not stop within the grace period; abandoned")
            error = self._timeout_error(context)
            return ExecutionOutcome(
                error=error.descriptor(),
                captured_log=context.capture.entries(),
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
            )

    def run_sync(self, code_unit: CodeUnit, context: HelperContext) -> ExecutionOutcome:
        self._begin()
        return self._execute(code_unit, context)

    def invoke(self, context: HelperContext, fn: Callable[..., Any], *args: Any) -> ExecutionOutcome:
        """
        Call a host-side callable (typically something compiled by an earlier
        sandbox) under this instance's deadline. The return value is in
        ``outcome.exported``.
        """
        self._begin()
        started = time.perf_counter()
        mark = len(self._denials)
        value, error = None, None
        try:
            with Deadline(self.quota.timeout_sec):
                value = fn(*args)
        except DeadlineExpired:
            error = self._timeout_error(context)
        except CodeExecutionError as e:
            error = e
        except Exception as e:
            error = ScriptRuntimeError(_describe(e))
        return self._finish(context, started, mark, exported=value, error=error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _timeout_error(self, context: HelperContext) -> ScriptTimeoutError:
        context.capture.seal()
        return ScriptTimeoutError(
            f"Execution timed out after {self.quota.timeout_ms} ms",
            item_index=context.item_index,
        )

    def _compile(self, source: ast.Module) -> Any:
        return compile_script(source, CODE_FILENAME)

    def _build_globals(self, context: HelperContext) -> dict[str, Any]:
        importer = make_guarded_import(self._whitelist, self._denials.append)
        getattr_guard = make_guarded_getattr(self._whitelist, self._denials.append)
        return build_restricted_globals(
            context.to_namespace(),
            importer=importer,
            getattr_guard=getattr_guard,
            print_collector=make_print_collector(context.capture),
        )

    def _execute(self, code_unit: CodeUnit, context: HelperContext) -> ExecutionOutcome:
        started = time.perf_counter()
        mark = len(self._denials)
        definition = code_unit.execution_mode == CodeExecutionModeEnum.DEFINITION
        items: list[OutputItem] | None = None
        exported: Any = None
        error: CodeExecutionError | None = None
        try:
            if definition:
                code = self._compile(export_final_expression(code_unit.source_text))
            else:
                code = self._compile(wrap_code_body(code_unit.source_text))
            g = self._build_globals(context)
            with Deadline(self.quota.timeout_sec):
                exec(code, g)
                if definition:
                    exported = g.get(EXPORT_NAME)
                else:
                    exported = g[CODE_FUNCTION_NAME]()
            if not definition:
                items = self._shape(code_unit, context, exported)
                exported = None
        except DeadlineExpired:
            error = self._timeout_error(context)
        except SyntaxError as e:
            error = ScriptRuntimeError(_syntax_message(e))
        except CodeExecutionError as e:
            error = e
        except Exception as e:
            error = ScriptRuntimeError(_describe(e))
        return self._finish(context, started, mark, items=items, exported=exported, error=error)

    def _shape(self, code_unit: CodeUnit, context: HelperContext, value: Any) -> list[OutputItem]:
        if code_unit.per_item:
            index = context.items[0].index if context.items else 0
            item = normalize_each_item(value, index)
            return [item] if item is not None else []
        return normalize_all_items(value, len(context.items))

    def _finish(
        self,
        context: HelperContext,
        started: float,
        mark: int,
        *,
        items: list[OutputItem] | None = None,
        exported: Any = None,
        error: CodeExecutionError | None = None,
    ) -> ExecutionOutcome:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        denied = self._denials[mark:]
        if denied and not isinstance(error, ScriptTimeoutError):
            # A denial fails the run even when user code caught it
            error = denied[0]
        if error is not None and error.item_index is None and context.item_index is not None:
            error.item_index = context.item_index

        if isinstance(error, ScriptTimeoutError):
            self._settle(SandboxState.TIMED_OUT)
            _log.warning("Code execution timed out after %s ms", self.quota.timeout_ms)
        elif error is not None:
            self._settle(SandboxState.FAULTED)
        else:
            self._settle(SandboxState.COMPLETED)

        return ExecutionOutcome(
            result_items=None if error is not None else items,
            error=error.descriptor() if error is not None else None,
            captured_log=context.capture.entries(),
            elapsed_ms=elapsed_ms,
            exported=None if error is not None else exported,
        )
