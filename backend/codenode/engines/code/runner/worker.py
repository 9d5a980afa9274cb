"""
Runner worker, started by IsolatedRunnerClient as
``python -m codenode.engines.code.runner.worker``.

Reads one task envelope from stdin, runs it and writes log/call envelopes
followed by exactly one result or error envelope. The protocol owns the
original stdout; anything the code prints at the OS level lands on stderr.

``python`` runs in the RestrictedPython sandbox; ``pythonNative`` runs as plain
Python with file/eval/exec/introspection builtins removed, imports limited to
the task's allowed modules and every attribute read checked by the same guard
(no dunder or frame access, no non-whitelisted modules). Injected helpers are
proxies that call back into the host.

Before the task runs the worker lowers its own rlimits (address space, CPU
seconds, open files) to the values the host put in the task envelope.
"""

import ast
import builtins
import logging
import os
import sys
import threading
from typing import Any, BinaryIO

from codenode.models_code import (
    CodeLanguageEnum,
    CodeUnit,
    ErrorKindEnum,
    InputItem,
    Quota,
)

from ..context import HelperContext, build_helper_context
from ..executor import CODE_FILENAME, InProcessSandbox
from ..modules import LogCapture, make_env_module, make_print_function
from ..sandbox import NATIVE_GETATTR_NAME, SANDBOX_MODULE_NAME, guard_native_source, make_guarded_getattr
from ..whitelist import make_guarded_import
from . import protocol

_log = logging.getLogger(__name__)

_REMOVED_BUILTINS = frozenset({
    "breakpoint",
    "compile",
    "eval",
    "exec",
    "exit",
    "globals",
    "help",
    "input",
    "locals",
    "open",
    "quit",
    "vars",
})
# The process exits on its own this long after the in-interpreter deadline
_HARD_EXIT_GRACE_SEC = 0.5


class Channel:
    """Worker end of the protocol stream."""

    def __init__(self, reader: BinaryIO, writer_fd: int) -> None:
        self._reader = reader
        self._fd = writer_fd
        self._lock = threading.Lock()
        self._next_id = 0

    def _write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            n = os.write(self._fd, view)
            view = view[n:]

    def send(self, kind: str, **payload: Any) -> None:
        data = protocol.encode_message(kind, **payload)
        with self._lock:
            self._write(data)

    def send_final(self, kind: str, **payload: Any) -> None:
        """Last message before a hard exit; a half-written line is terminated first."""
        data = b"\n" + protocol.encode_message(kind, **payload)
        self._lock.acquire(timeout=0.1)
        self._write(data)

    def receive(self) -> dict[str, Any]:
        line = self._reader.readline()
        if not line:
            raise EOFError("Host closed the protocol stream")
        return protocol.decode_message(line, protocol.HOST_TO_WORKER)

    def call(self, name: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        """Invoke a host helper and block until its call_result arrives."""
        self._next_id += 1
        call_id = self._next_id
        self.send(protocol.CALL, id=call_id, name=name, args=list(args), kwargs=kwargs)
        while True:
            msg = self.receive()
            if msg["type"] == protocol.CALL_RESULT and msg.get("id") == call_id:
                break
        if msg.get("error"):
            raise RuntimeError(msg["error"])
        return msg.get("value")


class HelperProxy:
    """Stands in for a host helper; ``proxy.get(...)`` calls ``helper.get`` on the host."""

    __slots__ = ("_channel", "_name")

    def __init__(self, channel: Channel, name: str) -> None:
        self._channel = channel
        self._name = name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._channel.call(self._name, args, kwargs)

    def __getattr__(self, attr: str) -> "HelperProxy":
        if attr.startswith("_"):
            raise AttributeError(attr)
        return HelperProxy(self._channel, f"{self._name}.{attr}")

    def __repr__(self) -> str:
        return f"<helper {self._name}>"


class NativeSandbox(InProcessSandbox):
    """Plain-Python variant; only ever runs inside the worker process."""

    def _compile(self, source: ast.Module) -> Any:
        return compile(guard_native_source(source), CODE_FILENAME, "exec")

    def _build_globals(self, context: HelperContext) -> dict[str, Any]:
        getattr_guard = make_guarded_getattr(self._whitelist, self._denials.append, native=True)
        safe = {k: v for k, v in vars(builtins).items() if k not in _REMOVED_BUILTINS}
        safe["__import__"] = make_guarded_import(self._whitelist, self._denials.append)
        safe["getattr"] = getattr_guard
        safe["print"] = make_print_function(context.capture)
        g: dict[str, Any] = {
            "__builtins__": safe,
            "__name__": SANDBOX_MODULE_NAME,
            NATIVE_GETATTR_NAME: getattr_guard,
        }
        g.update(context.to_namespace())
        return g


def build_context(task: dict[str, Any], code_unit: CodeUnit, channel: Channel) -> HelperContext:
    wire = task.get("context") or {}
    items = [
        InputItem.from_external(raw, raw.get("index", pos))
        for pos, raw in enumerate(wire.get("items") or [])
    ]
    helpers = {name: HelperProxy(channel, name) for name in wire.get("helpers") or []}
    env = None
    if wire.get("env") is not None:
        env = make_env_module(source=wire["env"], allowed_keys=wire["env"].keys())
    capture = LogCapture(
        lambda entry: channel.send(protocol.LOG, entry=entry.model_dump(mode="json"))
    )
    return build_helper_context(
        code_unit,
        items,
        item_index=wire.get("item_index"),
        helpers=helpers,
        env=env,
        capture=capture,
    )


def run_task(task: dict[str, Any], channel: Channel) -> int:
    code_unit = CodeUnit(
        source_text=task["code"],
        language=task["language"],
        execution_mode=task["mode"],
    )
    quota = Quota(
        timeout_ms=task["timeout_ms"],
        allowed_capabilities=frozenset(task.get("allowed_modules") or ()),
    )
    context = build_context(task, code_unit, channel)
    if code_unit.language == CodeLanguageEnum.PYTHON_NATIVE:
        sandbox: InProcessSandbox = NativeSandbox(quota)
    else:
        sandbox = InProcessSandbox(quota)
    outcome = sandbox.run_sync(code_unit, context)

    if outcome.error is not None:
        channel.send(protocol.ERROR, error=outcome.error.model_dump(mode="json"))
    else:
        channel.send(
            protocol.RESULT,
            items=[
                {**item.to_external(), "index": item.paired_item_index}
                for item in outcome.result_items or []
            ],
        )
    return 0


def _hard_exit(channel: Channel, timeout_ms: int) -> None:
    try:
        channel.send_final(
            protocol.ERROR,
            error={
                "kind": ErrorKindEnum.TIMEOUT.value,
                "message": f"Execution timed out after {timeout_ms} ms",
            },
        )
    finally:
        os._exit(protocol.TIMEOUT_EXIT_CODE)


def apply_resource_limits(limits: dict[str, Any]) -> None:
    """
    Lower this process's rlimits. Keys: ``memory_mb`` (address space),
    ``cpu_sec`` and ``open_files``; missing or zero values are left alone.
    """
    if os.name != "posix" or not limits:
        return
    import resource

    wanted = (
        (resource.RLIMIT_AS, int(limits.get("memory_mb") or 0) * 1024 * 1024),
        (resource.RLIMIT_CPU, int(limits.get("cpu_sec") or 0)),
        (resource.RLIMIT_NOFILE, int(limits.get("open_files") or 0)),
    )
    for limit, value in wanted:
        if value <= 0:
            continue
        _, hard = resource.getrlimit(limit)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        try:
            resource.setrlimit(limit, (value, hard if limit == resource.RLIMIT_CPU else value))
        except (ValueError, OSError) as e:
            _log.warning("Could not set rlimit %s to %s: %s", limit, value, e)


def main() -> int:
    logging.basicConfig(stream=sys.stderr, level=logging.WARNING)
    protocol_fd = os.dup(1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr
    channel = Channel(sys.stdin.buffer, protocol_fd)

    try:
        task = channel.receive()
    except (EOFError, protocol.ProtocolError) as e:
        _log.error("No valid task received: %s", e)
        return 2
    if task["type"] != protocol.TASK:
        _log.error("Expected a task envelope, got %r", task["type"])
        return 2

    timeout_ms = int(task.get("timeout_ms") or 0)
    watchdog = threading.Timer(
        timeout_ms / 1000.0 + _HARD_EXIT_GRACE_SEC, _hard_exit, args=(channel, timeout_ms)
    )
    watchdog.daemon = True
    watchdog.start()
    apply_resource_limits(task.get("limits") or {})
    try:
        return run_task(task, channel)
    except Exception:
        _log.exception("Runner task failed")
        return 1
    finally:
        watchdog.cancel()


if __name__ == "__main__":
    sys.exit(main())
