"""Tests for the isolated runner: wire protocol, worker pieces and the client end to end."""

import asyncio
import signal
import sys
from types import SimpleNamespace
from typing import Any

import pytest

from codenode.engines.code import IsolatedRunnerClient, SandboxState, build_helper_context
from codenode.engines.code.errors import SandboxStateError
from codenode.engines.code.runner import ProtocolError, decode_message, encode_message
from codenode.engines.code.runner import protocol
from codenode.engines.code.runner.worker import HelperProxy
from codenode.models_code import (
    CodeExecutionModeEnum,
    CodeLanguageEnum,
    CodeUnit,
    ErrorKindEnum,
    InputItem,
    Quota,
)

_NATIVE = CodeLanguageEnum.PYTHON_NATIVE


def _items(*values: int) -> list[InputItem]:
    return [InputItem(data={"value": v}, index=i) for i, v in enumerate(values)]


def _run(
    source: str,
    items: list[InputItem] | None = None,
    *,
    language: CodeLanguageEnum = CodeLanguageEnum.PYTHON,
    timeout_ms: int = 5000,
    grace_ms: int | None = None,
    item_index: int | None = None,
    helpers: dict[str, Any] | None = None,
):
    mode = (
        CodeExecutionModeEnum.RUN_ONCE_FOR_EACH_ITEM
        if item_index is not None
        else CodeExecutionModeEnum.RUN_ONCE_FOR_ALL_ITEMS
    )
    unit = CodeUnit(source_text=source, language=language, execution_mode=mode)
    client = IsolatedRunnerClient(Quota(timeout_ms=timeout_ms), grace_ms=grace_ms)
    ctx = build_helper_context(unit, items or [], item_index=item_index, helpers=helpers)
    return client, asyncio.run(client.run(unit, ctx))


class TestProtocol:
    def test_encode_is_one_line(self) -> None:
        data = encode_message(protocol.LOG, entry={"message": "a\nb"})
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1

    def test_decode(self) -> None:
        msg = decode_message(encode_message(protocol.RESULT, items=[]), protocol.WORKER_TO_HOST)
        assert msg == {"type": "result", "items": []}

    def test_encode_unknown_type(self) -> None:
        with pytest.raises(ProtocolError):
            encode_message("shell")

    def test_decode_invalid_json(self) -> None:
        with pytest.raises(ProtocolError, match="Invalid JSON"):
            decode_message(b"{not json")

    def test_decode_wrong_direction(self) -> None:
        with pytest.raises(ProtocolError, match="Unexpected message type"):
            decode_message(encode_message(protocol.TASK, code=""), protocol.WORKER_TO_HOST)

    def test_decode_requires_type(self) -> None:
        with pytest.raises(ProtocolError):
            decode_message(b"[1, 2]")


class TestHelperProxy:
    def test_dotted_names(self) -> None:
        calls: list = []
        channel = SimpleNamespace(call=lambda name, args, kwargs: calls.append((name, args, kwargs)) or 7)
        proxy = HelperProxy(channel, "api")  # type: ignore[arg-type]
        assert proxy.users.get(1, full=True) == 7
        assert calls == [("api.users.get", (1,), {"full": True})]

    def test_private_attributes_refused(self) -> None:
        proxy = HelperProxy(SimpleNamespace(), "api")  # type: ignore[arg-type]
        with pytest.raises(AttributeError):
            proxy._secret


class TestRunnerClient:
    def test_python_success(self) -> None:
        src = "return [{'json': {'value': i['json']['value'] * 2}} for i in items]"
        client, outcome = _run(src, _items(1, 2))
        assert outcome.ok, outcome.error
        assert [o.data for o in outcome.result_items] == [{"value": 2}, {"value": 4}]
        assert [o.paired_item_index for o in outcome.result_items] == [0, 1]
        assert client.state == SandboxState.COMPLETED

    def test_per_item_pairing(self) -> None:
        _, outcome = _run(
            "return {'v': item['json']['value']}",
            [InputItem(data={"value": 5}, index=3)],
            item_index=3,
        )
        assert outcome.result_items[0].data == {"v": 5}
        assert outcome.result_items[0].paired_item_index == 3

    def test_helper_rpc(self) -> None:
        helpers = {
            "double": lambda x: x * 2,
            "calc": SimpleNamespace(add=lambda a, b: a + b),
        }
        _, outcome = _run("return {'d': double(21), 's': calc.add(1, 2)}", helpers=helpers)
        assert outcome.ok, outcome.error
        assert outcome.result_items[0].data == {"d": 42, "s": 3}

    def test_helper_error_surfaces_in_code(self) -> None:
        def broken() -> None:
            raise ValueError("nope")

        _, outcome = _run("return {'v': broken()}", helpers={"broken": broken})
        assert outcome.error.kind == ErrorKindEnum.SCRIPT_RUNTIME
        assert "ValueError: nope" in outcome.error.message

    def test_logs_forwarded(self) -> None:
        _, outcome = _run("log.info('one')\nprint('two')\nreturn []")
        assert [e.message for e in outcome.captured_log] == ["one", "two"]

    def test_native_print_and_builtins(self) -> None:
        src = "print('native', 1)\nreturn [{'t': type(1).__name__}]"
        _, outcome = _run(src, language=_NATIVE)
        assert outcome.ok, outcome.error
        assert outcome.result_items[0].data == {"t": "int"}
        assert [e.message for e in outcome.captured_log] == ["native 1"]

    def test_native_import_denied(self) -> None:
        _, outcome = _run("import os\nreturn []", language=_NATIVE)
        assert outcome.error.kind == ErrorKindEnum.CAPABILITY_DENIED

    def test_native_open_removed(self) -> None:
        _, outcome = _run("return open('/etc/passwd').read()", language=_NATIVE)
        assert outcome.error.message.startswith("NameError")

    @pytest.mark.parametrize(
        "source",
        [
            "return [{'n': len([c for c in ().__class__.__base__.__subclasses__() if c.__name__ == '_wrap_close'])}]",
            "return [{'g': str(log.info.__func__.__globals__)}]",
            "def gen():\n    yield 1\nreturn [{'f': str(gen().gi_frame.f_globals)}]",
        ],
    )
    def test_native_introspection_rejected(self, source: str) -> None:
        _, outcome = _run(source, language=_NATIVE)
        assert outcome.error.kind == ErrorKindEnum.SCRIPT_RUNTIME
        assert outcome.error.message.startswith("SyntaxError")

    @pytest.mark.parametrize(
        "source",
        [
            "import uuid\nreturn [{'cwd': uuid.os.getcwd()}]",
            "from uuid import os\nreturn [{'cwd': os.getcwd()}]",
            "return [{'b': str(getattr(len, '__self__'))}]",
        ],
    )
    def test_native_capability_escape_denied(self, source: str) -> None:
        _, outcome = _run(source, language=_NATIVE)
        assert outcome.error.kind == ErrorKindEnum.CAPABILITY_DENIED
        assert outcome.result_items is None

    def test_native_classes_still_work(self) -> None:
        src = (
            "class Base:\n"
            "    def __init__(self, v):\n"
            "        self.v = v\n"
            "class Child(Base):\n"
            "    def __init__(self, v):\n"
            "        super().__init__(v * 2)\n"
            "return [{'v': Child(item['json']['value']).v, 'c': type(Child(0)).__name__} for item in items]"
        )
        _, outcome = _run(src, _items(1, 2), language=_NATIVE)
        assert outcome.ok, outcome.error
        assert [o.data for o in outcome.result_items] == [{"v": 2, "c": "Child"}, {"v": 4, "c": "Child"}]

    def test_script_error(self) -> None:
        client, outcome = _run("x = 1\nreturn x / 0")
        assert outcome.error.kind == ErrorKindEnum.SCRIPT_RUNTIME
        assert outcome.error.message == "ZeroDivisionError: division by zero [line 2]"
        assert client.state == SandboxState.FAULTED

    @pytest.mark.skipif(not hasattr(signal, "SIGALRM"), reason="SIGALRM not available (e.g. Windows)")
    def test_timeout(self) -> None:
        client, outcome = _run("while True:\n    pass", timeout_ms=300)
        assert outcome.error.kind == ErrorKindEnum.TIMEOUT
        assert client.state == SandboxState.TIMED_OUT

    def test_uninterruptible_code_is_killed(self) -> None:
        _, outcome = _run("return [{'s': sum(range(10 ** 13))}]", language=_NATIVE, timeout_ms=200, grace_ms=300)
        assert outcome.error.kind == ErrorKindEnum.TIMEOUT

    def test_crash_reports_exit_code(self) -> None:
        client, outcome = _run("raise SystemExit(3)", language=_NATIVE)
        assert outcome.error.kind == ErrorKindEnum.WORKER_CRASH
        assert outcome.error.details["exit_code"] == 3
        assert client.state == SandboxState.FAULTED

    def test_missing_interpreter(self) -> None:
        unit = CodeUnit(source_text="return []")
        client = IsolatedRunnerClient(Quota(timeout_ms=1000), python_executable="/nonexistent/python3")
        outcome = asyncio.run(client.run(unit, build_helper_context(unit, [])))
        assert outcome.error.kind == ErrorKindEnum.WORKER_CRASH
        assert "Failed to start runner" in outcome.error.message

    def test_reuse_rejected(self) -> None:
        client, _ = _run("return []")
        unit = CodeUnit(source_text="return []")
        with pytest.raises(SandboxStateError):
            asyncio.run(client.run(unit, build_helper_context(unit, [])))


class TestResourceLimits:
    def test_limits_sent_with_task(self) -> None:
        unit = CodeUnit(source_text="return []")
        client = IsolatedRunnerClient(
            Quota(timeout_ms=1000), grace_ms=500, memory_limit_mb=256, max_open_files=32
        )
        task = decode_message(client._task_payload(unit, build_helper_context(unit, [])))
        assert task["limits"] == {"memory_mb": 256, "cpu_sec": 3, "open_files": 32}

    @pytest.mark.skipif(sys.platform != "linux", reason="RLIMIT_AS is only enforced on Linux")
    def test_allocation_over_memory_limit_fails(self) -> None:
        unit = CodeUnit(source_text="b = bytearray(8 * 1024 ** 3)\nreturn []", language=_NATIVE)
        client = IsolatedRunnerClient(Quota(timeout_ms=5000), memory_limit_mb=768)
        outcome = asyncio.run(client.run(unit, build_helper_context(unit, [])))
        assert outcome.error is not None
        assert outcome.error.kind in (ErrorKindEnum.SCRIPT_RUNTIME, ErrorKindEnum.WORKER_CRASH)
        if outcome.error.kind == ErrorKindEnum.SCRIPT_RUNTIME:
            assert outcome.error.message.startswith("MemoryError")
