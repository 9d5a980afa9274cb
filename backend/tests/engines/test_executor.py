"""Tests for engines.executor (CodeExecutor)."""

import asyncio
import logging
import time
from unittest.mock import MagicMock, patch

import pytest

from codenode.engines import CodeExecutor, InProcessSandbox, IsolatedRunnerClient
from codenode.engines.code.errors import (
    CapabilityDeniedError,
    CodeNodeConfigError,
    NativePythonWithoutRunnerError,
    PythonDisabledError,
    ScriptRuntimeError,
    ScriptTimeoutError,
)
from codenode.models_code import (
    CodeExecutionModeEnum,
    CodeLanguageEnum,
    CodeUnit,
    ErrorKindEnum,
    RuntimeConfig,
)

_EACH = CodeExecutionModeEnum.RUN_ONCE_FOR_EACH_ITEM

_FAIL_ON_TWO = (
    "if item['json']['value'] == 2:\n"
    "    raise ValueError('bad value')\n"
    "return {'json': {'value': item['json']['value'] * 10}}\n"
)


def _batch(*values: int) -> list[dict]:
    return [{"json": {"value": v}} for v in values]


class TestRunOnceForAllItems:
    def test_doubles_values(self) -> None:
        unit = CodeUnit(source_text="return [{'json': {'value': i['json']['value'] * 2}} for i in items]")
        out = CodeExecutor().execute_sync(unit, _batch(1, 2, 3), RuntimeConfig())
        assert [o.to_external() for o in out] == [
            {"json": {"value": 2}, "pairedItem": {"item": 0}},
            {"json": {"value": 4}, "pairedItem": {"item": 1}},
            {"json": {"value": 6}, "pairedItem": {"item": 2}},
        ]

    def test_failure_raises(self) -> None:
        unit = CodeUnit(source_text="return 1 / 0")
        with pytest.raises(ScriptRuntimeError, match="ZeroDivisionError"):
            CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig())

    def test_failure_with_continue_on_fail(self) -> None:
        unit = CodeUnit(source_text="return 1 / 0")
        out = CodeExecutor().execute_sync(unit, _batch(1, 2), RuntimeConfig(continue_on_fail=True))
        assert len(out) == 1
        assert out[0].data == {"error": "ZeroDivisionError: division by zero [line 1]"}
        assert out[0].error.kind == ErrorKindEnum.SCRIPT_RUNTIME

    def test_denied_import_raises(self) -> None:
        unit = CodeUnit(source_text="import subprocess\nreturn []")
        with pytest.raises(CapabilityDeniedError):
            CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig())

    def test_timeout_raises(self) -> None:
        unit = CodeUnit(source_text="while True:\n    pass")
        with pytest.raises(ScriptTimeoutError, match="timed out after 200 ms"):
            CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig(timeout_ms=200))

    def test_captured_log_attached_to_error(self) -> None:
        unit = CodeUnit(source_text="log.info('before')\nreturn 1 / 0")
        with pytest.raises(ScriptRuntimeError) as exc_info:
            CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig())
        assert [e.message for e in exc_info.value.captured_log] == ["before"]

    def test_unpaired_output_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        unit = CodeUnit(source_text="return [{'total': len(items)}]")
        with caplog.at_level(logging.WARNING, logger="codenode.engines.executor"):
            out = CodeExecutor().execute_sync(unit, _batch(1, 2), RuntimeConfig())
        assert out[0].data == {"total": 2}
        assert "without pairing information" in caplog.text


class TestRunOnceForEachItem:
    def test_per_item_results(self) -> None:
        unit = CodeUnit(source_text="return {'v': item['json']['value'] + 1}", execution_mode=_EACH)
        out = CodeExecutor().execute_sync(unit, _batch(1, 2, 3), RuntimeConfig())
        assert [(o.data, o.paired_item_index) for o in out] == [
            ({"v": 2}, 0),
            ({"v": 3}, 1),
            ({"v": 4}, 2),
        ]

    def test_none_drops_item(self) -> None:
        src = "if item['json']['value'] % 2:\n    return None\nreturn item"
        unit = CodeUnit(source_text=src, execution_mode=_EACH)
        out = CodeExecutor().execute_sync(unit, _batch(1, 2, 3, 4), RuntimeConfig())
        assert [o.paired_item_index for o in out] == [1, 3]

    def test_continue_on_fail_keeps_going(self) -> None:
        unit = CodeUnit(source_text=_FAIL_ON_TWO, execution_mode=_EACH)
        out = CodeExecutor().execute_sync(unit, _batch(1, 2, 3), RuntimeConfig(continue_on_fail=True))
        assert [o.to_external() for o in out] == [
            {"json": {"value": 10}, "pairedItem": {"item": 0}},
            {"json": {"error": "ValueError: bad value [line 2]"}, "pairedItem": {"item": 1}},
            {"json": {"value": 30}, "pairedItem": {"item": 2}},
        ]
        assert out[1].error.item_index == 1

    def test_abort_reports_partial_items(self) -> None:
        unit = CodeUnit(source_text=_FAIL_ON_TWO, execution_mode=_EACH)
        with pytest.raises(ScriptRuntimeError) as exc_info:
            CodeExecutor().execute_sync(unit, _batch(1, 2, 3), RuntimeConfig())
        err = exc_info.value
        assert err.item_index == 1
        assert [o.data for o in err.partial_items] == [{"value": 10}]

    def test_order_kept_with_concurrency(self) -> None:
        # Earlier items sleep longer so they finish last
        unit = CodeUnit(
            source_text="pause(0.05 * (4 - item['json']['value']))\nreturn {'v': item['json']['value']}",
            execution_mode=_EACH,
        )
        out = CodeExecutor().execute_sync(
            unit,
            _batch(0, 1, 2, 3),
            RuntimeConfig(per_item_concurrency=4),
            helpers={"pause": time.sleep},
        )
        assert [o.data["v"] for o in out] == [0, 1, 2, 3]

    def test_items_isolated_between_runs(self) -> None:
        batch = _batch(1, 2)
        src = "item['json']['value'] = 0\nitem['json']['seen'] = len(item['json'])\nreturn item"
        unit = CodeUnit(source_text=src, execution_mode=_EACH)
        out = CodeExecutor().execute_sync(unit, batch, RuntimeConfig())
        assert [o.data for o in out] == [{"value": 0, "seen": 1}, {"value": 0, "seen": 1}]
        assert batch == _batch(1, 2)


class TestBackendSelection:
    def test_python_disabled(self) -> None:
        unit = CodeUnit(source_text="return []")
        with pytest.raises(PythonDisabledError, match="CODE_PYTHON_ENABLED"):
            CodeExecutor().execute_sync(unit, [], RuntimeConfig(python_enabled=False))

    def test_native_requires_runner(self) -> None:
        unit = CodeUnit(source_text="return []", language=CodeLanguageEnum.PYTHON_NATIVE)
        with pytest.raises(NativePythonWithoutRunnerError):
            CodeExecutor().execute_sync(unit, [], RuntimeConfig())

    def test_definition_mode_refused(self) -> None:
        unit = CodeUnit(source_text="1", execution_mode=CodeExecutionModeEnum.DEFINITION)
        with pytest.raises(ValueError):
            CodeExecutor().select_backend(unit, RuntimeConfig())

    def test_config_errors_share_base(self) -> None:
        assert issubclass(PythonDisabledError, CodeNodeConfigError)
        assert issubclass(NativePythonWithoutRunnerError, CodeNodeConfigError)

    def test_in_process_by_default(self) -> None:
        unit = CodeUnit(source_text="return []")
        backend = CodeExecutor().select_backend(unit, RuntimeConfig(timeout_ms=1234))
        assert isinstance(backend, InProcessSandbox)
        assert backend.quota.timeout_ms == 1234

    def test_runner_when_enabled(self) -> None:
        unit = CodeUnit(source_text="return []", language=CodeLanguageEnum.PYTHON_NATIVE)
        backend = CodeExecutor().select_backend(unit, RuntimeConfig(python_runner_enabled=True))
        assert isinstance(backend, IsolatedRunnerClient)

    def test_fresh_backend_per_call(self) -> None:
        unit = CodeUnit(source_text="return []")
        executor = CodeExecutor()
        assert executor.select_backend(unit, RuntimeConfig()) is not executor.select_backend(unit, RuntimeConfig())

    def test_native_through_runner(self) -> None:
        unit = CodeUnit(
            source_text="return [{'n': len(items), 'kind': type(items).__name__}]",
            language=CodeLanguageEnum.PYTHON_NATIVE,
        )
        out = CodeExecutor().execute_sync(unit, _batch(1, 2), RuntimeConfig(python_runner_enabled=True))
        assert out[0].data == {"n": 2, "kind": "list"}


class TestLogging:
    def test_on_log_receives_entries(self) -> None:
        seen: list = []
        unit = CodeUnit(source_text="log.info('hello')\nreturn []")
        CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig(), on_log=seen.append)
        assert [e.message for e in seen] == ["hello"]

    @patch("codenode.engines.executor.settings")
    def test_stdout_mirror(self, mock_settings: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
        mock_settings.CODE_ENABLE_STDOUT = True
        unit = CodeUnit(source_text="print('mirrored')\nreturn []")
        with caplog.at_level(logging.INFO, logger="codenode.engines.executor"):
            CodeExecutor().execute_sync(unit, _batch(1), RuntimeConfig())
        assert "[python:runOnceForAllItems] mirrored" in caplog.text


@patch("codenode.models_code.settings")
def test_runtime_config_from_settings(mock_settings: MagicMock) -> None:
    mock_settings.CODE_PYTHON_ENABLED = False
    mock_settings.CODE_PYTHON_RUNNER_ENABLED = True
    mock_settings.CODE_EXEC_TIMEOUT_MS = 1500
    mock_settings.CODE_PER_ITEM_CONCURRENCY = 3
    config = RuntimeConfig.from_settings(continue_on_fail=True)
    assert config.python_enabled is False
    assert config.python_runner_enabled is True
    assert config.timeout_ms == 1500
    assert config.per_item_concurrency == 3
    assert config.continue_on_fail is True


def test_concurrent_executions_do_not_share_state() -> None:
    unit = CodeUnit(source_text="log.info(str(len(items)))\nreturn [{'n': len(items)}]")
    logs: dict[int, list] = {1: [], 3: []}

    async def main() -> list:
        executor = CodeExecutor()
        return await asyncio.gather(
            executor.execute(unit, _batch(1), RuntimeConfig(), on_log=logs[1].append),
            executor.execute(unit, _batch(1, 2, 3), RuntimeConfig(), on_log=logs[3].append),
        )

    one, three = asyncio.run(main())
    assert one[0].data == {"n": 1}
    assert three[0].data == {"n": 3}
    assert [e.message for e in logs[1]] == ["1"]
    assert [e.message for e in logs[3]] == ["3"]
