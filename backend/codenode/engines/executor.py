"""
Code execution coordinator: the entry point consumed by the workflow engine.

Selects a backend (InProcessSandbox or IsolatedRunnerClient) once per
execution, runs the code once per batch or once per item, turns failures into
error items (continue-on-fail) or a raised CodeExecutionError, and returns
OutputItems in a stable order.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

from codenode.core.config import settings
from codenode.engines.code import (
    InProcessSandbox,
    IsolatedRunnerClient,
    build_execution_context,
    get_whitelist,
)
from codenode.engines.code.context import HelperContext
from codenode.engines.code.errors import (
    CodeExecutionError,
    NativePythonWithoutRunnerError,
    PythonDisabledError,
)
from codenode.engines.code.modules import LogCapture
from codenode.models_code import (
    CodeExecutionModeEnum,
    CodeLanguageEnum,
    CodeUnit,
    ExecutionOutcome,
    InputItem,
    LogEntry,
    OutputItem,
    Quota,
    RuntimeConfig,
)

_log = logging.getLogger(__name__)


class SandboxBackend(Protocol):
    """One-shot backend: one ``run`` per instance."""

    quota: Quota

    async def run(self, code_unit: CodeUnit, context: HelperContext) -> ExecutionOutcome: ...


def _error_item(outcome: ExecutionOutcome, index: int | None = None) -> OutputItem:
    assert outcome.error is not None
    return OutputItem(
        data={"error": outcome.error.message},
        paired_item_index=index,
        error=outcome.error,
    )


class CodeExecutor:
    """
    execute(code_unit, batch, runtime_config) -> list[OutputItem]

    ``batch`` holds InputItems or raw items (``{"json": ..., "binary": ...}`` or
    bare dicts); item indices are their positions in the batch.
    """

    def __init__(self, *, python_executable: str | None = None) -> None:
        self.python_executable = python_executable

    def _backend_factory(
        self, code_unit: CodeUnit, runtime_config: RuntimeConfig
    ) -> Callable[[], SandboxBackend]:
        if not runtime_config.python_enabled:
            raise PythonDisabledError()
        if code_unit.execution_mode == CodeExecutionModeEnum.DEFINITION:
            raise ValueError("Node definitions are compiled by NodeCompiler, not executed")
        if (
            code_unit.language == CodeLanguageEnum.PYTHON_NATIVE
            and not runtime_config.python_runner_enabled
        ):
            raise NativePythonWithoutRunnerError()

        quota = Quota(
            timeout_ms=runtime_config.timeout_ms,
            allowed_capabilities=get_whitelist().names,
        )
        if runtime_config.python_runner_enabled:
            return lambda: IsolatedRunnerClient(quota, python_executable=self.python_executable)
        return lambda: InProcessSandbox(quota)

    def select_backend(self, code_unit: CodeUnit, runtime_config: RuntimeConfig) -> SandboxBackend:
        """A fresh backend for *code_unit*; raises CodeNodeConfigError when refused."""
        return self._backend_factory(code_unit, runtime_config)()

    async def execute(
        self,
        code_unit: CodeUnit,
        batch: Sequence[Any],
        runtime_config: RuntimeConfig | None = None,
        *,
        helpers: Mapping[str, Any] | None = None,
        on_log: Callable[[LogEntry], Any] | None = None,
        env: Any = None,
    ) -> list[OutputItem]:
        config = runtime_config or RuntimeConfig.from_settings()
        factory = self._backend_factory(code_unit, config)
        items = [InputItem.from_external(raw, i) for i, raw in enumerate(batch)]

        async def invoke(chunk: list[InputItem], item_index: int | None) -> ExecutionOutcome:
            backend = factory()
            context = build_execution_context(
                code_unit,
                chunk,
                backend.quota,
                item_index=item_index,
                helpers=helpers,
                env=env,
                capture=self._new_capture(code_unit, on_log),
            )
            return await backend.run(context.code_unit, context.helper_bindings)

        if code_unit.per_item:
            out = await self._run_per_item(items, invoke, config)
        else:
            out = await self._run_all_items(items, invoke, config)
        self._warn_unpaired(items, out)
        return out

    def execute_sync(self, *args: Any, **kwargs: Any) -> list[OutputItem]:
        """Blocking wrapper around execute() for callers without an event loop."""
        return asyncio.run(self.execute(*args, **kwargs))

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _run_all_items(
        self,
        items: list[InputItem],
        invoke: Callable[[list[InputItem], int | None], Any],
        config: RuntimeConfig,
    ) -> list[OutputItem]:
        outcome: ExecutionOutcome = await invoke(items, None)
        if outcome.error is None:
            return outcome.result_items or []
        if config.continue_on_fail:
            return [_error_item(outcome)]
        raise CodeExecutionError.from_descriptor(outcome.error, captured_log=outcome.captured_log)

    async def _run_per_item(
        self,
        items: list[InputItem],
        invoke: Callable[[list[InputItem], int | None], Any],
        config: RuntimeConfig,
    ) -> list[OutputItem]:
        semaphore = asyncio.Semaphore(config.per_item_concurrency)

        async def one(item: InputItem) -> ExecutionOutcome:
            async with semaphore:
                return await invoke([item], item.index)

        tasks = [asyncio.ensure_future(one(item)) for item in items]
        out: list[OutputItem] = []
        try:
            for item, task in zip(items, tasks):
                outcome: ExecutionOutcome = await task
                if outcome.error is None:
                    out.extend(outcome.result_items or [])
                elif config.continue_on_fail:
                    out.append(_error_item(outcome, item.index))
                else:
                    raise CodeExecutionError.from_descriptor(
                        outcome.error,
                        captured_log=outcome.captured_log,
                        partial_items=out,
                    )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return out

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_capture(
        self, code_unit: CodeUnit, on_log: Callable[[LogEntry], Any] | None
    ) -> LogCapture:
        if not settings.CODE_ENABLE_STDOUT:
            return LogCapture(on_log)
        prefix = f"[{code_unit.language.value}:{code_unit.execution_mode.value}] "
        return LogCapture(on_log, mirror=_log, mirror_prefix=prefix)

    def _warn_unpaired(self, items: list[InputItem], out: list[OutputItem]) -> None:
        if len(items) > 1 and any(o.paired_item_index is None and o.error is None for o in out):
            _log.warning(
                "Code returned %d item(s) for %d inputs without pairing information; "
                "set 'pairedItem' on returned items to keep item linking",
                len(out),
                len(items),
            )
