"""
NodeCompiler: compile, validate and test-run user-submitted node definitions.

A definition is RestrictedPython source whose final expression (or an
``exports`` binding) is the node construct, usually a class:

    class MyNode:
        description = {"name": "myNode", "displayName": "My Node", ...}

        def execute(self, ctx):
            return [{"json": {"n": len(ctx.get_input_data())}}]

    MyNode

Every phase runs in a fresh InProcessSandbox; errors are accumulated so a
single call reports every problem. Nothing is persisted.
"""

import copy
import logging
import time
from collections.abc import Mapping, Sequence
from types import SimpleNamespace
from typing import Any

from pydantic import BaseModel, Field

from codenode.core.config import settings
from codenode.engines.code import InProcessSandbox, build_helper_context, get_whitelist
from codenode.engines.code.errors import CapabilityDeniedError, CompilationError, ValidationError
from codenode.engines.code.modules import LogCapture, make_log_module
from codenode.engines.code.output import normalize_all_items, standardize_output
from codenode.models_code import (
    CodeExecutionModeEnum,
    CodeUnit,
    CompiledDefinition,
    DefinitionTestReport,
    InputItem,
    OutputItem,
    Quota,
)

_log = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "name",
    "displayName",
    "group",
    "description",
    "version",
    "defaults",
    "inputs",
    "outputs",
    "properties",
)

NOT_INVOCABLE_MESSAGE = (
    "Node definition must export an invocable construct (a class or factory callable)"
)

_MISSING = object()


class MetadataValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


class MockExecuteContext:
    """Minimal execute() context for test runs."""

    def __init__(
        self,
        items: Sequence[InputItem],
        *,
        properties: Sequence[Any] | None = None,
        parameters: Mapping[str, Any] | None = None,
        capture: LogCapture,
    ) -> None:
        self._items = [i.to_external() for i in items]
        self._defaults = {
            p["name"]: p["default"]
            for p in properties or []
            if isinstance(p, dict) and "name" in p and "default" in p
        }
        self._parameters = dict(parameters or {})
        self.log = make_log_module(capture=capture)
        self.helpers = SimpleNamespace(return_json_array=self._return_json_array)

    @staticmethod
    def _return_json_array(data: Any) -> list[dict[str, Any]]:
        rows = data if isinstance(data, (list, tuple)) else [data]
        return [{"json": row} for row in rows]

    def get_input_data(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._items)

    def get_node_parameter(self, name: str, item_index: int = 0, fallback: Any = _MISSING) -> Any:
        """Explicit parameter, then the property's declared default, then *fallback*."""
        if self._items and not 0 <= item_index < len(self._items):
            raise IndexError(f"Item index {item_index} is out of range")
        if name in self._parameters:
            return copy.deepcopy(self._parameters[name])
        if name in self._defaults:
            return copy.deepcopy(self._defaults[name])
        if fallback is not _MISSING:
            return fallback
        raise ValueError(f'Could not get parameter "{name}"')

    def continue_on_fail(self) -> bool:
        return False


def _normalize_execute_result(value: Any, input_count: int) -> list[OutputItem]:
    """execute() may return items, or one list of items per output."""
    if isinstance(value, (list, tuple)) and value and all(isinstance(v, (list, tuple)) for v in value):
        flat: list[Any] = [item for branch in value for item in branch]
        return normalize_all_items(flat, input_count)
    return normalize_all_items(value, input_count)


class NodeCompiler:
    """
    validate_and_test(source_text, mock_batch) -> CompiledDefinition
    """

    def __init__(self, timeout_ms: int | None = None) -> None:
        self.timeout_ms = timeout_ms or settings.NODE_COMPILER_TIMEOUT_MS

    def _sandbox(self, denials: list[CapabilityDeniedError]) -> InProcessSandbox:
        quota = Quota(timeout_ms=self.timeout_ms, allowed_capabilities=get_whitelist().names)
        return InProcessSandbox(quota, denials=denials)

    def validate_size(self, source_text: str, max_kb: int | None = None) -> str | None:
        limit = max_kb or settings.NODE_COMPILER_MAX_SOURCE_KB
        size_kb = len(source_text.encode("utf-8")) / 1024
        if size_kb > limit:
            return f"Node code size exceeds limit: {size_kb:.2f}KB > {limit}KB"
        return None

    def compile_node_code(
        self,
        source_text: str,
        *,
        capture: LogCapture | None = None,
        denials: list[CapabilityDeniedError] | None = None,
    ) -> Any:
        """
        Evaluate a definition and return the exported construct.
        Raises CompilationError when it fails or exports a bare value.
        """
        code_unit = CodeUnit(source_text=source_text, execution_mode=CodeExecutionModeEnum.DEFINITION)
        context = build_helper_context(code_unit, [], capture=capture)
        outcome = self._sandbox(denials if denials is not None else []).run_sync(code_unit, context)
        if outcome.error is not None:
            _log.warning("Node compilation failed: %s", outcome.error.message)
            raise CompilationError(
                f"Node compilation failed: {outcome.error.message}",
                details={"kind": outcome.error.kind.value},
                captured_log=outcome.captured_log,
            )
        construct = outcome.exported
        if not callable(construct):
            raise CompilationError(
                f"Node compilation failed: {NOT_INVOCABLE_MESSAGE}",
                captured_log=outcome.captured_log,
            )
        return construct

    def validate_node_metadata(self, description: Any) -> MetadataValidationResult:
        result = MetadataValidationResult()
        if not isinstance(description, Mapping):
            result.errors.append("description must be an object")
            result.is_valid = False
            return result

        for field in REQUIRED_FIELDS:
            if description.get(field) is None:
                result.errors.append(f"Missing required field: {field}")

        group = description.get("group")
        if group is not None:
            if not isinstance(group, (list, tuple)):
                result.errors.append("group must be an array")
            elif not group:
                result.errors.append("group must be a non-empty array")

        version = description.get("version")
        if version is not None:
            valid = _is_number(version) or (
                isinstance(version, (list, tuple)) and all(_is_number(v) for v in version)
            )
            if not valid:
                result.errors.append("version must be a number or array of numbers")

        for field in ("inputs", "outputs", "properties"):
            value = description.get(field)
            if value is not None and not isinstance(value, (list, tuple)):
                result.errors.append(f"{field} must be an array")

        if not description.get("icon") and not description.get("iconUrl"):
            result.warnings.append("No icon or iconUrl specified - node will use default icon")
        if not description.get("subtitle"):
            result.warnings.append("No subtitle specified - consider adding for better UX")

        result.is_valid = not result.errors
        return result

    def validate_and_test(
        self,
        source_text: str,
        mock_batch: Sequence[Any] | None = None,
        *,
        parameters: Mapping[str, Any] | None = None,
        run_test: bool = True,
    ) -> CompiledDefinition:
        errors: list[str] = []
        warnings: list[str] = []
        denials: list[CapabilityDeniedError] = []
        capture = LogCapture()

        size_error = self.validate_size(source_text)
        if size_error:
            return CompiledDefinition(is_valid=False, errors=[size_error])

        try:
            construct = self.compile_node_code(source_text, capture=capture, denials=denials)
        except CompilationError as e:
            return CompiledDefinition(is_valid=False, errors=[e.message])

        unit = CodeUnit(source_text=source_text, execution_mode=CodeExecutionModeEnum.DEFINITION)
        outcome = self._sandbox(denials).invoke(
            build_helper_context(unit, [], capture=capture), construct
        )
        if outcome.error is not None:
            return CompiledDefinition(
                is_valid=False, errors=[f"Failed to instantiate node: {outcome.error.message}"]
            )
        node = outcome.exported

        if not callable(getattr(node, "execute", None)):
            errors.append("Node must have an execute() method")
        description = getattr(node, "description", None)
        metadata = None
        if not description:
            errors.append("Node must have a description property")
        else:
            meta = self.validate_node_metadata(description)
            errors.extend(meta.errors)
            warnings.extend(meta.warnings)
            metadata = standardize_output(description) if isinstance(description, Mapping) else None

        is_valid = not errors
        report = None
        if is_valid and run_test:
            report = self._test_run(node, description, mock_batch, parameters, capture, denials)
        return CompiledDefinition(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            metadata=metadata,
            executable_handle=node if is_valid else None,
            test_report=report,
        )

    def validate_many(self, definitions: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Validate without test runs: ``[{"node_key", "code"}] -> [{"node_key", "result"}]``."""
        return [
            {"node_key": d["node_key"], "result": self.validate_and_test(d["code"], run_test=False)}
            for d in definitions
        ]

    def _test_run(
        self,
        node: Any,
        description: Mapping[str, Any],
        mock_batch: Sequence[Any] | None,
        parameters: Mapping[str, Any] | None,
        capture: LogCapture,
        denials: list[CapabilityDeniedError],
    ) -> DefinitionTestReport:
        raw_items = mock_batch if mock_batch is not None else [{"json": {}}]
        items = [InputItem.from_external(raw, i) for i, raw in enumerate(raw_items)]
        mock = MockExecuteContext(
            items,
            properties=description.get("properties"),
            parameters=parameters,
            capture=capture,
        )
        unit = CodeUnit(source_text="", execution_mode=CodeExecutionModeEnum.DEFINITION)
        mark = capture.mark()
        started = time.perf_counter()
        outcome = self._sandbox(denials).invoke(
            build_helper_context(unit, items, capture=capture), node.execute, mock
        )
        logs = capture.since(mark)
        if outcome.error is not None:
            return DefinitionTestReport(
                success=False,
                elapsed_ms=outcome.elapsed_ms,
                error=outcome.error,
                captured_log=logs,
            )
        try:
            output = _normalize_execute_result(outcome.exported, len(items))
        except ValidationError as e:
            return DefinitionTestReport(
                success=False,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
                error=e.descriptor(),
                captured_log=logs,
            )
        return DefinitionTestReport(
            success=True,
            elapsed_ms=outcome.elapsed_ms,
            output_items=[o.to_external() for o in output],
            captured_log=logs,
        )
