"""
Code execution models.

Enums: CodeLanguageEnum, CodeExecutionModeEnum, ErrorKindEnum, LogLevelEnum.
Models: CodeUnit, InputItem, OutputItem, LogEntry, ErrorDescriptor,
ExecutionOutcome, Quota, RuntimeConfig, CompiledDefinition, DefinitionTestReport.

Item payloads use the workflow engine's external shape on the wire:
``{"json": {...}, "binary": {...}, "pairedItem": {"item": i}}``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from codenode.core.config import settings


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CodeLanguageEnum(str, Enum):
    """Scripting language of a code unit.

    PYTHON runs in the RestrictedPython dialect (in-process or in the runner);
    PYTHON_NATIVE is plain Python and only ever runs in the isolated runner.
    """

    PYTHON = "python"
    PYTHON_NATIVE = "pythonNative"


class CodeExecutionModeEnum(str, Enum):
    """Execution granularity. DEFINITION is reserved for node compilation."""

    RUN_ONCE_FOR_ALL_ITEMS = "runOnceForAllItems"
    RUN_ONCE_FOR_EACH_ITEM = "runOnceForEachItem"
    DEFINITION = "definition"


class ErrorKindEnum(str, Enum):
    CAPABILITY_DENIED = "CapabilityDeniedError"
    TIMEOUT = "TimeoutError"
    WORKER_CRASH = "WorkerCrashError"
    SCRIPT_RUNTIME = "ScriptRuntimeError"
    COMPILATION = "CompilationError"
    VALIDATION = "ValidationError"


class LogLevelEnum(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class CodeUnit(BaseModel):
    """Immutable bundle of user source, language and execution mode."""

    model_config = ConfigDict(frozen=True)

    source_text: str
    language: CodeLanguageEnum = CodeLanguageEnum.PYTHON
    execution_mode: CodeExecutionModeEnum = CodeExecutionModeEnum.RUN_ONCE_FOR_ALL_ITEMS

    @property
    def per_item(self) -> bool:
        return self.execution_mode == CodeExecutionModeEnum.RUN_ONCE_FOR_EACH_ITEM


class InputItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: dict[str, Any] = Field(default_factory=dict)
    binary_attachments: dict[str, Any] | None = None
    index: int = Field(default=0, ge=0)

    @classmethod
    def from_external(cls, raw: Any, index: int) -> "InputItem":
        """Accept ``{"json": ..., "binary": ...}`` or a bare dict (used as data)."""
        if isinstance(raw, InputItem):
            return raw.model_copy(update={"index": index})
        if isinstance(raw, dict) and isinstance(raw.get("json"), dict):
            return cls(data=raw["json"], binary_attachments=raw.get("binary"), index=index)
        if isinstance(raw, dict):
            return cls(data=raw, index=index)
        raise TypeError(f"Input item {index} must be a dict, got {type(raw).__name__}")

    def to_external(self) -> dict[str, Any]:
        out: dict[str, Any] = {"json": self.data}
        if self.binary_attachments:
            out["binary"] = self.binary_attachments
        return out


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ErrorDescriptor(BaseModel):
    kind: ErrorKindEnum
    message: str
    item_index: int | None = None
    details: dict[str, Any] | None = None


class OutputItem(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    binary_attachments: dict[str, Any] | None = None
    paired_item_index: int | None = None
    error: ErrorDescriptor | None = None

    def to_external(self) -> dict[str, Any]:
        """Shape expected by the workflow engine."""
        out: dict[str, Any] = {"json": self.data}
        if self.binary_attachments:
            out["binary"] = self.binary_attachments
        if self.paired_item_index is not None:
            out["pairedItem"] = {"item": self.paired_item_index}
        return out


class LogEntry(BaseModel):
    level: LogLevelEnum = LogLevelEnum.INFO
    message: str
    timestamp: datetime = Field(default_factory=_utc_now)


class ExecutionOutcome(BaseModel):
    """
    Result of one backend invocation. ``result_items`` is None when the run
    failed; an empty list means the code legitimately produced nothing.
    """

    result_items: list[OutputItem] | None = None
    error: ErrorDescriptor | None = None
    captured_log: list[LogEntry] = Field(default_factory=list)
    elapsed_ms: float = 0.0
    # Evaluated value in DEFINITION mode / return value of invoke(); never serialized.
    exported: Any = Field(default=None, exclude=True)

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Quota / runtime configuration
# ---------------------------------------------------------------------------


class Quota(BaseModel):
    """Bound once per backend instance; immutable for its lifetime."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = Field(gt=0)
    allowed_capabilities: frozenset[str] = frozenset()

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0


class RuntimeConfig(BaseModel):
    """Per-execution switches supplied by the workflow engine."""

    model_config = ConfigDict(frozen=True)

    python_enabled: bool = True
    python_runner_enabled: bool = False
    continue_on_fail: bool = False
    timeout_ms: int = Field(default=60_000, gt=0)
    per_item_concurrency: int = Field(default=1, ge=1)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RuntimeConfig":
        values: dict[str, Any] = {
            "python_enabled": settings.CODE_PYTHON_ENABLED,
            "python_runner_enabled": settings.CODE_PYTHON_RUNNER_ENABLED,
            "timeout_ms": settings.CODE_EXEC_TIMEOUT_MS,
            "per_item_concurrency": settings.CODE_PER_ITEM_CONCURRENCY,
        }
        values.update(overrides)
        return cls(**values)


# ---------------------------------------------------------------------------
# Node compilation
# ---------------------------------------------------------------------------


class DefinitionTestReport(BaseModel):
    success: bool
    elapsed_ms: float = 0.0
    output_items: list[dict[str, Any]] = Field(default_factory=list)
    error: ErrorDescriptor | None = None
    captured_log: list[LogEntry] = Field(default_factory=list)


class CompiledDefinition(BaseModel):
    """Validated (and optionally test-run) user-submitted node definition."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    executable_handle: Any = Field(default=None, exclude=True)
    test_report: DefinitionTestReport | None = None
