"""
Error taxonomy for code execution and node compilation.

Backends capture these into ``ExecutionOutcome.error`` (via ``descriptor()``);
only the coordinator raises them past its boundary, and only when
continue-on-fail is off.
"""

from typing import Any

from codenode.models_code import ErrorDescriptor, ErrorKindEnum, LogEntry, OutputItem


class CodeExecutionError(Exception):
    """Base class; ``kind`` selects the ErrorDescriptor kind."""

    kind: ErrorKindEnum = ErrorKindEnum.SCRIPT_RUNTIME

    def __init__(
        self,
        message: str,
        *,
        item_index: int | None = None,
        details: dict[str, Any] | None = None,
        captured_log: list[LogEntry] | None = None,
        partial_items: list[OutputItem] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.item_index = item_index
        self.details = details
        self.captured_log = captured_log or []
        self.partial_items = partial_items or []

    def descriptor(self) -> ErrorDescriptor:
        return ErrorDescriptor(
            kind=self.kind,
            message=self.message,
            item_index=self.item_index,
            details=self.details,
        )

    @classmethod
    def from_descriptor(
        cls,
        descriptor: ErrorDescriptor,
        *,
        captured_log: list[LogEntry] | None = None,
        partial_items: list[OutputItem] | None = None,
    ) -> "CodeExecutionError":
        """Rebuild the matching exception subclass for an outcome's error."""
        exc_cls = _BY_KIND.get(descriptor.kind, CodeExecutionError)
        return exc_cls(
            descriptor.message,
            item_index=descriptor.item_index,
            details=descriptor.details,
            captured_log=captured_log,
            partial_items=partial_items,
        )


class CapabilityDeniedError(CodeExecutionError):
    """Import of a module outside the whitelist."""

    kind = ErrorKindEnum.CAPABILITY_DENIED


class ScriptTimeoutError(CodeExecutionError):
    """Execution exceeded quota.timeout_ms."""

    kind = ErrorKindEnum.TIMEOUT


class WorkerCrashError(CodeExecutionError):
    """Isolated runner died, exited non-zero or broke the protocol."""

    kind = ErrorKindEnum.WORKER_CRASH


class ScriptRuntimeError(CodeExecutionError):
    """Uncaught exception (or syntax error) in user code."""

    kind = ErrorKindEnum.SCRIPT_RUNTIME


class CompilationError(CodeExecutionError):
    """Submitted definition does not compile to an invocable construct."""

    kind = ErrorKindEnum.COMPILATION


class ValidationError(CodeExecutionError):
    """Returned items or definition metadata have the wrong shape."""

    kind = ErrorKindEnum.VALIDATION


_BY_KIND: dict[ErrorKindEnum, type[CodeExecutionError]] = {
    ErrorKindEnum.CAPABILITY_DENIED: CapabilityDeniedError,
    ErrorKindEnum.TIMEOUT: ScriptTimeoutError,
    ErrorKindEnum.WORKER_CRASH: WorkerCrashError,
    ErrorKindEnum.SCRIPT_RUNTIME: ScriptRuntimeError,
    ErrorKindEnum.COMPILATION: CompilationError,
    ErrorKindEnum.VALIDATION: ValidationError,
}


class SandboxStateError(RuntimeError):
    """A backend instance was reused after it left the idle state."""

    pass


class CodeNodeConfigError(ValueError):
    """Refusal to execute because of instance configuration."""

    pass


class PythonDisabledError(CodeNodeConfigError):
    def __init__(self) -> None:
        super().__init__(
            "This instance disallows Python execution because CODE_PYTHON_ENABLED is "
            "set to false. To restore Python execution, unset it or set it to true "
            "and restart the instance."
        )


class NativePythonWithoutRunnerError(CodeNodeConfigError):
    def __init__(self) -> None:
        super().__init__(
            "Native Python requires the isolated Python runner. Set "
            "CODE_PYTHON_RUNNER_ENABLED=true, or switch the language to 'python'."
        )
