"""
Log capture for user code: ``log.info/warn/error/debug`` and ``print()``.

Lines go into an ordered, per-execution LogCapture instead of the process
stdout. A sealed capture drops further writes (used once a deadline fires).
"""

import logging
import threading
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

from codenode.models_code import LogEntry, LogLevelEnum

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevelEnum.DEBUG: logging.DEBUG,
    LogLevelEnum.INFO: logging.INFO,
    LogLevelEnum.WARN: logging.WARNING,
    LogLevelEnum.ERROR: logging.ERROR,
}


class LogCapture:
    """Thread-safe ordered sink for one execution's log lines."""

    def __init__(
        self,
        listener: Callable[[LogEntry], Any] | None = None,
        *,
        mirror: logging.Logger | None = None,
        mirror_prefix: str = "",
    ) -> None:
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()
        self._sealed = False
        self._listener = listener
        self._mirror = mirror
        self._mirror_prefix = mirror_prefix

    @property
    def sealed(self) -> bool:
        return self._sealed

    def write(self, level: LogLevelEnum | str, message: str) -> bool:
        """Append one line; returns False when the capture is sealed."""
        return self.append(LogEntry(level=LogLevelEnum(level), message=message))

    def append(self, entry: LogEntry) -> bool:
        with self._lock:
            if self._sealed:
                return False
            self._entries.append(entry)
        if self._mirror is not None:
            self._mirror.log(
                _PY_LEVELS[entry.level], "%s%s", self._mirror_prefix, entry.message
            )
        if self._listener is not None:
            try:
                self._listener(entry)
            except Exception as e:
                logger.warning("Log listener failed: %s", e)
        return True

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def mark(self) -> int:
        with self._lock:
            return len(self._entries)

    def since(self, mark: int) -> list[LogEntry]:
        with self._lock:
            return list(self._entries[mark:])


def _format(msg: Any, args: tuple[Any, ...]) -> str:
    text = str(msg)
    if args:
        try:
            return text % args
        except (TypeError, ValueError):
            return " ".join([text, *(str(a) for a in args)])
    return text


def make_log_module(*, capture: LogCapture) -> Any:
    """Build the `log` object: info, warn, warning, error, debug."""

    def info(msg: Any, *args: Any) -> None:
        capture.write(LogLevelEnum.INFO, _format(msg, args))

    def warn(msg: Any, *args: Any) -> None:
        capture.write(LogLevelEnum.WARN, _format(msg, args))

    def error(msg: Any, *args: Any) -> None:
        capture.write(LogLevelEnum.ERROR, _format(msg, args))

    def debug(msg: Any, *args: Any) -> None:
        capture.write(LogLevelEnum.DEBUG, _format(msg, args))

    return SimpleNamespace(info=info, warn=warn, warning=warn, error=error, debug=debug)


def make_print_function(capture: LogCapture) -> Callable[..., None]:
    """Plain ``print`` replacement (native runner): one info line per call."""

    def print_(*objects: Any, sep: str | None = " ", end: str | None = "\n", **_: Any) -> None:
        text = (" " if sep is None else sep).join(str(o) for o in objects)
        capture.write(LogLevelEnum.INFO, text)

    return print_


def make_print_collector(capture: LogCapture) -> type:
    """
    RestrictedPython ``_print_`` factory. The rewritten code calls
    ``_print_(_getattr_)`` per scope, then ``._call_print(...)`` for each print.
    ``printed`` still returns everything printed in that scope.
    """

    class CapturePrintCollector:
        def __init__(self, _getattr_: Any = None) -> None:
            self.txt: list[str] = []

        def write(self, text: str) -> None:
            self.txt.append(text)

        def __call__(self) -> str:
            return "".join(self.txt)

        def _call_print(self, *objects: Any, **kwargs: Any) -> None:
            sep = kwargs.get("sep")
            end = kwargs.get("end")
            text = (" " if sep is None else str(sep)).join(str(o) for o in objects)
            self.txt.append(text + ("\n" if end is None else str(end)))
            capture.write(LogLevelEnum.INFO, text)

    return CapturePrintCollector
