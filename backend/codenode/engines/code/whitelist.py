"""
Capability whitelist: the static set of modules user code may import.

Built once per process (defaults + CODE_EXTRA_MODULES) and never mutated,
so one instance is shared by every concurrent execution.
"""

import importlib
import logging
import re
import sys
from collections.abc import Callable, Iterable
from functools import lru_cache
from types import ModuleType
from typing import Any, NoReturn

from codenode.core.config import parse_csv, settings

from .errors import CapabilityDeniedError

_log = logging.getLogger(__name__)

# Top-level or dotted module names (e.g. collections.abc); no relative names
_SAFE_MODULE_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$")

DEFAULT_ALLOWED_MODULES = frozenset({
    "base64",
    "collections",
    "copy",
    "datetime",
    "decimal",
    "fractions",
    "functools",
    "hashlib",
    "itertools",
    "json",
    "math",
    "operator",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
    "uuid",
})

# Callables of allowed modules that fetch arbitrary attributes by name
UNSAFE_MODULE_ATTRIBUTES: dict[str, frozenset[str]] = {
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "string": frozenset({"Formatter"}),
}


class Whitelist:
    """Deny-by-default module resolver."""

    __slots__ = ("_names",)

    def __init__(self, names: Iterable[str]) -> None:
        self._names = frozenset(n for n in names if _SAFE_MODULE_NAME_RE.match(n))

    @property
    def names(self) -> frozenset[str]:
        return self._names

    def is_allowed(self, name: str) -> bool:
        return isinstance(name, str) and name in self._names

    def resolve(self, name: str) -> ModuleType:
        """Return the module for *name*; raise CapabilityDeniedError if not allowed."""
        if not self.is_allowed(name):
            raise CapabilityDeniedError(
                f"Module '{name}' is not allowed. "
                f"Allowed modules: {', '.join(sorted(self._names)) or '(none)'}."
            )
        return importlib.import_module(name)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.is_allowed(name)

    def __repr__(self) -> str:
        return f"Whitelist({sorted(self._names)!r})"


@lru_cache(maxsize=1)
def get_whitelist() -> Whitelist:
    """Process-wide whitelist: defaults plus CODE_EXTRA_MODULES, loaded once."""
    extra = []
    for name in parse_csv(settings.CODE_EXTRA_MODULES):
        if not _SAFE_MODULE_NAME_RE.match(name):
            _log.warning("Ignoring invalid module name in CODE_EXTRA_MODULES: %r", name)
            continue
        extra.append(name)
    return Whitelist(DEFAULT_ALLOWED_MODULES | frozenset(extra))


def check_reachable(whitelist: Whitelist, owner: Any, name: str, value: Any) -> CapabilityDeniedError | None:
    """Error for handing `owner.name` (already fetched as *value*) to user code, or None."""
    if isinstance(value, ModuleType) and not whitelist.is_allowed(value.__name__):
        return CapabilityDeniedError(f"Module '{value.__name__}' is not allowed")
    if isinstance(owner, ModuleType) and name in UNSAFE_MODULE_ATTRIBUTES.get(owner.__name__, ()):
        return CapabilityDeniedError(f"'{owner.__name__}.{name}' is not allowed")
    return None


def make_guarded_import(
    whitelist: Whitelist,
    on_denied: Callable[[CapabilityDeniedError], None] | None = None,
) -> Callable[..., Any]:
    """
    Build an ``__import__`` replacement bound to *whitelist*.

    ``import a.b`` checks the full dotted name and returns the top-level
    package like the builtin; ``from a import b`` returns ``a`` itself after
    checking every imported name, since the interpreter fetches those without
    going through the attribute guard.
    *on_denied* is told about every denial, even ones user code catches.
    """

    def deny(exc: CapabilityDeniedError) -> NoReturn:
        if on_denied is not None:
            on_denied(exc)
        raise exc

    def guarded_import(
        name: str,
        globals: Any = None,
        locals: Any = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> ModuleType:
        if level != 0:
            deny(CapabilityDeniedError("Relative imports are not allowed"))
        try:
            module = whitelist.resolve(name)
        except CapabilityDeniedError as exc:
            deny(exc)
        if not fromlist:
            if "." in name:
                return importlib.import_module(name.split(".", 1)[0])
            return module
        for attr in _imported_names(module, fromlist):
            value = getattr(module, attr, None)
            if value is None:
                value = sys.modules.get(f"{module.__name__}.{attr}")
            exc = check_reachable(whitelist, module, attr, value)
            if exc is not None:
                deny(exc)
        return module

    return guarded_import


def _imported_names(module: ModuleType, fromlist: Iterable[str]) -> list[str]:
    names: list[str] = []
    for attr in fromlist:
        if attr != "*":
            names.append(attr)
            continue
        public = getattr(module, "__all__", None)
        if public is None:
            public = [n for n in vars(module) if not n.startswith("_")]
        names.extend(public)
    return names
