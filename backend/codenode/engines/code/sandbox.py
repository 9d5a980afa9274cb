"""
RestrictedPython sandbox shared by the in-process backend, the isolated
runner (``python`` language) and the node compiler.

Allowed: safe builtins plus dict, list, set, enumerate, map, filter, min, max,
sum, any, all, sorted, reversed; json and datetime/date/time/timedelta; modules
from the capability whitelist via ``import``; helper bindings of the context.

Blocked: open, exec, eval, compile, names/attributes starting with ``_``,
imports outside the whitelist, and reaching non-whitelisted modules through
attributes of allowed ones (e.g. ``uuid.os``, ``from uuid import os``). Handlers
never catch the deadline: no bare ``except:``, no catching BaseException, no
jumping out of ``finally``.

NativeSourceGuard is the plain-Python counterpart used by the runner worker.
"""

import ast
import builtins
import json
import operator
from collections.abc import Callable, Iterable, Iterator
from datetime import date, datetime, time, timedelta
from typing import Any, NoReturn, cast

from RestrictedPython import compile_restricted
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)
from RestrictedPython.transformer import INSPECT_ATTRIBUTES, RestrictingNodeTransformer

from .errors import CapabilityDeniedError
from .whitelist import Whitelist, check_reachable

# __name__ of the sandbox module; classes defined by user code carry it as __module__
SANDBOX_MODULE_NAME = "usercode"
# Function that wraps code-node bodies so a top-level `return` is legal
CODE_FUNCTION_NAME = "code_node"
# Name the final expression of a node definition is bound to
EXPORT_NAME = "exports"

_EXTRA_BUILTINS = (
    "all",
    "any",
    "dict",
    "enumerate",
    "filter",
    "frozenset",
    "iter",
    "list",
    "map",
    "max",
    "min",
    "next",
    "reversed",
    "set",
    "sum",
)

_INPLACE_OPS: dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}

# Exception classes outside the Exception hierarchy; the deadline is one of them
_UNCATCHABLE_NAMES = frozenset({"BaseException", "GeneratorExit", "KeyboardInterrupt", "SystemExit"})
# Runtime filter wrapped around every `except` type expression
CATCHABLE_GUARD_NAME = "_catchable_"

_LOOP_NODES = (ast.For, ast.AsyncFor, ast.While)
_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)
_SUSPEND_NODES = (ast.Yield, ast.YieldFrom, ast.Await)
_STATEMENT_WORDS = {
    ast.Return: "return",
    ast.Break: "break",
    ast.Continue: "continue",
    ast.Yield: "yield",
    ast.YieldFrom: "yield from",
    ast.Await: "await",
}


def handler_problems(node: ast.ExceptHandler) -> list[str]:
    """Reasons an ``except`` clause could swallow the deadline."""
    if node.type is None:
        return ["bare 'except:' is not allowed, catch Exception instead"]
    names = {n.id for n in ast.walk(node.type) if isinstance(n, ast.Name)}
    return [
        f"catching '{name}' is not allowed, catch Exception instead"
        for name in sorted(names & _UNCATCHABLE_NAMES)
    ]


def finally_escapes(body: Iterable[ast.AST], in_loop: bool = False) -> Iterator[ast.AST]:
    """Nodes of a ``finally`` body that would drop an exception in flight."""
    for node in body:
        if isinstance(node, ast.Return) or (isinstance(node, (ast.Break, ast.Continue)) and not in_loop):
            yield node
        elif isinstance(node, _SCOPE_NODES):
            continue
        elif isinstance(node, _LOOP_NODES):
            yield from finally_escapes(node.body, True)
            yield from finally_escapes(node.orelse, in_loop)
        else:
            for child in ast.iter_child_nodes(node):
                if isinstance(child, _SUSPEND_NODES):
                    yield child
                else:
                    yield from finally_escapes([child], in_loop)


def guarded_catchable(handler_type_thunk: Callable[[], Any]) -> Any:
    """
    Evaluate an ``except`` type expression and narrow it to Exception subclasses;
    anything else, including an expression that raises, catches nothing.
    """
    try:
        handler_type = handler_type_thunk()
    except Exception:
        return ()
    if isinstance(handler_type, tuple):
        return tuple(t for t in handler_type if isinstance(t, type) and issubclass(t, Exception))
    if isinstance(handler_type, type) and issubclass(handler_type, Exception):
        return handler_type
    return ()


class CodeNodePolicy(RestrictingNodeTransformer):
    """
    RestrictedPython's policy plus one rule: nothing in user code may stop the
    deadline exception from unwinding. Literal catch-alls and jumps out of
    ``finally`` are compile errors; every other handler type is evaluated and
    filtered at run time by ``_catchable_``.
    """

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> Any:
        for problem in handler_problems(node):
            self.error(node, problem)
        node = super().visit_ExceptHandler(node)
        if node.type is not None:
            thunk = ast.Lambda(
                args=ast.arguments(
                    posonlyargs=[], args=[], vararg=None, kwonlyargs=[], kw_defaults=[], kwarg=None, defaults=[]
                ),
                body=node.type,
            )
            call = ast.Call(
                func=ast.Name(id=CATCHABLE_GUARD_NAME, ctx=ast.Load()),
                args=[thunk],
                keywords=[],
            )
            node.type = ast.fix_missing_locations(ast.copy_location(call, node.type))
        return node

    def visit_Try(self, node: ast.Try) -> Any:
        for escape in finally_escapes(node.finalbody):
            self.error(escape, f"'{_STATEMENT_WORDS[type(escape)]}' is not allowed inside 'finally'")
        return super().visit_Try(node)


# ---------------------------------------------------------------------------
# Plain-Python (pythonNative) source guard
# ---------------------------------------------------------------------------

# Every attribute read in native code becomes a call to this global
NATIVE_GETATTR_NAME = "__codenode_getattr__"
_NATIVE_DUNDER_ATTRIBUTES = frozenset({"__doc__", "__init__", "__module__", "__name__", "__qualname__"})
_NATIVE_DUNDER_NAMES = frozenset({"__all__", "__doc__", "__name__", "__slots__"})


def _is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def is_blocked_attribute(name: str) -> bool:
    """Attributes native code may not touch: introspection dunders and frame/code internals."""
    if name in INSPECT_ATTRIBUTES:
        return True
    return _is_dunder(name) and name not in _NATIVE_DUNDER_ATTRIBUTES


class NativeSourceGuard(ast.NodeTransformer):
    """
    Checks a plain-Python module before it runs in the worker and routes every
    attribute read through ``NATIVE_GETATTR_NAME``, which applies the same
    whitelist as the RestrictedPython path. Problems are collected, not raised.
    """

    def __init__(self) -> None:
        self.errors: list[str] = []

    def error(self, node: ast.AST, info: str) -> None:
        self.errors.append(f"Line {getattr(node, 'lineno', None)}: {info}")

    def check_identifier(self, node: ast.AST, name: str | None) -> None:
        if name is not None and _is_dunder(name) and name not in _NATIVE_DUNDER_NAMES:
            self.error(node, f'"{name}" is a reserved name')

    def visit_Name(self, node: ast.Name) -> Any:
        self.check_identifier(node, node.id)
        return node

    def visit_arg(self, node: ast.arg) -> Any:
        self.check_identifier(node, node.arg)
        return self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> Any:
        for part in node.name.split("."):
            self.check_identifier(node, part)
        self.check_identifier(node, node.asname)
        return node

    def visit_ClassDef(self, node: ast.ClassDef) -> Any:
        if node.name == NATIVE_GETATTR_NAME:
            self.error(node, f'"{node.name}" is a reserved name')
        return self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> Any:
        if node.name == NATIVE_GETATTR_NAME:
            self.error(node, f'"{node.name}" is a reserved name')
        return self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Global(self, node: ast.Global) -> Any:
        for name in node.names:
            self.check_identifier(node, name)
        return node

    visit_Nonlocal = visit_Global

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> Any:
        self.check_identifier(node, node.name)
        return self.generic_visit(node)

    def visit_MatchClass(self, node: Any) -> Any:
        for attr in node.kwd_attrs:
            if is_blocked_attribute(attr):
                self.error(node, f'"{attr}" is not allowed')
        return self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        self.generic_visit(node)
        if is_blocked_attribute(node.attr):
            self.error(node, f'"{node.attr}" is not allowed')
        if not isinstance(node.ctx, ast.Load):
            return node
        call = ast.Call(
            func=ast.Name(id=NATIVE_GETATTR_NAME, ctx=ast.Load()),
            args=[node.value, ast.Constant(node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


def guard_native_source(tree: ast.Module) -> ast.Module:
    """Apply NativeSourceGuard; raises SyntaxError listing every problem found."""
    guard = NativeSourceGuard()
    tree = guard.visit(tree)
    if guard.errors:
        raise SyntaxError(guard.errors)
    return ast.fix_missing_locations(tree)


def compile_script(script: str | ast.Module, filename: str = "<code>") -> Any:
    """
    Compile with RestrictedPython under CodeNodePolicy. Raises SyntaxError on failure.

    Returns a code object suitable for exec(bytecode, globals).
    """
    code = compile_restricted(script, filename, "exec", policy=CodeNodePolicy)
    if code is None:
        raise SyntaxError("RestrictedPython: compile failed")
    return code


def wrap_code_body(source: str) -> ast.Module:
    """
    Move user code into the body of ``def code_node():`` so it may ``return``
    items. Line numbers stay those of the user's source.
    """
    user = ast.parse(source)
    module = ast.parse(f"def {CODE_FUNCTION_NAME}():\n    pass\n")
    fn = cast(ast.FunctionDef, module.body[0])
    fn.body = [*user.body, *fn.body]
    return ast.fix_missing_locations(module)


def export_final_expression(source: str) -> ast.Module:
    """
    Rewrite a trailing expression statement to ``exports = <expr>`` so the
    definition's value can be read back after exec. Other sources are kept
    as they are (they may bind ``exports`` themselves).
    """
    tree = ast.parse(source)
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        assign = ast.Assign(
            targets=[ast.Name(id=EXPORT_NAME, ctx=ast.Store())],
            value=last.value,
        )
        tree.body[-1] = ast.copy_location(assign, last)
    return ast.fix_missing_locations(tree)


def guarded_write(ob: Any) -> Any:
    """``_write_`` guard: containers and instances of sandbox-defined classes are writable."""
    if getattr(type(ob), "__module__", None) == SANDBOX_MODULE_NAME:
        return ob
    return full_write_guard(ob)


def guarded_inplacevar(op: str, x: Any, y: Any) -> Any:
    fn = _INPLACE_OPS.get(op)
    if fn is None:
        raise SyntaxError(f"Unsupported in-place operator: {op}")
    return fn(x, y)


def guarded_apply(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return fn(*args, **kwargs)


def make_guarded_getattr(
    whitelist: Whitelist,
    on_denied: Callable[[CapabilityDeniedError], None] | None = None,
    *,
    native: bool = False,
) -> Callable[..., Any]:
    """
    safer_getattr that also refuses to hand out non-whitelisted modules and the
    reflection helpers of allowed ones. With *native* the base lookup is the
    builtin getattr minus blocked attributes, for plain-Python code.
    """

    def deny(exc: CapabilityDeniedError) -> NoReturn:
        if on_denied is not None:
            on_denied(exc)
        raise exc

    def guarded_getattr(obj: Any, name: str, *default: Any) -> Any:
        if not native:
            value = safer_getattr(obj, name, *default)
        elif isinstance(name, str) and is_blocked_attribute(name):
            deny(CapabilityDeniedError(f"Attribute '{name}' is not allowed"))
        else:
            value = getattr(obj, name, *default)
        exc = check_reachable(whitelist, obj, name, value)
        if exc is not None:
            deny(exc)
        return value

    return guarded_getattr


def make_safe_builtins(importer: Callable[..., Any]) -> dict[str, Any]:
    """RestrictedPython safe_builtins + common container/utility builtins + the whitelist importer."""
    safe = dict(safe_builtins)
    for name in _EXTRA_BUILTINS:
        safe.setdefault(name, getattr(builtins, name))
    safe["__import__"] = importer
    return safe


def _make_extra_globals() -> dict[str, Any]:
    """Extra safe symbols: json, datetime, date, time, timedelta."""
    return {
        "json": json,
        "datetime": datetime,
        "date": date,
        "time": time,
        "timedelta": timedelta,
    }


def build_restricted_globals(
    context_dict: dict[str, Any],
    *,
    importer: Callable[..., Any],
    getattr_guard: Callable[..., Any],
    print_collector: type,
) -> dict[str, Any]:
    """
    Build the globals dict for exec(compiled, globals): safe builtins, guards,
    extra (json, datetime), then the context bindings (items, log, helpers...).
    """
    safe = make_safe_builtins(importer)
    safe["getattr"] = getattr_guard
    g: dict[str, Any] = {
        "__builtins__": safe,
        "__name__": SANDBOX_MODULE_NAME,
        "__metaclass__": type,
        "_getattr_": getattr_guard,
        "_getiter_": default_guarded_getiter,
        "_getitem_": default_guarded_getitem,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": guarded_write,
        "_inplacevar_": guarded_inplacevar,
        "_apply_": guarded_apply,
        "_print_": print_collector,
        CATCHABLE_GUARD_NAME: guarded_catchable,
    }
    g.update(_make_extra_globals())
    g.update(context_dict)
    return g
