"""Unit tests for engines.code.sandbox."""

import ast

import pytest

from codenode.engines.code.errors import CapabilityDeniedError
from codenode.engines.code.modules import LogCapture, make_print_collector
from codenode.engines.code.sandbox import (
    NATIVE_GETATTR_NAME,
    SANDBOX_MODULE_NAME,
    build_restricted_globals,
    compile_script,
    export_final_expression,
    guard_native_source,
    guarded_catchable,
    guarded_inplacevar,
    guarded_write,
    make_guarded_getattr,
    wrap_code_body,
)
from codenode.engines.code.whitelist import Whitelist, make_guarded_import


def _globals(context: dict | None = None, names: tuple[str, ...] = ("json", "math")) -> dict:
    wl = Whitelist(names)
    return build_restricted_globals(
        context or {},
        importer=make_guarded_import(wl),
        getattr_guard=make_guarded_getattr(wl),
        print_collector=make_print_collector(LogCapture()),
    )


class TestCompileScript:
    def test_compile_simple(self) -> None:
        assert compile_script("x = 1") is not None

    def test_compile_syntax_error(self) -> None:
        with pytest.raises(SyntaxError):
            compile_script("def f(  ")

    def test_underscore_names_rejected(self) -> None:
        with pytest.raises(SyntaxError):
            compile_script("x = ().__class__")


class TestWrapCodeBody:
    def test_top_level_return(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("return [1, 2]")), g)
        assert g["code_node"]() == [1, 2]

    def test_empty_source_returns_none(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("   ")), g)
        assert g["code_node"]() is None

    def test_multiline_string_kept(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body('s = """a\nb"""\nreturn s')), g)
        assert g["code_node"]() == "a\nb"

    def test_user_line_numbers_preserved(self) -> None:
        module = wrap_code_body("x = 1\ny = 2\nreturn y")
        body = module.body[0].body
        assert [stmt.lineno for stmt in body[:3]] == [1, 2, 3]


class TestExportFinalExpression:
    def test_rewrites_trailing_expression(self) -> None:
        src = "class Node:\n    pass\nNode\n"
        assert ast.unparse(export_final_expression(src)).endswith("exports = Node")

    def test_leaves_statement_unchanged(self) -> None:
        src = "x = 1\n"
        assert ast.unparse(export_final_expression(src)) == "x = 1"

    def test_exported_value_is_readable(self) -> None:
        g = _globals()
        exec(compile_script(export_final_expression("s = 'é'\ns\n")), g)
        assert g["exports"] == "é"


class TestBuildRestrictedGlobals:
    def test_includes_builtins_and_guards(self) -> None:
        g = _globals()
        for name in ("__builtins__", "_getattr_", "_getiter_", "_getitem_", "_write_", "_print_", "_catchable_"):
            assert name in g
        assert g["__name__"] == SANDBOX_MODULE_NAME
        assert "json" in g and "datetime" in g

    def test_merges_context(self) -> None:
        g = _globals({"items": [1], "log": "log_obj"})
        assert g["items"] == [1]
        assert g["log"] == "log_obj"

    def test_open_not_available(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("return open('/etc/passwd')")), g)
        with pytest.raises(NameError):
            g["code_node"]()

    def test_whitelisted_import(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("import math\nreturn math.sqrt(16)")), g)
        assert g["code_node"]() == 4.0

    def test_denied_import(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("import os\nreturn 1")), g)
        with pytest.raises(CapabilityDeniedError, match="'os' is not allowed"):
            g["code_node"]()

    def test_augmented_assignment(self) -> None:
        g = _globals()
        exec(compile_script(wrap_code_body("t = 0\nfor x in [1, 2, 3]:\n    t += x\nreturn t")), g)
        assert g["code_node"]() == 6

    def test_print_goes_to_capture(self) -> None:
        capture = LogCapture()
        wl = Whitelist(())
        g = build_restricted_globals(
            {},
            importer=make_guarded_import(wl),
            getattr_guard=make_guarded_getattr(wl),
            print_collector=make_print_collector(capture),
        )
        exec(compile_script(wrap_code_body("print('hello', 42)\nreturn None")), g)
        g["code_node"]()
        assert [e.message for e in capture.entries()] == ["hello 42"]


class TestGuards:
    def test_module_reached_through_attribute_is_denied(self) -> None:
        import uuid

        denied: list = []
        guard = make_guarded_getattr(Whitelist(["uuid"]), denied.append)
        with pytest.raises(CapabilityDeniedError):
            guard(uuid, "os")
        assert len(denied) == 1

    def test_guarded_write_allows_containers(self) -> None:
        d: dict = {}
        assert guarded_write(d) is d

    def test_inplacevar(self) -> None:
        assert guarded_inplacevar("+=", 1, 2) == 3
        assert guarded_inplacevar("*=", [1], 2) == [1, 1]

    def test_reflection_helpers_of_allowed_module_denied(self) -> None:
        import operator

        guard = make_guarded_getattr(Whitelist(["operator"]))
        assert guard(operator, "itemgetter") is operator.itemgetter
        with pytest.raises(CapabilityDeniedError, match="operator.attrgetter"):
            guard(operator, "attrgetter")

    def test_native_guard_blocks_dunder_names(self) -> None:
        import json

        denied: list = []
        guard = make_guarded_getattr(Whitelist(["json"]), denied.append, native=True)
        assert guard(json, "loads") is json.loads
        assert guard(1, "__name__", "int") == "int"
        with pytest.raises(CapabilityDeniedError, match="'__globals__'"):
            guard(json.loads, "__globals__")
        assert len(denied) == 1


class TestDeadlinePolicy:
    @pytest.mark.parametrize(
        "source, message",
        [
            ("try:\n    pass\nexcept:\n    pass", "bare 'except:'"),
            ("try:\n    pass\nexcept BaseException:\n    pass", "catching 'BaseException'"),
            ("try:\n    pass\nexcept (ValueError, SystemExit):\n    pass", "catching 'SystemExit'"),
            ("while True:\n    try:\n        pass\n    finally:\n        continue", "'continue' is not allowed inside 'finally'"),
            ("def f():\n    try:\n        pass\n    finally:\n        return 1", "'return' is not allowed inside 'finally'"),
            ("def g():\n    try:\n        pass\n    finally:\n        yield 1", "'yield' is not allowed inside 'finally'"),
        ],
    )
    def test_rejected(self, source: str, message: str) -> None:
        with pytest.raises(SyntaxError, match=message):
            compile_script(source)

    def test_loop_inside_finally_may_break(self) -> None:
        assert compile_script("try:\n    pass\nfinally:\n    for x in []:\n        break")

    def test_exception_handlers_compile(self) -> None:
        g = _globals()
        src = "try:\n    1 / 0\nexcept (KeyError, ZeroDivisionError):\n    return 'caught'"
        exec(compile_script(wrap_code_body(src)), g)
        assert g["code_node"]() == "caught"

    def test_computed_handler_type_is_narrowed(self) -> None:
        g = _globals()
        src = "try:\n    raise SystemExit(1)\nexcept Exception.mro()[1]:\n    return 'caught'"
        exec(compile_script(wrap_code_body(src)), g)
        with pytest.raises(SystemExit):
            g["code_node"]()


class TestGuardedCatchable:
    def test_exception_subclasses_kept(self) -> None:
        assert guarded_catchable(lambda: ValueError) is ValueError
        assert guarded_catchable(lambda: (KeyError, IndexError)) == (KeyError, IndexError)

    def test_other_types_catch_nothing(self) -> None:
        assert guarded_catchable(lambda: BaseException) == ()
        assert guarded_catchable(lambda: (ValueError, KeyboardInterrupt)) == (ValueError,)
        assert guarded_catchable(lambda: (KeyError, (IndexError,))) == (KeyError,)
        assert guarded_catchable(lambda: 5) == ()

    def test_raising_expression_catches_nothing(self) -> None:
        assert guarded_catchable(lambda: 1 / 0) == ()


class TestNativeSourceGuard:
    @pytest.mark.parametrize(
        "source",
        [
            "().__class__.__base__.__subclasses__()",
            "f.__globals__['os']",
            "__builtins__",
            "__import__('os')",
            "g.gi_frame.f_back",
            "from json import __builtins__",
            f"{NATIVE_GETATTR_NAME} = getattr",
        ],
    )
    def test_rejected(self, source: str) -> None:
        with pytest.raises(SyntaxError):
            guard_native_source(ast.parse(source))

    def test_attribute_reads_routed_through_guard(self) -> None:
        tree = guard_native_source(ast.parse("x = a.b.c\na.d = 1"))
        assert ast.unparse(tree) == (
            f"x = {NATIVE_GETATTR_NAME}({NATIVE_GETATTR_NAME}(a, 'b'), 'c')\na.d = 1"
        )

    def test_common_dunders_allowed(self) -> None:
        src = "class A:\n    __slots__ = ('x',)\n    def __init__(self):\n        super().__init__()\nA.__name__"
        assert guard_native_source(ast.parse(src))
