"""
HelperContext: the API surface user code sees for one invocation.

Exposes items (or item), input, log, print capture, helpers and optionally env.
Items are deep copies; bindings are read-only mappings. No filesystem, network
or process capability is ever bound unless a caller injects a helper for it.
"""

import copy
import keyword
from collections.abc import Callable, Mapping, Sequence
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict

from codenode.models_code import CodeUnit, InputItem, LogEntry, Quota

from .modules import LogCapture, make_log_module

RESERVED_NAMES = frozenset({"items", "item", "input", "log", "helpers", "env", "print", "printed"})


class InputAccessor:
    """Read access to the current batch: all(), first(), last(), item."""

    __slots__ = ("_items", "_item")

    def __init__(self, items: list[dict[str, Any]], item: dict[str, Any] | None) -> None:
        self._items = items
        self._item = item

    def all(self) -> list[dict[str, Any]]:
        return list(self._items)

    def first(self) -> dict[str, Any] | None:
        return self._items[0] if self._items else None

    def last(self) -> dict[str, Any] | None:
        return self._items[-1] if self._items else None

    @property
    def item(self) -> dict[str, Any] | None:
        return self._item


class HelperContext:
    """Immutable binding set for one execution; see build_helper_context."""

    def __init__(
        self,
        *,
        code_unit: CodeUnit,
        items: Sequence[InputItem],
        item_index: int | None,
        capture: LogCapture,
        helpers: Mapping[str, Callable[..., Any]],
        env: Any = None,
    ) -> None:
        self.code_unit = code_unit
        self.items = tuple(items)
        self.item_index = item_index
        self.capture = capture
        self.helpers = MappingProxyType(dict(helpers))
        self.env = env

        user_items = [copy.deepcopy(i.to_external()) for i in self.items]
        user_item = user_items[0] if item_index is not None and user_items else None

        bindings: dict[str, Any] = {
            "input": InputAccessor(user_items, user_item),
            "log": make_log_module(capture=capture),
            "helpers": self.helpers,
        }
        if item_index is not None:
            bindings["item"] = user_item
        else:
            bindings["items"] = user_items
        if env is not None:
            bindings["env"] = env
        bindings.update(self.helpers)
        self.bindings = MappingProxyType(bindings)

    @property
    def captured_log(self) -> list[LogEntry]:
        return self.capture.entries()

    def to_namespace(self) -> dict[str, Any]:
        """Names merged into the interpreter globals."""
        return dict(self.bindings)

    def to_wire(self) -> dict[str, Any]:
        """JSON-serializable part for the isolated runner; helpers travel by name only."""
        wire: dict[str, Any] = {
            "items": [
                {**copy.deepcopy(i.to_external()), "index": i.index} for i in self.items
            ],
            "item_index": self.item_index,
            "helpers": sorted(self.helpers),
        }
        if self.env is not None:
            wire["env"] = {k: self.env.get(k) for k in self.env.keys()}
        return wire


class ExecutionContext(BaseModel):
    """Built fresh per invocation (per batch or per item); never shared."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    code_unit: CodeUnit
    items: tuple[InputItem, ...]
    helper_bindings: HelperContext
    quota: Quota


def _check_helper_names(helpers: Mapping[str, Any]) -> None:
    for name in helpers:
        if (
            not isinstance(name, str)
            or not name.isidentifier()
            or keyword.iskeyword(name)
            or name.startswith("_")
            or name in RESERVED_NAMES
        ):
            raise ValueError(f"Invalid helper name: {name!r}")


def build_helper_context(
    code_unit: CodeUnit,
    items: Sequence[InputItem],
    *,
    item_index: int | None = None,
    helpers: Mapping[str, Any] | None = None,
    env: Any = None,
    on_log: Callable[[LogEntry], Any] | None = None,
    capture: LogCapture | None = None,
) -> HelperContext:
    """
    Build the HelperContext for one invocation. ``item_index`` set means
    per-item mode and ``items`` must hold exactly that one item.
    """
    _helpers = dict(helpers or {})
    _check_helper_names(_helpers)
    if item_index is not None and len(items) != 1:
        raise ValueError("Per-item context requires exactly one item")
    return HelperContext(
        code_unit=code_unit,
        items=items,
        item_index=item_index,
        capture=capture if capture is not None else LogCapture(on_log),
        helpers=_helpers,
        env=env,
    )


def build_execution_context(
    code_unit: CodeUnit,
    items: Sequence[InputItem],
    quota: Quota,
    **kwargs: Any,
) -> ExecutionContext:
    helper_ctx = build_helper_context(code_unit, items, **kwargs)
    return ExecutionContext(
        code_unit=code_unit,
        items=tuple(items),
        helper_bindings=helper_ctx,
        quota=quota,
    )
