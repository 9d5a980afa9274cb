"""
Normalization of values returned by user code into OutputItems.

- standardize_output: recursively convert payloads to JSON-safe primitives
  (datetime/Decimal/UUID/bytes/sets converted, cycles dropped, unknown objects str()).
- normalize_all_items / normalize_each_item: enforce the per-mode return contract.
"""

import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from codenode.models_code import OutputItem

from .errors import ValidationError

_ITEM_KEYS = frozenset({"json", "binary", "pairedItem", "index"})


def standardize_output(obj: Any, _seen: frozenset[int] = frozenset()) -> Any:
    """JSON-safe copy of *obj*. Containers already on the current path are dropped."""
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, Decimal):
        if obj.is_finite() and obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode("utf-8", errors="replace")
    if isinstance(obj, (dict, list, tuple, set, frozenset)):
        if id(obj) in _seen:
            return None
        seen = _seen | {id(obj)}
        if isinstance(obj, dict):
            return {
                str(k): standardize_output(v, seen)
                for k, v in obj.items()
                if not (isinstance(v, (dict, list)) and id(v) in seen)
            }
        if isinstance(obj, (set, frozenset)):
            return [standardize_output(x, seen) for x in sorted(obj, key=str)]
        return [
            standardize_output(x, seen)
            for x in obj
            if not (isinstance(x, (dict, list)) and id(x) in seen)
        ]
    return str(obj)


def _paired_index(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int) and raw >= 0:
        return raw
    if isinstance(raw, dict):
        return _paired_index(raw.get("item"))
    return None


def normalize_item(raw: Any, position: int) -> OutputItem:
    """One returned value -> OutputItem; bare dicts are wrapped as json."""
    if not isinstance(raw, dict):
        raise ValidationError(
            f"Code doesn't return items properly: item {position} is "
            f"{type(raw).__name__}, not an object",
            item_index=position,
        )
    if "json" in raw and set(raw) <= _ITEM_KEYS:
        data = raw["json"]
        if not isinstance(data, dict):
            raise ValidationError(
                f"A 'json' property isn't an object: item {position}",
                item_index=position,
            )
        binary = raw.get("binary")
        if binary is not None and not isinstance(binary, dict):
            raise ValidationError(
                f"A 'binary' property isn't an object: item {position}",
                item_index=position,
            )
        return OutputItem(
            data=standardize_output(data),
            binary_attachments=standardize_output(binary) if binary else None,
            paired_item_index=_paired_index(raw.get("pairedItem")),
        )
    return OutputItem(data=standardize_output(raw))


def normalize_all_items(result: Any, input_count: int) -> list[OutputItem]:
    """
    Run-once-for-all-items contract: a list of items, a single item
    (normalized to one element) or None (no items).
    """
    if result is None:
        return []
    if isinstance(result, dict):
        result = [result]
    if not isinstance(result, (list, tuple)):
        raise ValidationError(
            "Code doesn't return items properly. Please return an array of objects, "
            "one for each item you would like to output."
        )
    items = [normalize_item(raw, pos) for pos, raw in enumerate(result)]
    if len(items) == input_count and all(i.paired_item_index is None for i in items):
        for pos, item in enumerate(items):
            item.paired_item_index = pos
    return items


def normalize_each_item(result: Any, index: int) -> OutputItem | None:
    """Run-once-for-each-item contract: exactly one item, or None to drop it."""
    if result is None:
        return None
    if isinstance(result, (list, tuple)):
        raise ValidationError(
            "Code doesn't return a single object. An array was returned instead. "
            "If you need to output multiple items, please use the "
            "'Run Once for All Items' mode.",
            item_index=index,
        )
    item = normalize_item(result, index)
    item.paired_item_index = index
    item.error = None
    return item
