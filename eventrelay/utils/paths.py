"""
Dot-path access into JSON-like payloads.

Supported segments:
- "customer.address.city"   nested keys
- "items[0].sku"            list index
- "items[].sku"             fan-out: returns the list of every item's sku
"""
import re
from typing import Any

MISSING = object()

# Highest explicit index set_path will pad a list out to
MAX_LIST_INDEX = 10_000

_SEGMENT_RE = re.compile(r"^(?P<key>[^\[\]]*)(?P<index>\[(?P<pos>\d*)\])?$")


def _parse(path: str) -> list[tuple[str, object]]:
    """Split a path into (key, index) pairs; index is None, an int, or "*"."""
    segments = []
    for raw in path.split("."):
        match = _SEGMENT_RE.match(raw)
        if not match:
            raise ValueError(f"Invalid path segment: {raw!r}")
        index: object = None
        if match.group("index") is not None:
            pos = match.group("pos")
            index = int(pos) if pos else "*"
        segments.append((match.group("key"), index))
    return segments


def _get(value: Any, segments: list[tuple[str, object]]) -> Any:
    for i, (key, index) in enumerate(segments):
        if key:
            if not isinstance(value, dict) or key not in value:
                return MISSING
            value = value[key]
        if index is None:
            continue
        if not isinstance(value, list):
            return MISSING
        if index == "*":
            rest = segments[i + 1:]
            if not rest:
                return list(value)
            results = [_get(item, rest) for item in value]
            return [r for r in results if r is not MISSING]
        if index >= len(value):
            return MISSING
        value = value[index]
    return value


def get_path(data: Any, path: str, default: Any = MISSING) -> Any:
    """Resolve a path; returns `default` (MISSING unless given) when absent."""
    if not path:
        return data
    try:
        result = _get(data, _parse(path))
    except ValueError:
        return default
    return default if result is MISSING else result


def set_path(target: dict, path: str, value: Any) -> None:
    """
    Assign into a nested dict, creating intermediate dicts/lists.
    A "[]" segment spreads a list value across list items.
    """
    _set(target, _parse(path), value)


def _set(container: dict, segments: list[tuple[str, object]], value: Any) -> None:
    key, index = segments[0]
    rest = segments[1:]

    if index is None:
        if not rest:
            container[key] = value
            return
        child = container.get(key)
        if not isinstance(child, dict):
            child = {}
            container[key] = child
        _set(child, rest, value)
        return

    items = container.get(key)
    if not isinstance(items, list):
        items = []
        container[key] = items

    if index == "*":
        values = value if isinstance(value, list) else [value]
        for pos, item_value in enumerate(values):
            _set_index(items, pos, rest, item_value)
        return
    if index > MAX_LIST_INDEX:
        raise ValueError(f"List index {index} is above the limit of {MAX_LIST_INDEX}")
    _set_index(items, index, rest, value)


def _set_index(items: list, pos: int, rest: list, value: Any) -> None:
    while len(items) <= pos:
        items.append({} if rest else None)
    if not rest:
        items[pos] = value
        return
    if not isinstance(items[pos], dict):
        items[pos] = {}
    _set(items[pos], rest, value)
