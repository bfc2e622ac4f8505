from __future__ import annotations

from copy import deepcopy
from typing import Any, Mapping


def _merge_dict(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dict(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _set_dotted_key(target: dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    if any(not part for part in parts):
        raise ValueError(f"Invalid dotted key: {dotted_key!r}")

    cursor: dict[str, Any] = target
    for part in parts[:-1]:
        existing = cursor.get(part)
        if existing is None:
            next_node: dict[str, Any] = {}
            cursor[part] = next_node
            cursor = next_node
            continue
        if not isinstance(existing, dict):
            raise ValueError(f"Dotted override conflicts with non-mapping key: {dotted_key!r}")
        cursor = existing
    cursor[parts[-1]] = deepcopy(value)


def build_strategy_params(
    defaults: Mapping[str, Any],
    base_params: Mapping[str, Any],
    overrides: Mapping[str, Any],
) -> dict[str, Any]:
    """Layer spec base params and one combination's dotted overrides onto defaults."""
    params = _merge_dict(dict(deepcopy(defaults)), base_params)
    for dotted_key, value in overrides.items():
        _set_dotted_key(params, dotted_key, value)
    return params
