"""Helm values document helpers.

The production desired state is a Helm values file. These helpers read a
dotted key out of a values document, build a nested patch from a dotted key,
and merge a patch into a document without mutating the input.

Example:
    >>> patch = patch_for_key("image.tag", "42")
    >>> patch
    {'image': {'tag': '42'}}
    >>> merged = merge_values({"image": {"repository": "shop/api", "tag": "41"}}, patch)
    >>> get_value(merged, "image.tag")
    '42'
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any

import yaml


def get_value(values: dict[str, Any], dotted_key: str, default: Any = None) -> Any:
    """Read ``dotted_key`` (e.g. "image.tag") from a values document."""
    node: Any = values
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def patch_for_key(dotted_key: str, value: Any) -> dict[str, Any]:
    """Build the nested patch that sets ``dotted_key`` to ``value``."""
    patch: dict[str, Any] = {}
    node = patch
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        node[part] = {}
        node = node[part]
    node[parts[-1]] = value
    return patch


def merge_values(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Recursively apply ``patch`` on top of ``base``.

    Mappings merge key by key; any other value in the patch (scalars and
    lists) replaces the base value. Inputs are not modified.
    """
    result = deepcopy(base)
    for key, value in patch.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = merge_values(current, value)
        else:
            result[key] = deepcopy(value)
    return result


def load_values(text: str) -> dict[str, Any]:
    """Parse a values document; an empty document is an empty mapping.

    Raises:
        ValueError: If the document is not a YAML mapping.
    """
    loaded = yaml.safe_load(text) if text.strip() else {}
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Values document must be a mapping, got {type(loaded).__name__}")
    return loaded


def dump_values(values: dict[str, Any]) -> str:
    """Serialize a values document, preserving key order."""
    return yaml.safe_dump(values, default_flow_style=False, sort_keys=False)


__all__ = ["dump_values", "get_value", "load_values", "merge_values", "patch_for_key"]
