"""Helm values helpers."""

from __future__ import annotations

from ferry_core.helm.values import dump_values, get_value, load_values, merge_values, patch_for_key

__all__ = ["dump_values", "get_value", "load_values", "merge_values", "patch_for_key"]
