"""Command-line interface for ferry."""

from __future__ import annotations

from ferry_core.cli.main import cli, main

__all__ = ["cli", "main"]
