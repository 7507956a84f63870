"""Verification gates evaluated before promotion."""

from __future__ import annotations

from ferry_core.gates.acceptance import AcceptanceTestGate
from ferry_core.gates.base import GateEvaluator, GateVerdict, render_template, template_context
from ferry_core.gates.health import HealthCheckGate
from ferry_core.gates.quality import QualityGate
from ferry_core.gates.runner import build_gate, build_gates, run_gates

__all__ = [
    "AcceptanceTestGate",
    "GateEvaluator",
    "GateVerdict",
    "HealthCheckGate",
    "QualityGate",
    "build_gate",
    "build_gates",
    "render_template",
    "run_gates",
    "template_context",
]
