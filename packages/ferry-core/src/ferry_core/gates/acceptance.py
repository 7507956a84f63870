"""Acceptance test gate running an external command against the deployment."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time

from ferry_core.backends._process import tail
from ferry_core.errors import RunCancelledError
from ferry_core.gates.base import GateEvaluator, GateVerdict, render_template, template_context
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import AcceptanceTestGateConfig, GateKind, GateOutcome

_CANCEL_CHECK_SECONDS = 0.25


class AcceptanceTestGate(GateEvaluator):
    """Run a shell command; exit code 0 passes.

    Template values substituted into the command are shell-quoted. On
    timeout or cancellation the command's process group receives SIGTERM,
    then SIGKILL after ``grace_period_seconds``.
    """

    kind = GateKind.ACCEPTANCE_TEST

    def __init__(self, config: AcceptanceTestGateConfig) -> None:
        super().__init__(config.name, required=config.required)
        self.config = config

    def build_command(self, target: DeploymentTarget, artifact: ArtifactReference) -> str:
        context = template_context(target, artifact)
        if self.config.base_url:
            context["base_url"] = render_template(self.config.base_url, context)
        else:
            context["base_url"] = ""
        quoted = {key: shlex.quote(value) for key, value in context.items()}
        return render_template(self.config.command, quoted)

    def _terminate(self, proc: subprocess.Popen[str]) -> str:
        """Stop the command's process group and collect remaining output."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            output, _ = proc.communicate(timeout=self.config.grace_period_seconds)
        except subprocess.TimeoutExpired:
            self._log.warning("acceptance_test_kill", pid=proc.pid)
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            output, _ = proc.communicate()
        return output or ""

    def _evaluate(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        cancel: CancellationToken,
    ) -> GateVerdict:
        command = self.build_command(target, artifact)
        timeout = self.config.timeout_seconds
        deadline = time.monotonic() + timeout
        self._log.debug("acceptance_test_started", command=command)

        proc = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                output = self._terminate(proc)
                return GateVerdict(
                    GateOutcome.TIMEOUT,
                    {
                        "command": command,
                        "timeout_seconds": timeout,
                        "output": tail(output),
                    },
                )
            try:
                output, _ = proc.communicate(timeout=min(remaining, _CANCEL_CHECK_SECONDS))
            except subprocess.TimeoutExpired:
                if cancel.cancelled:
                    self._terminate(proc)
                    raise RunCancelledError(cancel.run_id, f"gate {self.name}") from None
                continue
            break

        outcome = GateOutcome.PASS if proc.returncode == 0 else GateOutcome.FAIL
        return GateVerdict(
            outcome,
            {"command": command, "exit_code": proc.returncode, "output": tail(output)},
        )


__all__ = ["AcceptanceTestGate"]
