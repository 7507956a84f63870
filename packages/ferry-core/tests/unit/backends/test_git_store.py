"""Unit tests for the git-backed desired-state store.

git is simulated by patching ``run_tool``; the values file itself is real.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from ferry_core.backends.git_store import GitValuesStore, is_rejected_push, write_atomic
from ferry_core.errors import ConflictError, StateStoreError, ValidationError
from ferry_core.helm.values import load_values
from ferry_core.schemas.config import GitOpsConfig

VALUES = "helm/shop-api/values-prod.yaml"
REJECTED = """\
To github.com:example/deploy-config.git
 ! [rejected]        HEAD -> main (fetch first)
error: failed to push some refs
"""


def _git_command(cmd: list[str]) -> str:
    """The git subcommand, skipping ``-c key=value`` options."""
    args = cmd[1:]
    while args and args[0] == "-c":
        args = args[2:]
    return args[0]


def _fake_git(
    failures: dict[str, subprocess.CompletedProcess[str]] | None = None,
) -> Callable[..., subprocess.CompletedProcess[str]]:
    failures = failures or {}

    def run(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        sub = _git_command(cmd)
        if sub in failures:
            return failures[sub]
        stdout = "9f3c2a1\n" if sub == "rev-parse" else ""
        return subprocess.CompletedProcess(cmd, 0, stdout, "")

    return run


def _subcommands(run: MagicMock) -> list[str]:
    return [_git_command(c.args[0]) for c in run.call_args_list]


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A deployment config checkout recording build 41."""
    values = tmp_path / VALUES
    values.parent.mkdir(parents=True)
    values.write_text("image:\n  repository: registry.example.com/shop/api\n  tag: '41'\nreplicas: 2\n")
    return tmp_path


@pytest.fixture
def store(repo: Path) -> GitValuesStore:
    """Store over the checkout."""
    return GitValuesStore(GitOpsConfig(repo_path=str(repo)))


class TestHelpers:
    """Tests for module helpers."""

    @pytest.mark.requirement("FR-620")
    def test_rejected_push_detection(self) -> None:
        """Rejected pushes are told apart from other push failures."""
        assert is_rejected_push(REJECTED)
        assert not is_rejected_push("fatal: Authentication failed")

    @pytest.mark.requirement("FR-620")
    def test_write_atomic_replaces_file(self, tmp_path: Path) -> None:
        """write_atomic leaves the new content and no temporary files."""
        target = tmp_path / "nested" / "values.yaml"
        write_atomic(target, "a: 1\n")
        write_atomic(target, "a: 2\n")

        assert target.read_text() == "a: 2\n"
        assert [p.name for p in target.parent.iterdir()] == ["values.yaml"]


class TestGitValuesStore:
    """Tests for GitValuesStore."""

    @pytest.mark.requirement("FR-621")
    def test_read_pulls_then_reads(self, store: GitValuesStore) -> None:
        """Reads fast-forward the clone first."""
        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git()) as run:
            values = store.read_desired_state(VALUES)

        assert values["image"]["tag"] == "41"
        assert run.call_args_list[0].args[0] == ["git", "pull", "--ff-only", "origin", "main"]

    @pytest.mark.requirement("FR-621")
    def test_missing_file_reads_empty(self, store: GitValuesStore) -> None:
        """A values file that does not exist yet is an empty document."""
        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git()):
            assert store.read_desired_state("helm/other/values.yaml") == {}

    @pytest.mark.requirement("FR-621")
    def test_paths_outside_repo_rejected(self, store: GitValuesStore) -> None:
        """The store never touches files outside the checkout."""
        with pytest.raises(ValidationError):
            store.read_desired_state("../../etc/passwd")

    @pytest.mark.requirement("FR-621")
    def test_current_revision_is_head(
        self, store: GitValuesStore, otel_exporter: InMemorySpanExporter
    ) -> None:
        """The revision the engine must converge to is the clone's HEAD."""
        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git()) as run:
            assert store.current_revision() == "9f3c2a1"

        assert run.call_args.args[0] == ["git", "rev-parse", "HEAD"]
        assert [s.name for s in otel_exporter.get_finished_spans()] == ["ferry.state_store.revision"]

    @pytest.mark.requirement("FR-621")
    def test_current_revision_failure(self, store: GitValuesStore) -> None:
        """An unresolvable HEAD is a StateStoreError."""
        failures = {"rev-parse": subprocess.CompletedProcess([], 128, "", "fatal: bad revision 'HEAD'")}

        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git(failures)):
            with pytest.raises(StateStoreError, match="bad revision"):
                store.current_revision()

    @pytest.mark.requirement("FR-622")
    def test_commit_patches_and_pushes(self, store: GitValuesStore, repo: Path) -> None:
        """A commit updates the tag, keeps siblings and pushes one commit."""
        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git()) as run:
            sha = store.commit_desired_state(VALUES, {"image": {"tag": "42"}}, "Promote shop-api to build 42")

        assert sha == "9f3c2a1"
        values = load_values((repo / VALUES).read_text())
        assert values == {
            "image": {"repository": "registry.example.com/shop/api", "tag": "42"},
            "replicas": 2,
        }
        assert _subcommands(run) == ["pull", "add", "commit", "rev-parse", "push"]
        commit_cmd = run.call_args_list[2].args[0]
        assert "user.name=ferry" in commit_cmd
        assert commit_cmd[-1] == "Promote shop-api to build 42"

    @pytest.mark.requirement("FR-622")
    def test_unchanged_patch_is_noop(self, store: GitValuesStore) -> None:
        """Re-recording the current tag creates no commit."""
        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git()) as run:
            sha = store.commit_desired_state(VALUES, {"image": {"tag": "41"}}, "noop")

        assert sha == "9f3c2a1"
        assert _subcommands(run) == ["pull", "rev-parse"]

    @pytest.mark.requirement("FR-623")
    def test_rejected_push_is_conflict_and_rolls_back(self, store: GitValuesStore) -> None:
        """A lost race raises a retryable ConflictError after resetting to the remote."""
        failures = {"push": subprocess.CompletedProcess([], 1, "", REJECTED)}

        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git(failures)) as run:
            with pytest.raises(ConflictError) as exc_info:
                store.commit_desired_state(VALUES, {"image": {"tag": "42"}}, "Promote")

        assert exc_info.value.retryable
        assert run.call_args_list[-1].args[0] == ["git", "reset", "--hard", "origin/main"]

    @pytest.mark.requirement("FR-623")
    def test_other_push_failure_is_store_error(self, store: GitValuesStore) -> None:
        """Authentication and network failures are not conflicts."""
        failures = {"push": subprocess.CompletedProcess([], 128, "", "fatal: Authentication failed")}

        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git(failures)):
            with pytest.raises(StateStoreError) as exc_info:
                store.commit_desired_state(VALUES, {"image": {"tag": "42"}}, "Promote")

        assert not exc_info.value.retryable

    @pytest.mark.requirement("FR-623")
    def test_pull_failure(self, store: GitValuesStore) -> None:
        """A diverged clone cannot be fast-forwarded."""
        failures = {"pull": subprocess.CompletedProcess([], 1, "", "fatal: Not possible to fast-forward")}

        with patch("ferry_core.backends.git_store.run_tool", side_effect=_fake_git(failures)):
            with pytest.raises(StateStoreError, match="fast-forward"):
                store.commit_desired_state(VALUES, {"image": {"tag": "42"}}, "Promote")

    @pytest.mark.requirement("FR-623")
    def test_git_timeout(self, store: GitValuesStore) -> None:
        """A hanging git invocation is a StateStoreError."""
        with patch(
            "ferry_core.backends.git_store.run_tool",
            side_effect=subprocess.TimeoutExpired(["git"], 120),
        ):
            with pytest.raises(StateStoreError, match="timed out"):
                store.read_desired_state(VALUES)
