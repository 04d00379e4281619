from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import allure
import pytest

from agent_workflows.orchestrator import vcs
from agent_workflows.orchestrator.errors import CollaboratorError
from agent_workflows.orchestrator.models import Artifact
from agent_workflows.orchestrator.vcs import GhPullRequestClient, GitClient, run_command

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Git and Pull Requests"),
]


class _ScriptedCommands:
    """Records argv and answers from a prefix -> stdout table."""

    def __init__(self, answers: dict[tuple[str, ...], str] | None = None) -> None:
        self.answers = answers or {}
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str], *, cwd: Path) -> str:
        del cwd
        self.calls.append(list(argv))
        for prefix, answer in self.answers.items():
            if tuple(argv[: len(prefix)]) == prefix:
                return answer
        return ""


@pytest.fixture()
def commands(monkeypatch: pytest.MonkeyPatch) -> _ScriptedCommands:
    scripted = _ScriptedCommands()
    monkeypatch.setattr(vcs, "run_command", scripted)
    return scripted


def test_create_branch_checks_out_new_or_existing_branch(
    tmp_path: Path,
    commands: _ScriptedCommands,
) -> None:
    git = GitClient(tmp_path)

    assert git.create_branch("feature/login") == "feature/login"
    commands.answers[("git", "branch", "--list")] = "  feature/login"
    git.create_branch("feature/login")

    checkouts = [call for call in commands.calls if call[1] == "checkout"]
    assert checkouts == [
        ["git", "checkout", "-b", "feature/login"],
        ["git", "checkout", "feature/login"],
    ]


def test_commit_files_writes_artifacts_and_commits(
    tmp_path: Path,
    commands: _ScriptedCommands,
) -> None:
    commands.answers[("git", "status", "--porcelain")] = "A  src/app.py"
    commands.answers[("git", "rev-parse", "HEAD")] = "abc123"
    git = GitClient(tmp_path)

    commit = git.commit_files(
        [
            Artifact(name="app.py", type="code", content="print('hi')\n", path="src/app.py"),
            Artifact(name="note", type="documentation", content="no path"),
        ],
        "feat: add app",
    )

    assert commit == "abc123"
    assert (tmp_path / "src" / "app.py").read_text("utf-8") == "print('hi')\n"
    assert ["git", "add", "--", "src/app.py"] in commands.calls
    assert ["git", "commit", "-m", "feat: add app"] in commands.calls


def test_commit_files_skips_unchanged_and_rejects_escaping_paths(
    tmp_path: Path,
    commands: _ScriptedCommands,
) -> None:
    git = GitClient(tmp_path / "repo")

    unchanged = git.commit_files(
        [Artifact(name="a", type="code", content="x", path="a.py")],
        "noop",
    )

    assert unchanged is None
    assert not any(call[1] == "commit" for call in commands.calls)
    with pytest.raises(CollaboratorError, match="escapes repository"):
        git.commit_files([Artifact(name="x", type="code", content="x", path="../x.py")], "bad")


def test_delete_branch_refuses_checked_out_branch(
    tmp_path: Path,
    commands: _ScriptedCommands,
) -> None:
    commands.answers[("git", "rev-parse", "--abbrev-ref")] = "feature/login"
    git = GitClient(tmp_path)

    with pytest.raises(CollaboratorError, match="checked-out branch"):
        git.delete_branch("feature/login")
    git.delete_branch("feature/old", force=True)

    assert ["git", "branch", "-D", "feature/old"] in commands.calls


def test_pull_request_pushes_branch_and_returns_url(
    tmp_path: Path,
    commands: _ScriptedCommands,
) -> None:
    commands.answers[("gh", "pr", "create")] = "Creating pull request\nhttps://github.com/o/r/pull/7"
    client = GhPullRequestClient(GitClient(tmp_path), base_branch="develop")

    url = client.create_pull_request("feature/login", title="Login", body="Adds login", draft=True)

    assert url == "https://github.com/o/r/pull/7"
    assert commands.calls[0] == ["git", "push", "-u", "origin", "feature/login"]
    pr_call = commands.calls[1]
    assert pr_call[pr_call.index("--base") + 1] == "develop"
    assert pr_call[-1] == "--draft"


def test_run_command_reports_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(CollaboratorError, match="Command not found"):
        run_command(["definitely-not-a-vcs-binary", "status"], cwd=tmp_path)
