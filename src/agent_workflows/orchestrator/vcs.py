"""Git and GitHub pull request collaborators backed by the ``git``/``gh`` CLIs."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from agent_workflows.orchestrator.errors import CollaboratorError
from agent_workflows.orchestrator.models import Artifact

logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT_SECONDS = 120


def run_command(argv: Sequence[str], *, cwd: Path) -> str:
    """Run a CLI command and return stripped stdout, raising on failure."""

    try:
        completed = subprocess.run(  # noqa: S603
            list(argv),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=_COMMAND_TIMEOUT_SECONDS,
            check=False,
        )
    except FileNotFoundError as error:
        raise CollaboratorError(f"Command not found: {argv[0]}") from error
    except (OSError, subprocess.TimeoutExpired) as error:
        raise CollaboratorError(f"Command {' '.join(argv[:2])} failed: {error}") from error
    if completed.returncode != 0:
        detail = completed.stderr.strip() or completed.stdout.strip() or "no output"
        raise CollaboratorError(
            f"Command {' '.join(argv[:2])} exited with {completed.returncode}: {detail}",
        )
    return completed.stdout.strip()


class GitClient:
    """Branch and commit operations on a local repository."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _git(self, *args: str) -> str:
        return run_command(["git", *args], cwd=self.repo_root)

    def ensure_repository(self) -> None:
        try:
            self._git("rev-parse", "--git-dir")
        except CollaboratorError as error:
            raise CollaboratorError(
                f"Not a git repository: {self.repo_root}. Initialize git first.",
            ) from error

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD")

    def branch_exists(self, name: str) -> bool:
        return bool(self._git("branch", "--list", name))

    def create_branch(self, name: str) -> str:
        self.ensure_repository()
        if self.branch_exists(name):
            self._git("checkout", name)
        else:
            self._git("checkout", "-b", name)
        logger.info("Checked out branch %s", name)
        return name

    def commit_files(self, files: Sequence[Artifact], message: str) -> str | None:
        """Write artifacts under the repository root and commit them."""

        written: list[str] = []
        for artifact in files:
            if not artifact.path:
                continue
            target = (self.repo_root / artifact.path).resolve()
            if not target.is_relative_to(self.repo_root):
                raise CollaboratorError(f"Artifact path escapes repository: {artifact.path}")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(artifact.content, "utf-8")
            except OSError as error:
                raise CollaboratorError(f"Failed to write {artifact.path}: {error}") from error
            written.append(str(target.relative_to(self.repo_root)))

        if not written:
            return None
        self._git("add", "--", *written)
        if not self._git("status", "--porcelain", "--", *written):
            logger.info("No changes to commit for: %s", message)
            return None
        self._git("commit", "-m", message)
        return self._git("rev-parse", "HEAD")

    def delete_branch(self, name: str, *, force: bool = False) -> None:
        if self.current_branch() == name:
            raise CollaboratorError(f"Cannot delete the checked-out branch {name}")
        self._git("branch", "-D" if force else "-d", name)
        logger.info("Deleted branch %s", name)

    def push(self, name: str, *, remote: str = "origin") -> None:
        self._git("push", "-u", remote, name)


class GhPullRequestClient:
    """Open pull requests with the GitHub CLI after pushing the branch."""

    def __init__(self, git: GitClient, *, base_branch: str = "main") -> None:
        self.git = git
        self.base_branch = base_branch

    def create_pull_request(self, branch: str, *, title: str, body: str, draft: bool) -> str:
        self.git.push(branch)
        argv = [
            "gh",
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            self.base_branch,
            "--head",
            branch,
        ]
        if draft:
            argv.append("--draft")
        output = run_command(argv, cwd=self.git.repo_root)
        url = output.splitlines()[-1] if output else ""
        logger.info("Pull request created: %s", url)
        return url
