"""Subprocess-based agent runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from agent_workflows.config import DEFAULT_RUNNER_COMMAND, RunnerSettings
from agent_workflows.orchestrator.collaborators import AgentRunRequest
from agent_workflows.orchestrator.errors import AgentExecutionError, AgentTimeoutError

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


class CliAgentRunner:
    """Render the configured command template per agent and run it with a timeout."""

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_RUNNER_COMMAND,
        prompts_dir: Path | None = None,
        graceful_shutdown_seconds: float = 2.0,
    ) -> None:
        self.command_template = command_template
        self.prompts_dir = prompts_dir
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> CliAgentRunner:
        return cls(
            command_template=settings.command_template,
            prompts_dir=settings.prompts_dir,
            graceful_shutdown_seconds=settings.graceful_shutdown_seconds,
        )

    def is_available(self) -> bool:
        try:
            argv = build_run_args(command_template=self.command_template, model="-", prompt="-")
        except AgentExecutionError:
            return False
        return shutil.which(argv[0]) is not None

    def execute(self, request: AgentRunRequest) -> str:
        prompt = build_prompt(
            context=request.context,
            prompt_file=request.prompt_file,
            prompts_dir=self.prompts_dir,
        )
        argv = build_run_args(
            command_template=self.command_template,
            model=request.model,
            prompt=prompt,
        )
        env = os.environ.copy()
        env["AGENT_WORKFLOWS_HEADLESS"] = "1"
        env["AGENT_WORKFLOWS_AGENT"] = request.agent
        env["AGENT_WORKFLOWS_MODEL"] = request.model
        if request.task_id:
            env["AGENT_WORKFLOWS_TASK_ID"] = request.task_id

        logger.debug("Running %s for agent %s", argv[0], request.agent)
        with (
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
        ):
            try:
                exit_code = _run_subprocess(
                    argv=argv,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
            except FileNotFoundError as error:
                raise AgentExecutionError(
                    f"Agent runner command not found: {argv[0]}",
                    agent=request.agent,
                ) from error
            except OSError as error:
                raise AgentExecutionError(
                    f"Agent runner failed to start: {error}",
                    agent=request.agent,
                ) from error

            if exit_code is None:
                raise AgentTimeoutError(request.agent, request.timeout_seconds)

            stdout_handle.seek(0)
            stderr_handle.seek(0)
            stdout = stdout_handle.read()
            stderr = stderr_handle.read()

        if exit_code != 0 and not stdout.strip():
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
            raise AgentExecutionError(
                f"Agent runner exited with code {exit_code}: {detail}",
                agent=request.agent,
            )
        return stdout


def build_prompt(*, context: str, prompt_file: str | None, prompts_dir: Path | None) -> str:
    """Agent instructions (when a prompt file exists) followed by the task context."""

    if prompt_file and prompts_dir is not None:
        path = prompts_dir / prompt_file
        if path.is_file():
            return f"{path.read_text('utf-8').rstrip()}\n\n{context}"
        logger.warning("Prompt file not found: %s", path)
    return context


def build_run_args(*, command_template: str, model: str, prompt: str) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentExecutionError("Agent runner command template is empty.")
    if "{prompt}" not in stripped:
        raise AgentExecutionError("Agent runner command template must include {prompt}.")

    try:
        rendered = stripped.format(model=shlex.quote(model), prompt=shlex.quote(prompt))
    except KeyError as error:
        raise AgentExecutionError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentExecutionError("Agent runner command template rendered empty command.")
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    argv: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: float,
) -> int | None:
    """Return the exit code, or ``None`` when the agent was stopped before exiting."""

    process = subprocess.Popen(  # noqa: S603
        argv,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            return process.wait(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            pass
        if shutdown_requested is not None and shutdown_requested():
            # A shutdown shortens the deadline to the grace period, never extends it.
            deadline = min(deadline, time.monotonic() + max(0.0, graceful_shutdown_seconds))
            shutdown_requested = None
        if time.monotonic() >= deadline:
            _stop_process(process)
            return None


def _stop_process(process: subprocess.Popen[str]) -> None:
    """SIGTERM, then SIGKILL if the agent ignores it."""

    for stop in (process.terminate, process.kill):
        try:
            stop()
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            continue
        except OSError:
            return
        return
