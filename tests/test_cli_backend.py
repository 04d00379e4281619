from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from agent_workflows.orchestrator.backend.cli_backend import (
    CliAgentRunner,
    build_prompt,
    build_run_args,
)
from agent_workflows.orchestrator.collaborators import AgentRunRequest
from agent_workflows.orchestrator.errors import AgentExecutionError, AgentTimeoutError
from agent_workflows.orchestrator.models import Tier

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Agent Command Rendering"),
]

_PYTHON = shlex.quote(sys.executable)


def _request(*, timeout_seconds: float = 10.0, prompt_file: str | None = None) -> AgentRunRequest:
    return AgentRunRequest(
        agent="DEV_BACKEND",
        task_id="TASK-0003",
        context="<agent_context/>",
        tier=Tier.STANDARD,
        model="sonnet",
        timeout_seconds=timeout_seconds,
        prompt_file=prompt_file,
    )


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = build_run_args(
        command_template="claude -p {prompt} --model {model} --output-format json",
        model="opus",
        prompt='fix "the" bug; rm -rf /',
    )

    assert argv == [
        "claude",
        "-p",
        'fix "the" bug; rm -rf /',
        "--model",
        "opus",
        "--output-format",
        "json",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("claude --model {model}", "must include {prompt}"),
        ("claude {prompt} {workspace}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(AgentExecutionError, match=message):
        build_run_args(command_template=template, model="m", prompt="p")


def test_build_prompt_prepends_agent_instructions(tmp_path: Path) -> None:
    (tmp_path / "architect.md").write_text("You are the architect.\n\n", "utf-8")

    with_file = build_prompt(context="<ctx/>", prompt_file="architect.md", prompts_dir=tmp_path)
    missing = build_prompt(context="<ctx/>", prompt_file="nope.md", prompts_dir=tmp_path)

    assert with_file == "You are the architect.\n\n<ctx/>"
    assert missing == "<ctx/>"
    assert build_prompt(context="<ctx/>", prompt_file="architect.md", prompts_dir=None) == "<ctx/>"


def test_execute_returns_stdout_and_passes_agent_env(tmp_path: Path) -> None:
    script = "import os, sys; print(os.environ['AGENT_WORKFLOWS_AGENT'], sys.argv[1])"
    runner = CliAgentRunner(command_template=f"{_PYTHON} -c {shlex.quote(script)} {{prompt}}")

    output = runner.execute(_request())

    assert output.strip() == "DEV_BACKEND <agent_context/>"


def test_execute_raises_on_nonzero_exit_without_output() -> None:
    script = "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"
    runner = CliAgentRunner(command_template=f"{_PYTHON} -c {shlex.quote(script)} {{prompt}}")

    with pytest.raises(AgentExecutionError, match="exited with code 3: boom"):
        runner.execute(_request())


def test_execute_times_out_slow_agents() -> None:
    script = "import time; time.sleep(10)"
    runner = CliAgentRunner(command_template=f"{_PYTHON} -c {shlex.quote(script)} {{prompt}}")

    with pytest.raises(AgentTimeoutError):
        runner.execute(_request(timeout_seconds=0.3))


def test_missing_executable_is_reported() -> None:
    runner = CliAgentRunner(command_template="definitely-not-an-agent-cli {prompt}")

    assert runner.is_available() is False
    with pytest.raises(AgentExecutionError, match="command not found"):
        runner.execute(_request())
