from __future__ import annotations

import json

import allure

from agent_workflows.orchestrator.models import AgentOutput, Artifact
from agent_workflows.orchestrator.response_parser import (
    detect_artifact_type,
    parse_agent_response,
    validate_output,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Agent Output Parsing"),
]


def test_json_payload_is_normalized() -> None:
    raw = json.dumps(
        {
            "summary": "Built the API",
            "files": [{"filepath": "src/app.test.ts", "code": "it('works')"}],
            "usage": {"total_tokens": 1234},
            "nextSteps": ["Add auth"],
        },
    )

    output = parse_agent_response(raw)

    assert output.success is True
    assert output.summary == "Built the API"
    assert output.metadata.resource_units == 1234
    assert output.next_steps == ["Add auth"]
    assert output.artifacts[0].path == "src/app.test.ts"
    assert output.artifacts[0].type == "test"
    assert output.artifacts[0].content == "it('works')"


def test_mapping_payload_with_explicit_failure() -> None:
    output = parse_agent_response({"success": False, "message": "Could not compile"})

    assert output.success is False
    assert output.summary == "Could not compile"


def test_free_text_extracts_summary_code_blocks_and_steps() -> None:
    text = (
        "## Summary: Implemented the login form\n\n"
        "```tsx\n// file: src/Login.tsx\nexport const Login = () => null;\n```\n\n"
        "Updated: src/routes.ts\n"
        "Warning: no tests yet\n\n"
        "Next steps:\n- Add validation\n- Wire the API\n"
    )

    output = parse_agent_response(text)

    assert output.summary == "Implemented the login form"
    assert output.artifacts[0].path == "src/Login.tsx"
    assert output.artifacts[0].content == "export const Login = () => null;"
    assert output.metadata.files_created == ["src/Login.tsx"]
    assert "src/routes.ts" in output.metadata.files_modified
    assert output.warnings == ["no tests yet"]
    assert output.next_steps == ["Add validation", "Wire the API"]
    assert output.success is True


def test_free_text_with_unrecovered_error_is_unsuccessful() -> None:
    assert parse_agent_response("The build failed with an exception").success is False
    assert parse_agent_response("The build failed but I fixed it").success is True


def test_detect_artifact_type() -> None:
    assert detect_artifact_type("src/main.py") == "code"
    assert detect_artifact_type("config/app.yaml") == "config"
    assert detect_artifact_type("README.md") == "documentation"
    assert detect_artifact_type("tests/test_main.py") == "test"
    assert detect_artifact_type("Makefile") == "file"


def test_validate_output_reports_contract_problems() -> None:
    output = AgentOutput(
        success=True,
        summary="",
        artifacts=[
            Artifact(name="empty", type="code", content=""),
            Artifact(name="evil", type="code", content="x", path="../etc/passwd"),
        ],
    )

    problems = validate_output(output)

    assert "summary is empty" in problems
    assert any("has no content" in problem for problem in problems)
    assert any("escapes the repository" in problem for problem in problems)
    assert validate_output(AgentOutput(success=True, summary="ok")) == []
