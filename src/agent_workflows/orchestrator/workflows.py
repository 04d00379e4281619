"""Predefined workflow catalog and authoring validation."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from agent_workflows.orchestrator.agents import AgentGraph
from agent_workflows.orchestrator.errors import UnknownWorkflowError, WorkflowValidationError
from agent_workflows.orchestrator.models import (
    ExecutionMode,
    PrFailureMode,
    Stage,
    WorkflowDefinition,
    WorkflowOptions,
)

SEQ = ExecutionMode.SEQUENTIAL
PAR = ExecutionMode.PARALLEL

PREDEFINED_WORKFLOWS: dict[str, WorkflowDefinition] = {
    definition.workflow_id: definition
    for definition in (
        WorkflowDefinition(
            workflow_id="FULL_APP_GENERATION",
            name="Full Application Generation",
            description="Generate a complete application from requirements to deployment.",
            category="generation",
            stages=(
                Stage("Planning", ("PM",), SEQ, "Requirements and user stories"),
                Stage(
                    "Architecture & Design",
                    ("ARCHITECT", "UIUX"),
                    PAR,
                    "System architecture and UI design",
                    depends_on="Planning",
                ),
                Stage(
                    "Technical Leadership",
                    ("TL_FRONTEND", "TL_BACKEND"),
                    PAR,
                    "Implementation plans",
                    depends_on="Architecture & Design",
                ),
                Stage(
                    "Development",
                    ("DEV_FRONTEND", "DEV_BACKEND"),
                    PAR,
                    "Frontend and backend implementation",
                    depends_on="Technical Leadership",
                ),
                Stage(
                    "Quality & Security",
                    ("TEST", "CQR", "SR"),
                    PAR,
                    "Testing, code review, and security review",
                    depends_on="Development",
                ),
                Stage(
                    "Deployment",
                    ("DOE",),
                    SEQ,
                    "Build and deployment setup",
                    depends_on="Quality & Security",
                ),
            ),
            options=WorkflowOptions(pr_failure_mode=PrFailureMode.FAIL),
        ),
        WorkflowDefinition(
            workflow_id="FEATURE_ADDITION",
            name="Feature Addition",
            description="Add a feature to an existing application.",
            category="development",
            stages=(
                Stage("Feature Planning", ("PM",), SEQ),
                Stage(
                    "Technical Design",
                    ("ARCHITECT", "UIUX"),
                    PAR,
                    depends_on="Feature Planning",
                ),
                Stage(
                    "Implementation",
                    ("DEV_FRONTEND", "DEV_BACKEND"),
                    PAR,
                    depends_on="Technical Design",
                ),
                Stage("Validation", ("TEST", "CQR"), PAR, depends_on="Implementation"),
            ),
            options=WorkflowOptions(pr_failure_mode=PrFailureMode.FAIL),
        ),
        WorkflowDefinition(
            workflow_id="BUG_FIX",
            name="Bug Fix",
            description="Investigate, fix, and verify a bug.",
            category="maintenance",
            stages=(
                Stage("Investigation", ("PM",), SEQ),
                Stage(
                    "Fix Implementation",
                    ("DEV_FRONTEND", "DEV_BACKEND"),
                    PAR,
                    depends_on="Investigation",
                ),
                Stage("Verification", ("TEST",), SEQ, depends_on="Fix Implementation"),
            ),
            options=WorkflowOptions(draft_pr=False, pr_failure_mode=PrFailureMode.FAIL),
        ),
        WorkflowDefinition(
            workflow_id="REFACTORING",
            name="Code Refactoring",
            description="Analyze and refactor existing code.",
            category="maintenance",
            stages=(
                Stage("Analysis", ("ARCHITECT",), SEQ),
                Stage(
                    "Refactoring",
                    ("DEV_FRONTEND", "DEV_BACKEND"),
                    PAR,
                    depends_on="Analysis",
                ),
                Stage("Validation", ("TEST", "CQR"), PAR, depends_on="Refactoring"),
            ),
        ),
        WorkflowDefinition(
            workflow_id="TEST_GENERATION",
            name="Test Generation",
            description="Plan and implement tests for existing code.",
            category="quality",
            stages=(Stage("Test Implementation", ("TEST",), SEQ),),
        ),
        WorkflowDefinition(
            workflow_id="CODE_REVIEW",
            name="Code Review",
            description="Review code quality and architecture.",
            category="quality",
            stages=(
                Stage("Quality Review", ("CQR",), SEQ),
                Stage("Architecture Review", ("ARCHITECT",), SEQ, depends_on="Quality Review"),
            ),
            options=WorkflowOptions(create_pr=False, create_branch=False),
        ),
        WorkflowDefinition(
            workflow_id="SECURITY_AUDIT",
            name="Security Audit",
            description="Audit the application for security vulnerabilities.",
            category="security",
            stages=(
                Stage("Security Analysis", ("SR",), SEQ),
                Stage(
                    "Architecture Security Review",
                    ("ARCHITECT",),
                    SEQ,
                    depends_on="Security Analysis",
                ),
            ),
            options=WorkflowOptions(
                create_pr=False,
                create_branch=False,
                pr_failure_mode=PrFailureMode.FAIL,
            ),
        ),
    )
}


def validate_workflow(definition: WorkflowDefinition, graph: AgentGraph) -> None:
    """Reject authoring defects: unknown agents, repeats, and misplaced dependencies.

    Dependencies on agents that are not part of the workflow are treated as
    provided from outside (for example by an earlier session) and are not checked.
    """

    problems: list[str] = []
    if not definition.stages:
        problems.append("workflow has no stages")

    stage_of: dict[str, int] = {}
    for index, stage in enumerate(definition.stages):
        if not stage.agents:
            problems.append(f"stage {stage.name!r} has no agents")
        for tag in stage.agents:
            if tag not in graph:
                problems.append(f"stage {stage.name!r} references unknown agent {tag}")
                continue
            if tag in stage_of:
                problems.append(f"agent {tag} appears in more than one stage")
                continue
            stage_of[tag] = index

    for tag, index in stage_of.items():
        for dependency in graph.dependencies_of(tag):
            dependency_index = stage_of.get(dependency)
            if dependency_index is not None and dependency_index >= index:
                problems.append(
                    f"agent {tag} in stage {definition.stages[index].name!r} depends on "
                    f"{dependency} which is not in an earlier stage",
                )

    if problems:
        raise WorkflowValidationError(definition.workflow_id, problems)


def get_workflow(workflow_id: str) -> WorkflowDefinition:
    try:
        return PREDEFINED_WORKFLOWS[workflow_id.strip().upper()]
    except KeyError as error:
        raise UnknownWorkflowError(workflow_id) from error


def workflow_ids() -> list[str]:
    return list(PREDEFINED_WORKFLOWS)


def workflow_categories() -> list[str]:
    return sorted({definition.category for definition in PREDEFINED_WORKFLOWS.values()})


def workflows_by_category(category: str) -> list[WorkflowDefinition]:
    return [
        definition
        for definition in PREDEFINED_WORKFLOWS.values()
        if definition.category == category
    ]


def workflow_agents(workflow_id: str) -> list[str]:
    return get_workflow(workflow_id).agents()


def create_custom_workflow(
    base_id: str,
    *,
    workflow_id: str | None = None,
    name: str | None = None,
    stages: tuple[Stage, ...] | None = None,
    options: dict[str, Any] | None = None,
) -> WorkflowDefinition:
    """Derive a workflow from a predefined one, merging option overrides."""

    base = get_workflow(base_id)
    return replace(
        base,
        workflow_id=workflow_id or f"{base.workflow_id}_CUSTOM",
        name=name or f"{base.name} (Custom)",
        stages=stages if stages is not None else base.stages,
        options=base.options.merged(options or {}),
    )
