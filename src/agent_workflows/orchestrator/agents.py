"""Agent registry with dependency indexing and topological leveling."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from agent_workflows.orchestrator.errors import (
    CircularDependencyError,
    DuplicateAgentError,
    UnknownAgentError,
)
from agent_workflows.orchestrator.models import AgentDescriptor, Tier


@dataclass(slots=True, frozen=True)
class UnmetDependency:
    """Diagnostic for an agent whose dependency is neither completed nor scheduled."""

    agent: str
    requires: str

    def __str__(self) -> str:
        return f"{self.agent} requires {self.requires}"


class AgentGraph:
    """Static registry of agent descriptors and their dependency edges."""

    def __init__(self, descriptors: Iterable[AgentDescriptor] = ()) -> None:
        self._descriptors: dict[str, AgentDescriptor] = {}
        self._dependents: dict[str, list[str]] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: AgentDescriptor) -> None:
        if descriptor.tag in self._descriptors:
            raise DuplicateAgentError(descriptor.tag)
        self._descriptors[descriptor.tag] = descriptor
        self._dependents.setdefault(descriptor.tag, [])
        for dependency in descriptor.dependencies:
            self._dependents.setdefault(dependency, []).append(descriptor.tag)

    def __contains__(self, tag: object) -> bool:
        return tag in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def tags(self) -> list[str]:
        return list(self._descriptors)

    def get(self, tag: str) -> AgentDescriptor:
        try:
            return self._descriptors[tag]
        except KeyError as error:
            raise UnknownAgentError(tag) from error

    def dependencies_of(self, tag: str) -> tuple[str, ...]:
        return self.get(tag).dependencies

    def dependents_of(self, tag: str) -> tuple[str, ...]:
        self.get(tag)
        return tuple(self._dependents.get(tag, ()))

    def topological_levels(self, tags: Iterable[str]) -> list[list[str]]:
        """Group ``tags`` into levels using Kahn's algorithm restricted to the subset.

        Dependencies outside the subset count as satisfied. Tags inside one level keep
        the caller's order so output is deterministic.
        """

        subset = list(dict.fromkeys(tags))
        members = set(subset)
        in_degree: dict[str, int] = {}
        for tag in subset:
            in_degree[tag] = sum(1 for dep in self.get(tag).dependencies if dep in members)

        levels: list[list[str]] = []
        placed: set[str] = set()
        while len(placed) < len(subset):
            level = [tag for tag in subset if tag not in placed and in_degree[tag] == 0]
            if not level:
                raise CircularDependencyError([tag for tag in subset if tag not in placed])
            levels.append(level)
            placed.update(level)
            for tag in level:
                for dependent in self._dependents.get(tag, ()):
                    if dependent in members and dependent not in placed:
                        in_degree[dependent] -= 1
        return levels

    def validate_acyclic(self) -> None:
        """Raise if the full registry contains a dependency cycle or dangling edge."""

        for descriptor in self._descriptors.values():
            for dependency in descriptor.dependencies:
                if dependency not in self._descriptors:
                    raise UnknownAgentError(dependency)
        self.topological_levels(self._descriptors)

    def validate_satisfied(
        self,
        tags: Iterable[str],
        completed: Iterable[str],
    ) -> list[UnmetDependency]:
        requested = list(dict.fromkeys(tags))
        available = set(requested) | set(completed)
        unmet: list[UnmetDependency] = []
        for tag in requested:
            for dependency in self.get(tag).dependencies:
                if dependency not in available:
                    unmet.append(UnmetDependency(agent=tag, requires=dependency))
        return unmet


DEFAULT_AGENTS: tuple[AgentDescriptor, ...] = (
    AgentDescriptor(
        tag="PM",
        name="Product Manager",
        description="Turns the request into requirements and user stories.",
        default_tier=Tier.PREMIUM,
        timeout_seconds=300,
        prompt_file="pm.md",
        capabilities=("requirements", "user_stories", "acceptance_criteria"),
    ),
    AgentDescriptor(
        tag="ARCHITECT",
        name="Architect",
        description="Designs system architecture and technology choices.",
        dependencies=("PM",),
        default_tier=Tier.PREMIUM,
        timeout_seconds=300,
        prompt_file="architect.md",
        capabilities=("architecture", "data_model", "api_design"),
    ),
    AgentDescriptor(
        tag="UIUX",
        name="UI/UX Designer",
        description="Designs screens, flows, and the component library.",
        dependencies=("PM",),
        default_tier=Tier.STANDARD,
        timeout_seconds=240,
        prompt_file="uiux.md",
        capabilities=("wireframes", "design_system", "user_flows"),
    ),
    AgentDescriptor(
        tag="TL_FRONTEND",
        name="Frontend Tech Lead",
        description="Plans frontend structure and breaks work into tasks.",
        dependencies=("ARCHITECT", "UIUX"),
        default_tier=Tier.STANDARD,
        timeout_seconds=240,
        prompt_file="tl-frontend.md",
        capabilities=("frontend_plan", "task_breakdown"),
    ),
    AgentDescriptor(
        tag="TL_BACKEND",
        name="Backend Tech Lead",
        description="Plans backend services and breaks work into tasks.",
        dependencies=("ARCHITECT",),
        default_tier=Tier.STANDARD,
        timeout_seconds=240,
        prompt_file="tl-backend.md",
        capabilities=("backend_plan", "task_breakdown"),
    ),
    AgentDescriptor(
        tag="DEV_FRONTEND",
        name="Frontend Developer",
        description="Implements the frontend.",
        dependencies=("TL_FRONTEND",),
        default_tier=Tier.STANDARD,
        timeout_seconds=360,
        prompt_file="dev-frontend.md",
        capabilities=("frontend_code",),
    ),
    AgentDescriptor(
        tag="DEV_BACKEND",
        name="Backend Developer",
        description="Implements backend services.",
        dependencies=("TL_BACKEND",),
        default_tier=Tier.STANDARD,
        timeout_seconds=360,
        prompt_file="dev-backend.md",
        capabilities=("backend_code",),
    ),
    AgentDescriptor(
        tag="TEST",
        name="Test Engineer",
        description="Writes and runs tests for the implementation.",
        dependencies=("DEV_FRONTEND", "DEV_BACKEND"),
        default_tier=Tier.STANDARD,
        timeout_seconds=300,
        prompt_file="test.md",
        capabilities=("unit_tests", "integration_tests"),
    ),
    AgentDescriptor(
        tag="CQR",
        name="Code Quality Reviewer",
        description="Reviews code for quality and maintainability.",
        dependencies=("DEV_FRONTEND", "DEV_BACKEND"),
        default_tier=Tier.STANDARD,
        timeout_seconds=240,
        prompt_file="cqr.md",
        capabilities=("code_review",),
    ),
    AgentDescriptor(
        tag="SR",
        name="Security Reviewer",
        description="Audits code for security issues.",
        dependencies=("DEV_FRONTEND", "DEV_BACKEND"),
        default_tier=Tier.PREMIUM,
        timeout_seconds=300,
        prompt_file="sr.md",
        capabilities=("security_review",),
    ),
    AgentDescriptor(
        tag="DOE",
        name="DevOps Engineer",
        description="Prepares build and deployment configuration.",
        dependencies=("DEV_FRONTEND", "DEV_BACKEND"),
        default_tier=Tier.ECONOMY,
        timeout_seconds=180,
        prompt_file="doe.md",
        capabilities=("ci_cd", "deployment"),
    ),
)


def build_default_graph() -> AgentGraph:
    """Registry of the built-in agents, validated for cycles."""

    graph = AgentGraph(DEFAULT_AGENTS)
    graph.validate_acyclic()
    return graph
