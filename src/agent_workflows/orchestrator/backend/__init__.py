"""Agent runner implementations."""

from agent_workflows.orchestrator.backend.cli_backend import CliAgentRunner

__all__ = ["CliAgentRunner"]
