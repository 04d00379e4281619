"""Workflow orchestration core: agent graph, tiers, sessions, and engine."""
