"""Resource tier selection clamped by a configured ceiling."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_workflows.config import DEFAULT_TIER_MODELS, TierSettings
from agent_workflows.orchestrator.agents import AgentGraph
from agent_workflows.orchestrator.errors import UnknownAgentError
from agent_workflows.orchestrator.models import TIER_ORDER, Tier

# Relative weights for estimates only.
TIER_COST_WEIGHTS: dict[Tier, int] = {
    Tier.ECONOMY: 1,
    Tier.STANDARD: 5,
    Tier.PREMIUM: 15,
}


@dataclass(slots=True)
class AgentCostLine:
    tier: Tier
    weight: int


@dataclass(slots=True)
class CostEstimate:
    """Advisory relative-cost estimate for a set of agents."""

    breakdown: dict[str, AgentCostLine] = field(default_factory=dict)
    total_weight: int = 0
    relative_cost: float = 0.0
    estimated_units: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "breakdown": {
                tag: {"tier": line.tier.value, "weight": line.weight}
                for tag, line in self.breakdown.items()
            },
            "total_weight": self.total_weight,
            "relative_cost": self.relative_cost,
            "estimated_units": self.estimated_units,
        }


def downgrade(tier: Tier) -> Tier:
    return TIER_ORDER[max(0, tier.rank - 1)]


def upgrade(tier: Tier) -> Tier:
    return TIER_ORDER[min(len(TIER_ORDER) - 1, tier.rank + 1)]


def clamp(tier: Tier, ceiling: Tier) -> Tier:
    return tier if tier.rank <= ceiling.rank else ceiling


class TierSelector:
    """Maps agents to tiers; a pure function of agent, context, and configuration."""

    def __init__(
        self,
        graph: AgentGraph,
        *,
        max_tier: Tier = Tier.PREMIUM,
        overrides: Mapping[str, Tier] | None = None,
        optimize_cost: bool = False,
        models: Mapping[Tier, str] | None = None,
    ) -> None:
        self._graph = graph
        self._max_tier = max_tier
        self._overrides = dict(overrides or {})
        self._optimize_cost = optimize_cost
        self._models = dict(models or DEFAULT_TIER_MODELS)

    @classmethod
    def from_settings(cls, graph: AgentGraph, settings: TierSettings) -> TierSelector:
        return cls(
            graph,
            max_tier=settings.max_tier,
            overrides=settings.overrides,
            optimize_cost=settings.optimize_cost,
            models=settings.models,
        )

    @property
    def max_tier(self) -> Tier:
        return self._max_tier

    def configure(
        self,
        *,
        max_tier: Tier | None = None,
        overrides: Mapping[str, Tier] | None = None,
        optimize_cost: bool | None = None,
    ) -> None:
        if max_tier is not None:
            self._max_tier = max_tier
        if overrides is not None:
            self._overrides = dict(overrides)
        if optimize_cost is not None:
            self._optimize_cost = optimize_cost

    def select(self, tag: str, context: Mapping[str, Any] | None = None) -> Tier:
        override = self._overrides.get(tag)
        if override is not None:
            return clamp(override, self._max_tier)

        tier = self._graph.get(tag).default_tier
        complexity = str((context or {}).get("complexity") or "").lower()
        if complexity == "low" and self._optimize_cost:
            tier = downgrade(tier)
        elif complexity == "high":
            tier = upgrade(tier)
        return clamp(tier, self._max_tier)

    def model_for(self, tier: Tier) -> str:
        return self._models.get(tier, DEFAULT_TIER_MODELS[tier])

    def estimate_cost(
        self,
        tags: Iterable[str],
        units_per_agent: int = 10_000,
        context: Mapping[str, Any] | None = None,
    ) -> CostEstimate:
        estimate = CostEstimate()
        for tag in tags:
            try:
                tier = self.select(tag, context)
            except UnknownAgentError:
                continue
            weight = TIER_COST_WEIGHTS[tier]
            estimate.breakdown[tag] = AgentCostLine(tier=tier, weight=weight)
            estimate.total_weight += weight

        count = len(estimate.breakdown)
        if count:
            estimate.relative_cost = estimate.total_weight / count
        estimate.estimated_units = count * max(0, units_per_agent)
        return estimate
