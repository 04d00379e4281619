"""Resource accounting over persisted sessions and advisory cost estimates."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_workflows.config import PricingSettings
from agent_workflows.orchestrator.models import Session
from agent_workflows.storage.common import from_iso, to_utc_aware, utc_now

_RELATIVE_SINCE = re.compile(r"^\s*(\d+)\s*([mhdw])\s*$", re.IGNORECASE)
_UNIT_DELTAS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


@dataclass(slots=True)
class ModelPricing:
    """Input/output pricing in USD per 1M resource units."""

    input_per_1m: float
    output_per_1m: float
    input_share: float = 0.7

    @classmethod
    def from_settings(cls, settings: PricingSettings) -> ModelPricing:
        return cls(
            input_per_1m=settings.input_usd_per_1m,
            output_per_1m=settings.output_usd_per_1m,
            input_share=settings.input_share,
        )

    def estimate_usd(self, units: int) -> float:
        blended = (
            self.input_share * self.input_per_1m + (1 - self.input_share) * self.output_per_1m
        )
        return units * blended / 1_000_000


@dataclass(slots=True)
class UsageBucket:
    executions: int = 0
    resource_units: int = 0
    execution_time_ms: int = 0
    failures: int = 0

    def add(self, record: dict[str, object]) -> None:
        self.executions += 1
        self.resource_units += _as_int(record.get("resource_units"))
        self.execution_time_ms += _as_int(record.get("execution_time_ms"))
        if record.get("status") == "failed":
            self.failures += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "executions": self.executions,
            "resource_units": self.resource_units,
            "execution_time_ms": self.execution_time_ms,
            "failures": self.failures,
        }


@dataclass(slots=True)
class UsageSummary:
    sessions: int = 0
    total: UsageBucket = field(default_factory=UsageBucket)
    by_agent: dict[str, UsageBucket] = field(default_factory=dict)
    by_tier: dict[str, UsageBucket] = field(default_factory=dict)
    estimated_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "sessions": self.sessions,
            "total": self.total.to_dict(),
            "by_agent": {tag: bucket.to_dict() for tag, bucket in sorted(self.by_agent.items())},
            "by_tier": {tier: bucket.to_dict() for tier, bucket in sorted(self.by_tier.items())},
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
        }


def parse_since(raw: str, *, now: datetime | None = None) -> datetime:
    """Parse ``7d``/``24h``/``30m``/``2w`` or an ISO timestamp into a UTC datetime."""

    value = raw.strip()
    if not value:
        raise ValueError("--since must not be empty.")
    match = _RELATIVE_SINCE.match(value)
    if match is not None:
        amount, unit = int(match.group(1)), match.group(2).lower()
        return (now or utc_now()) - amount * _UNIT_DELTAS[unit]
    try:
        return from_iso(value)
    except ValueError as error:
        raise ValueError(
            f"Invalid --since value: {raw!r}. Use e.g. 7d, 24h or an ISO timestamp.",
        ) from error


def summarize_usage(
    sessions: Iterable[Session],
    since: datetime | None = None,
    *,
    pricing: ModelPricing | None = None,
) -> UsageSummary:
    """Aggregate recorded agent executions per agent and per tier."""

    pricing = pricing or ModelPricing.from_settings(PricingSettings())
    cutoff = to_utc_aware(since) if since is not None else None
    summary = UsageSummary()
    for session in sessions:
        if cutoff is not None and to_utc_aware(session.created_at) < cutoff:
            continue
        summary.sessions += 1
        for record in session.metadata.agent_executions:
            summary.total.add(record)
            agent = str(record.get("agent") or "unknown")
            tier = str(record.get("tier") or "unknown")
            summary.by_agent.setdefault(agent, UsageBucket()).add(record)
            summary.by_tier.setdefault(tier, UsageBucket()).add(record)
    summary.estimated_cost_usd = pricing.estimate_usd(summary.total.resource_units)
    return summary


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return 0
