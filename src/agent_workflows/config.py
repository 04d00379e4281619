"""Runtime configuration for the workflow engine and its collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_workflows.orchestrator.models import Tier

DEFAULT_RUNNER_COMMAND = (
    "claude --print --dangerously-skip-permissions --model {model} -- {prompt}"
)

DEFAULT_TIER_MODELS: dict[Tier, str] = {
    Tier.ECONOMY: "claude-3-haiku-20240307",
    Tier.STANDARD: "claude-sonnet-4-20250514",
    Tier.PREMIUM: "claude-3-opus-20240229",
}


@dataclass(slots=True)
class TierSettings:
    """Tier ceiling, overrides, and tier-to-model mapping."""

    max_tier: Tier = Tier.PREMIUM
    optimize_cost: bool = False
    overrides: dict[str, Tier] = field(default_factory=dict)
    models: dict[Tier, str] = field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))


@dataclass(slots=True)
class RunnerSettings:
    """External agent runner settings."""

    command_template: str = DEFAULT_RUNNER_COMMAND
    prompts_dir: Path | None = None
    graceful_shutdown_seconds: float = 2.0


@dataclass(slots=True)
class EngineSettings:
    max_parallel_agents: int = 4
    log_ring_size: int = 1000
    session_retention_days: int = 30
    repo_root: Path = Path(".")
    base_branch: str = "main"


@dataclass(slots=True)
class PricingSettings:
    """Per-million unit prices used for advisory cost estimates."""

    input_usd_per_1m: float = 3.0
    output_usd_per_1m: float = 15.0
    input_share: float = 0.7


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    sessions_dir: Path = Path(".sessions")
    db_path: Path = Path(".agent_workflows.db")
    engine: EngineSettings = field(default_factory=EngineSettings)
    tiers: TierSettings = field(default_factory=TierSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)

    @classmethod
    def from_env(
        cls,
        sessions_dir: Path | None = None,
        db_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        prompts_dir = os.getenv("AGENT_WORKFLOWS_PROMPTS_DIR", "").strip()
        return cls(
            sessions_dir=sessions_dir
            or Path(os.getenv("AGENT_WORKFLOWS_SESSIONS_DIR", ".sessions")),
            db_path=db_path or Path(os.getenv("AGENT_WORKFLOWS_DB_PATH", ".agent_workflows.db")),
            engine=EngineSettings(
                max_parallel_agents=_env_int("AGENT_WORKFLOWS_MAX_PARALLEL_AGENTS", 4),
                log_ring_size=_env_int("AGENT_WORKFLOWS_LOG_RING_SIZE", 1000),
                session_retention_days=_env_int("AGENT_WORKFLOWS_SESSION_RETENTION_DAYS", 30),
                repo_root=Path(os.getenv("AGENT_WORKFLOWS_REPO_ROOT", ".")),
                base_branch=os.getenv("AGENT_WORKFLOWS_BASE_BRANCH", "main"),
            ),
            tiers=TierSettings(
                max_tier=_parse_tier(
                    os.getenv("AGENT_WORKFLOWS_MAX_TIER", Tier.PREMIUM.value),
                    env_name="AGENT_WORKFLOWS_MAX_TIER",
                ),
                optimize_cost=_env_bool("AGENT_WORKFLOWS_OPTIMIZE_COST", default=False),
                overrides=_parse_tier_overrides(os.getenv("AGENT_WORKFLOWS_TIER_OVERRIDES", "")),
                models={
                    tier: os.getenv(f"AGENT_WORKFLOWS_MODEL_{tier.name}", model)
                    for tier, model in DEFAULT_TIER_MODELS.items()
                },
            ),
            runner=RunnerSettings(
                command_template=os.getenv("AGENT_WORKFLOWS_RUNNER_COMMAND", DEFAULT_RUNNER_COMMAND),
                prompts_dir=Path(prompts_dir) if prompts_dir else None,
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_WORKFLOWS_RUNNER_GRACEFUL_SHUTDOWN_SECONDS", "2.0"),
                ),
            ),
            pricing=PricingSettings(
                input_usd_per_1m=float(os.getenv("AGENT_WORKFLOWS_PRICE_INPUT_PER_1M", "3.0")),
                output_usd_per_1m=float(os.getenv("AGENT_WORKFLOWS_PRICE_OUTPUT_PER_1M", "15.0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.engine.max_parallel_agents <= 0:
            raise ValueError("AGENT_WORKFLOWS_MAX_PARALLEL_AGENTS must be > 0.")
        if self.engine.log_ring_size <= 0:
            raise ValueError("AGENT_WORKFLOWS_LOG_RING_SIZE must be > 0.")
        if self.engine.session_retention_days < 0:
            raise ValueError("AGENT_WORKFLOWS_SESSION_RETENTION_DAYS must be >= 0.")
        if "{prompt}" not in self.runner.command_template:
            raise ValueError("AGENT_WORKFLOWS_RUNNER_COMMAND must include {prompt}.")
        if self.pricing.input_usd_per_1m < 0 or self.pricing.output_usd_per_1m < 0:
            raise ValueError("Pricing values must be >= 0.")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false).")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer.") from error


def _parse_tier(value: str, *, env_name: str) -> Tier:
    try:
        return Tier(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(tier.value for tier in Tier)
        raise ValueError(f"{env_name} must be one of: {supported}.") from error


def _parse_tier_overrides(raw: str) -> dict[str, Tier]:
    """Parse ``PM=standard,DOE=economy`` into an override table."""

    overrides: dict[str, Tier] = {}
    for chunk in raw.split(","):
        item = chunk.strip()
        if not item:
            continue
        tag, separator, tier = item.partition("=")
        if not separator or not tag.strip():
            raise ValueError(
                f"Invalid AGENT_WORKFLOWS_TIER_OVERRIDES entry: {item!r}. Expected TAG=tier.",
            )
        overrides[tag.strip().upper()] = _parse_tier(
            tier,
            env_name="AGENT_WORKFLOWS_TIER_OVERRIDES",
        )
    return overrides
