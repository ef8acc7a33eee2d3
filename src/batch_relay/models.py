"""Pydantic models for configuration and validation."""

from pydantic import BaseModel, Field

from .driver.dispatch import DispatchLimits


class DriverConfig(BaseModel):
    """Job driver parameters."""

    scope_size: int = Field(default=1, ge=1, description="Maximum items dispatched per pass")
    max_polls: int = Field(
        default=1000, ge=0, description="Fail an item after this many polls (0 = unlimited)"
    )
    max_age_s: float = Field(
        default=0.0, ge=0.0, description="Fail an item this long after submit (0 = unlimited)"
    )

    def limits(self) -> DispatchLimits:
        return DispatchLimits(max_polls=self.max_polls, max_age_s=self.max_age_s)


class SchedulerConfig(BaseModel):
    """Pass scheduling parameters."""

    poll_interval_s: float = Field(
        default=1.0, ge=0.0, description="Delay between passes of the same job in seconds"
    )
    stale_claim_timeout_s: int = Field(
        default=600, gt=0, description="Release pass claims older than this (crash recovery)"
    )
    workers: int = Field(default=4, ge=1, description="Dispatch threads for multi-item scopes")
    show_progress: bool = Field(default=False, description="Show tqdm bars while dispatching")


class StoreConfig(BaseModel):
    """Persistence settings."""

    db_path: str = Field(default="relay.db", description="SQLite database path")


class RemoteConfig(BaseModel):
    """Remote operation settings."""

    workdir: str = Field(
        default=".relay_ops", description="Directory for subprocess operation logs"
    )


class NotificationsConfig(BaseModel):
    """Completion notifier settings."""

    summary_dir: str = Field(default="output", description="Where JSON summaries are written")


class BatchRelayConfig(BaseModel):
    """Complete application configuration with validation."""

    driver: DriverConfig = Field(default_factory=DriverConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "BatchRelayConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "BatchRelayConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["store"]["db_path"] = cli_args["db"]
        if cli_args.get("scope_size") is not None:
            config_dict["driver"]["scope_size"] = cli_args["scope_size"]
        if cli_args.get("max_polls") is not None:
            config_dict["driver"]["max_polls"] = cli_args["max_polls"]
        if cli_args.get("poll_interval") is not None:
            config_dict["scheduler"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("workers") is not None:
            config_dict["scheduler"]["workers"] = cli_args["workers"]
        if cli_args.get("summary_dir") is not None:
            config_dict["notifications"]["summary_dir"] = cli_args["summary_dir"]

        return BatchRelayConfig.from_dict(config_dict)
