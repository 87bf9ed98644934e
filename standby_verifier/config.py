"""
Configuration management for the standby verifier.

Uses pydantic-settings for type-safe environment variable handling.
Secrets are loaded from arguments or environment variables only - never from
files in the repo.
"""

import getpass
import sys
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from standby_verifier.errors import ConfigurationError


class Settings(BaseSettings):
    """
    Verifier settings loaded from environment variables.

    CLI flags override these via ``model_copy(update=...)``.
    The management password uses SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_prefix="SV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Topology
    topology_file: Path = Field(
        default=Path("topology.yaml"),
        description="YAML or JSON file describing clusters and replication edges",
    )

    # Credentials
    user: str = Field(default="admin", description="Management / AMQP user")
    password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("SV_PASSWORD", "RMQ_PASSWORD", "password"),
        description="Management / AMQP password",
    )
    ssh_user: str = Field(default="ansible", description="SSH user for remote commands")

    # Remote access
    ssh_connect_timeout: int = Field(default=5, ge=1, le=60)
    remote_command_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Upper bound for a single remote command",
    )
    probe_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Per-candidate timeout for a replication status probe",
    )
    service_name: str = Field(default="tanzu-rabbitmq-server")
    rabbitmq_conf_path: str = Field(default="/etc/rabbitmq/rabbitmq.conf")

    # Management HTTP API
    management_scheme: str = Field(default="http")
    http_timeout: float = Field(default=10.0, gt=0, le=120)
    http_max_retries: int = Field(default=2, ge=0, le=10)

    # Workload driver
    perf_test_path: Path = Field(
        default=Path("tools/perf-test"),
        description="Path to the external perf-test binary",
    )

    # Output
    results_dir: Path = Field(default=Path("./results"))
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    # Run flags
    skip_cross_region: bool = Field(default=False)
    test_promotion: bool = Field(
        default=False,
        description="Actually promote the regional standby (destructive)",
    )
    enable_chaos: bool = Field(
        default=False,
        description="Run fault-injection scenarios (destructive)",
    )
    cleanup: bool = Field(default=True, description="Delete test artefacts after each scenario")

    # Schema replication
    schema_wait_s: float = Field(default=60.0, gt=0)
    schema_poll_interval_s: float = Field(default=5.0, gt=0)

    # Lag measurement
    lag_test_duration_s: int = Field(default=30, ge=5, le=3600)
    lag_sample_interval_s: float = Field(default=1.0, gt=0, le=60)
    lag_appear_timeout_s: float = Field(default=60.0, gt=0, le=600)
    lag_publish_rate: int = Field(default=2000, ge=1)
    lag_startup_delay_s: float = Field(default=3.0, ge=0)

    # Sustained throughput
    throughput_duration_s: int = Field(default=60, ge=5, le=3600)
    throughput_publish_rate: int = Field(default=1500, ge=1)

    # Promotion
    promotion_message_count: int = Field(default=100, ge=1)
    promotion_sync_wait_s: float = Field(default=10.0, ge=0)
    promotion_settle_s: float = Field(default=10.0, ge=0)
    restore_ready_attempts: int = Field(default=30, ge=1, le=300)
    restore_ready_interval_s: float = Field(default=2.0, ge=0)
    restore_settle_s: float = Field(default=5.0, ge=0)
    restore_budget_s: float = Field(
        default=1800.0,
        gt=0,
        description="Deadline for one restoration, separate from the scenario budget",
    )

    # Chaos
    chaos_observation_s: float = Field(default=30.0, ge=0)
    chaos_recovery_s: float = Field(default=30.0, ge=0)
    packet_loss_pct: float = Field(default=5.0, gt=0, le=100)
    packet_loss_interface: str = Field(default="ens192")
    packet_loss_min_rate: int = Field(default=100, ge=0)

    # Per-scenario wall-clock budgets
    default_scenario_budget_s: float = Field(default=300.0, gt=0)
    promotion_scenario_budget_s: float = Field(default=900.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("management_scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        """Only plain HTTP and HTTPS management listeners are supported."""
        lower_v = v.lower()
        if lower_v not in {"http", "https"}:
            raise ValueError(f"Invalid management scheme: {v}")
        return lower_v

    @property
    def has_password(self) -> bool:
        """Check if a management password is configured."""
        return self.password is not None and bool(self.password.get_secret_value())

    def password_value(self) -> str:
        """Get the plain password, raising if it was never resolved."""
        if not self.has_password:
            raise ConfigurationError("Management password not configured")
        assert self.password is not None
        return self.password.get_secret_value()

    def get_redacted_config(self) -> dict[str, str | int | float | bool]:
        """
        Get configuration dict with sensitive values redacted.
        Safe for logging and result files.
        """
        return {
            "topology_file": str(self.topology_file),
            "user": self.user,
            "password_configured": self.has_password,
            "ssh_user": self.ssh_user,
            "skip_cross_region": self.skip_cross_region,
            "test_promotion": self.test_promotion,
            "enable_chaos": self.enable_chaos,
            "cleanup": self.cleanup,
            "lag_test_duration_s": self.lag_test_duration_s,
            "throughput_duration_s": self.throughput_duration_s,
            "promotion_message_count": self.promotion_message_count,
        }


def resolve_password(
    settings: Settings,
    cli_password: str | None = None,
    interactive: bool | None = None,
) -> Settings:
    """
    Resolve the management password.

    Precedence: command line argument, environment (already loaded into
    ``settings``), then an interactive prompt when attached to a terminal.

    Raises:
        ConfigurationError: If no password can be obtained
    """
    if cli_password:
        return settings.model_copy(update={"password": SecretStr(cli_password)})
    if settings.has_password:
        return settings

    if interactive is None:
        interactive = sys.stdin.isatty()
    if not interactive:
        raise ConfigurationError(
            "No password given: use --password, SV_PASSWORD or RMQ_PASSWORD"
        )

    prompted = getpass.getpass(f"RabbitMQ password for '{settings.user}': ")
    if not prompted:
        raise ConfigurationError("Empty password entered")
    return settings.model_copy(update={"password": SecretStr(prompted)})


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout the process.
    """
    return Settings()
