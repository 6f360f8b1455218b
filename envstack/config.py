"""Configuration Management for envstack

This module provides centralized configuration using Pydantic settings for the
policy section and validated dataclasses for the operational sections. Values
come from ``ENVSTACK_*`` environment variables, optionally loaded from a file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class PolicyConfig(BaseSettings):
    """Immutable policy configuration - cannot be modified at runtime."""

    strict: bool = Field(
        default=False, description="Turn policy warnings into planning failures"
    )
    allowed_open_cidrs: List[str] = Field(
        default_factory=list,
        description="Ingress CIDRs that are accepted without a policy warning",
    )

    @field_validator("allowed_open_cidrs")
    @classmethod
    def validate_allowed_open_cidrs(cls, v):
        if "0.0.0.0/0" in v:
            raise ValueError("0.0.0.0/0 cannot be allow-listed")
        return v

    model_config = SettingsConfigDict(env_prefix="ENVSTACK_POLICY_", frozen=True)


@dataclass
class ExecutionConfig:
    """Configuration for plan execution."""

    max_parallelism: int = 4
    node_timeout_seconds: float = 300.0
    max_concurrent_environments: int = 3

    def __post_init__(self):
        """Validate execution configuration."""
        if self.max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")

        if self.node_timeout_seconds <= 0:
            raise ValueError("node_timeout_seconds must be positive")

        if self.max_concurrent_environments < 1:
            raise ValueError("max_concurrent_environments must be at least 1")


@dataclass
class StateConfig:
    """Configuration for applied state persistence and parameter files."""

    state_dir: str = ".envstack/state"
    parameters_file: Optional[str] = None

    def __post_init__(self):
        """Validate state configuration."""
        if not self.state_dir:
            raise ValueError("state_dir cannot be empty")

        if self.parameters_file is not None and not self.parameters_file.endswith(
            (".yaml", ".yml", ".json")
        ):
            raise ValueError("parameters_file must be a .yaml, .yml or .json file")


@dataclass
class BackendConfig:
    """Configuration for the provisioning backend."""

    kind: str = "simulated"
    region: str = "us-east-1"
    account_id: str = "000000000000"

    def __post_init__(self):
        """Validate backend configuration."""
        if not self.kind:
            raise ValueError("backend kind cannot be empty")

        if not (self.account_id.isdigit() and len(self.account_id) == 12):
            raise ValueError("account_id must be a 12 digit string")


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    log_level: str = "WARNING"
    log_format: str = "console"

    def __post_init__(self):
        """Validate logging configuration."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_levels:
            raise ValueError(f"Invalid log level: {self.log_level}")

        valid_formats = ["console", "json"]
        if self.log_format not in valid_formats:
            raise ValueError(f"Invalid log format: {self.log_format}")


class EnvironmentSettings(BaseSettings):
    """Flat view of the ``ENVSTACK_*`` variables, optionally backed by an env file.

    Variables set in the process environment take precedence over the file.
    """

    max_parallelism: int = 4
    node_timeout_seconds: float = 300.0
    max_concurrent_environments: int = 3
    state_dir: str = ".envstack/state"
    parameters_file: Optional[str] = None
    backend: str = "simulated"
    region: str = "us-east-1"
    account_id: str = "000000000000"
    log_level: str = "WARNING"
    log_format: str = "console"
    debug: bool = False

    @field_validator("parameters_file")
    @classmethod
    def empty_means_unset(cls, v):
        return v or None

    model_config = SettingsConfigDict(env_prefix="ENVSTACK_", extra="ignore")


@dataclass
class EnvStackConfig:
    """Main configuration class for envstack."""

    # Immutable policy configuration
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    # Mutable operational configurations
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    state: StateConfig = field(default_factory=StateConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EnvStackConfig":
        """Load configuration from ``ENVSTACK_*`` variables and an optional env file.

        Raises:
            ConfigurationError: If a variable does not parse or a section rejects its value
        """
        try:
            settings = EnvironmentSettings(_env_file=env_file)

            # ENVSTACK_POLICY_STRICT and ENVSTACK_POLICY_ALLOWED_OPEN_CIDRS (a JSON list)
            policy = PolicyConfig(_env_file=env_file)
        except ValidationError as e:
            error = e.errors()[0]
            prefix = "ENVSTACK_POLICY_" if e.title == PolicyConfig.__name__ else "ENVSTACK_"
            field_name = prefix + "_".join(str(part) for part in error["loc"]).upper()
            raise ConfigurationError(field_name, error.get("input"), error["msg"]) from e

        try:
            return cls(
                policy=policy,
                execution=ExecutionConfig(
                    max_parallelism=settings.max_parallelism,
                    node_timeout_seconds=settings.node_timeout_seconds,
                    max_concurrent_environments=settings.max_concurrent_environments,
                ),
                state=StateConfig(state_dir=settings.state_dir, parameters_file=settings.parameters_file),
                backend=BackendConfig(
                    kind=settings.backend, region=settings.region, account_id=settings.account_id
                ),
                logging=LoggingConfig(log_level=settings.log_level, log_format=settings.log_format),
                debug=settings.debug,
            )
        except ValueError as e:
            raise ConfigurationError("environment", "ENVSTACK_* variables", str(e)) from e

    def validate(self) -> List[str]:
        """Validate the entire configuration and return any errors."""
        errors = []

        if self.execution.max_parallelism > 64:
            errors.append("max_parallelism > 64 may exhaust backend rate limits")

        if self.backend.kind != "simulated" and self.backend.region == "":
            errors.append("A region is required for non-simulated backends")

        if self.state.parameters_file and not Path(self.state.parameters_file).exists():
            errors.append(f"Parameters file not found: {self.state.parameters_file}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "policy": {
                "strict": self.policy.strict,
                "allowed_open_cidrs": list(self.policy.allowed_open_cidrs),
            },
            "execution": {
                "max_parallelism": self.execution.max_parallelism,
                "node_timeout_seconds": self.execution.node_timeout_seconds,
                "max_concurrent_environments": self.execution.max_concurrent_environments,
            },
            "state": {
                "state_dir": self.state.state_dir,
                "parameters_file": self.state.parameters_file,
            },
            "backend": {
                "kind": self.backend.kind,
                "region": self.backend.region,
                "account_id": self.backend.account_id,
            },
            "logging": {
                "log_level": self.logging.log_level,
                "log_format": self.logging.log_format,
            },
            "debug": self.debug,
        }

    def __str__(self) -> str:
        return (
            f"EnvStackConfig(backend={self.backend.kind}, state_dir={self.state.state_dir}, "
            f"strict={self.policy.strict})"
        )


# Global configuration instance
_global_config: Optional[EnvStackConfig] = None


def get_config() -> EnvStackConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = EnvStackConfig.from_env()
    return _global_config


def set_config(config: EnvStackConfig):
    """Set the global configuration instance."""
    global _global_config

    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration validation failed: {errors}")

    _global_config = config


def reset_config():
    """Reset the global configuration to default."""
    global _global_config
    _global_config = None
