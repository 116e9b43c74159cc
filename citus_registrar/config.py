"""Registrar configuration.

Settings come from an optional YAML file with environment variables layered
on top. The resulting ``RegistrarSettings`` value is passed explicitly to
the resolver, prober and membership store; nothing reads the environment
after ``load_settings`` returns.

Environment variables:
  - COORDINATOR_HOST / COORDINATOR_PORT: coordinator endpoint
  - POSTGRES_USER / POSTGRES_PASSWORD: credentials for coordinator and workers
  - POSTGRES_DB: coordinator database holding the cluster metadata
  - WORKER_PORT: PostgreSQL port on every worker
  - REGISTRAR_DOMAIN_SUFFIX: private-network DNS suffix (".railway.internal")
  - REGISTRAR_NAMING_SCHEMES: comma-separated templates, e.g. "worker{n},worker-{n}"
  - REGISTRAR_MAX_INDEX, REGISTRAR_PROBE_INTERVAL, REGISTRAR_PROBE_ATTEMPTS,
    REGISTRAR_COORDINATOR_MAX_ATTEMPTS, REGISTRAR_WORKER_DEADLINE,
    REGISTRAR_CONCURRENCY
"""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from citus_registrar.cluster.resolver import DEFAULT_TEMPLATES, NamingScheme
from citus_registrar.cluster.retry import PollPolicy

logger = structlog.get_logger(__name__)

ENV_OVERRIDES: dict[str, str] = {
    "COORDINATOR_HOST": "coordinator_host",
    "COORDINATOR_PORT": "coordinator_port",
    "POSTGRES_USER": "user",
    "POSTGRES_PASSWORD": "password",
    "POSTGRES_DB": "database",
    "WORKER_PORT": "worker_port",
    "REGISTRAR_DOMAIN_SUFFIX": "domain_suffix",
    "REGISTRAR_NAMING_SCHEMES": "naming_schemes",
    "REGISTRAR_MAX_INDEX": "max_index",
    "REGISTRAR_PROBE_INTERVAL": "probe_interval",
    "REGISTRAR_PROBE_ATTEMPTS": "probe_attempts",
    "REGISTRAR_COORDINATOR_MAX_ATTEMPTS": "coordinator_max_attempts",
    "REGISTRAR_WORKER_DEADLINE": "worker_phase_deadline",
    "REGISTRAR_CONCURRENCY": "concurrency",
}


class ConfigurationError(Exception):
    """Raised when the registrar cannot start because its configuration is unusable."""


class RegistrarSettings(BaseModel):
    """Everything the registrar needs to reach the coordinator and the workers."""

    coordinator_host: str = Field(..., min_length=1, description="Coordinator host name")
    coordinator_port: int = Field(default=5432, gt=0, lt=65536)
    user: str = Field(..., min_length=1, description="PostgreSQL user")
    password: SecretStr = Field(..., description="PostgreSQL password")
    database: str = Field(default="postgres", min_length=1, description="Coordinator database")

    worker_port: int = Field(default=5432, gt=0, lt=65536)
    worker_database: str = Field(default="postgres", min_length=1)
    domain_suffix: str = Field(default=".railway.internal")
    naming_schemes: list[str] = Field(default_factory=lambda: list(DEFAULT_TEMPLATES))
    max_index: int = Field(default=20, ge=1)
    lookup_timeout: float = Field(default=5.0, gt=0)

    probe_interval: float = Field(default=5.0, gt=0, description="Seconds between TCP probes")
    probe_attempts: int = Field(default=30, ge=1)
    service_probe_interval: float = Field(default=5.0, gt=0)
    service_probe_attempts: int = Field(default=30, ge=1)
    connect_timeout: float = Field(default=5.0, gt=0)

    coordinator_poll_interval: float = Field(default=5.0, gt=0)
    coordinator_max_attempts: Optional[int] = Field(
        default=None, ge=1, description="None waits for the coordinator forever"
    )
    worker_phase_deadline: float = Field(default=600.0, gt=0)
    concurrency: int = Field(default=20, ge=1)

    @field_validator("password")
    @classmethod
    def _password_present(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("password must not be empty")
        return value

    @field_validator("naming_schemes", mode="before")
    @classmethod
    def _split_schemes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("naming_schemes")
    @classmethod
    def _validate_schemes(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one naming scheme is required")
        for template in value:
            NamingScheme(template)
        return value

    @field_validator("domain_suffix")
    @classmethod
    def _normalise_suffix(cls, value: str) -> str:
        value = value.strip()
        if value and not value.startswith("."):
            value = "." + value
        return value

    # ── Derived values ────────────────────────────────────────────

    def schemes(self) -> list[NamingScheme]:
        return [NamingScheme(template) for template in self.naming_schemes]

    @property
    def network_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.probe_interval, max_attempts=self.probe_attempts)

    @property
    def service_policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.service_probe_interval,
            max_attempts=self.service_probe_attempts,
        )

    @property
    def coordinator_policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.coordinator_poll_interval,
            max_attempts=self.coordinator_max_attempts,
        )


def _read_yaml(config_path: str) -> dict[str, Any]:
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RegistrarSettings:
    """Build settings from an optional YAML file plus environment overrides.

    Args:
        config_path: YAML file whose keys are ``RegistrarSettings`` field names.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated settings.

    Raises:
        ConfigurationError: If a credential is missing or any value is invalid.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = _read_yaml(config_path) if config_path else {}

    for env_key, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value is not None and value != "":
            data[field_name] = value

    try:
        settings = RegistrarSettings.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc

    logger.debug(
        "settings_loaded",
        coordinator_host=settings.coordinator_host,
        naming_schemes=settings.naming_schemes,
        max_index=settings.max_index,
        config_path=config_path,
    )
    return settings
