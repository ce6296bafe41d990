"""
Registrar - Configuration

Centralized configuration for the enrollment core.
Uses environment variables with sensible defaults.

Handlers never read this module directly. They receive a provider of
PolicySnapshot values and take one snapshot per execution, so a command
sees a single consistent policy even if configuration is reloaded while
it runs.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class IdempotencyBackend(Enum):
    """Where idempotency entries are kept."""
    MEMORY = "memory"
    REDIS = "redis"


@dataclass
class PolicyConfig:
    """Business policy."""
    credit_hour_ceiling: int = field(default_factory=lambda: int(os.getenv("REGISTRAR_CREDIT_CEILING", "21")))

    def __post_init__(self):
        if self.credit_hour_ceiling < 1:
            raise ValueError(f"REGISTRAR_CREDIT_CEILING must be >= 1: {self.credit_hour_ceiling}")


@dataclass
class QueryConfig:
    """Read-side paging limits."""
    default_page_size: int = field(default_factory=lambda: int(os.getenv("REGISTRAR_DEFAULT_PAGE_SIZE", "20")))
    max_page_size: int = field(default_factory=lambda: int(os.getenv("REGISTRAR_MAX_PAGE_SIZE", "100")))

    def __post_init__(self):
        if self.max_page_size < 1:
            raise ValueError(f"REGISTRAR_MAX_PAGE_SIZE must be >= 1: {self.max_page_size}")
        self.default_page_size = max(1, min(self.default_page_size, self.max_page_size))


@dataclass
class IdempotencyConfig:
    """Idempotency store settings."""
    ttl_seconds: float = field(default_factory=lambda: float(os.getenv("REGISTRAR_IDEMPOTENCY_TTL", "86400")))
    backend: IdempotencyBackend = field(
        default_factory=lambda: IdempotencyBackend(os.getenv("REGISTRAR_IDEMPOTENCY_BACKEND", "memory").lower())
    )
    redis_url: str = field(default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    key_prefix: str = field(default_factory=lambda: os.getenv("REGISTRAR_IDEMPOTENCY_PREFIX", "registrar:idempotency:"))

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError(f"REGISTRAR_IDEMPOTENCY_TTL must be > 0: {self.ttl_seconds}")


@dataclass
class PipelineConfig:
    """Command pipeline settings."""
    max_concurrency_retries: int = field(default_factory=lambda: int(os.getenv("REGISTRAR_CONCURRENCY_RETRIES", "3")))
    dispatch_max_attempts: int = field(default_factory=lambda: int(os.getenv("REGISTRAR_DISPATCH_ATTEMPTS", "1")))

    def __post_init__(self):
        if self.max_concurrency_retries < 0:
            raise ValueError(f"REGISTRAR_CONCURRENCY_RETRIES must be >= 0: {self.max_concurrency_retries}")
        if self.dispatch_max_attempts < 1:
            raise ValueError(f"REGISTRAR_DISPATCH_ATTEMPTS must be >= 1: {self.dispatch_max_attempts}")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    json_format: bool = field(default_factory=lambda: os.getenv("LOG_FORMAT", "json").lower() == "json")


@dataclass(frozen=True)
class PolicySnapshot:
    """
    Immutable view of the policy in force at one moment.

    version increases on every reload, so two snapshots with the same
    version carry the same values.
    """
    version: int
    credit_hour_ceiling: int
    max_page_size: int
    default_page_size: int
    idempotency_ttl: float
    max_concurrency_retries: int


@dataclass
class RegistrarConfig:
    """Main configuration class combining all sub-configs."""
    env: Environment = field(default_factory=lambda: Environment(os.getenv("ENVIRONMENT", "development")))
    version: int = 1

    # Sub-configurations
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == Environment.PRODUCTION

    def snapshot(self) -> PolicySnapshot:
        """Capture the current policy values."""
        return PolicySnapshot(
            version=self.version,
            credit_hour_ceiling=self.policy.credit_hour_ceiling,
            max_page_size=self.query.max_page_size,
            default_page_size=self.query.default_page_size,
            idempotency_ttl=self.idempotency.ttl_seconds,
            max_concurrency_retries=self.pipeline.max_concurrency_retries,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (excluding connection secrets)."""
        return {
            "env": self.env.value,
            "version": self.version,
            "policy": {"credit_hour_ceiling": self.policy.credit_hour_ceiling},
            "query": {
                "default_page_size": self.query.default_page_size,
                "max_page_size": self.query.max_page_size,
            },
            "idempotency": {
                "ttl_seconds": self.idempotency.ttl_seconds,
                "backend": self.idempotency.backend.value,
            },
            "pipeline": {
                "max_concurrency_retries": self.pipeline.max_concurrency_retries,
                "dispatch_max_attempts": self.pipeline.dispatch_max_attempts,
            },
            "logging": {
                "level": self.logging.level,
                "json_format": self.logging.json_format,
            },
        }


# Singleton configuration instance
_config: Optional[RegistrarConfig] = None


def get_config() -> RegistrarConfig:
    """Get or create configuration singleton."""
    global _config
    if _config is None:
        _config = RegistrarConfig()
    return _config


def reload_config() -> RegistrarConfig:
    """Reload configuration from environment, bumping the snapshot version."""
    global _config
    previous = _config.version if _config is not None else 0
    load_dotenv(override=True)
    _config = RegistrarConfig(version=previous + 1)
    return _config


def current_policy() -> PolicySnapshot:
    """Snapshot provider backed by the process-wide configuration."""
    return get_config().snapshot()
