"""
Shared configuration management for the rules orchestration service.
"""

from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RulesConfig(BaseSettings):
    """Configuration recognized by the rules core and its service.

    Every option can be set through a ``RULES_``-prefixed environment
    variable or a ``.env`` file. Durations are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Service
    service_name: str = Field(default="rules")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8020, gt=0)

    # Rule source
    rule_source: Literal["remote", "local"] = Field(default="local")
    api_url: Optional[str] = Field(default=None)
    api_key: Optional[str] = Field(default=None)
    project_id: Optional[str] = Field(default=None)
    http_timeout: float = Field(default=30.0, gt=0)

    # Local source
    local_rules_path: Optional[str] = Field(default="./rules")
    enable_hot_reload: bool = Field(default=False)
    hot_reload_debounce: float = Field(default=0.3, ge=0)
    metadata_file_suffix: str = Field(default=".meta.json")
    recursive_scan: bool = Field(default=True)

    # Cache and versions
    cache_max_size: int = Field(default=1000, gt=0)
    snapshot_history_size: int = Field(default=5, gt=0)

    # Execution
    execution_timeout: float = Field(default=5.0, gt=0)
    max_concurrency: int = Field(default=10, gt=0)
    pipeline_mode: bool = Field(default=True)
    stop_on_error: bool = Field(default=False)

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.1, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_jitter_factor: float = Field(default=0.1, ge=0, le=1)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_success_threshold: int = Field(default=3, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, ge=0)
    circuit_request_timeout: float = Field(default=30.0, gt=0)

    # Rate limiting
    rate_limit_max_requests: int = Field(default=100, ge=1)
    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_strategy: Literal["reject", "queue", "delay"] = Field(default="delay")
    rate_limit_max_queue_size: int = Field(default=200, ge=0)
    rate_limit_poll_interval: float = Field(default=0.1, gt=0)

    # Features
    enable_evaluation_resilience: bool = Field(default=False)
    enable_performance_metrics: bool = Field(default=False)


def validate_config(config: RulesConfig) -> List[str]:
    """Cross-field checks; returns every problem found."""
    errors: List[str] = []

    if config.rule_source == "remote":
        if not config.api_url:
            errors.append("api_url is required for the remote rule source")
        if not config.api_key:
            errors.append("api_key is required for the remote rule source")
        if not config.project_id:
            errors.append("project_id is required for the remote rule source")
    else:
        if not config.local_rules_path:
            errors.append("local_rules_path is required for the local rule source")

    if config.enable_hot_reload and config.rule_source != "local":
        errors.append("enable_hot_reload is only supported with the local rule source")

    if config.retry_base_delay > config.retry_max_delay:
        errors.append("retry_base_delay must not exceed retry_max_delay")

    return errors


def get_config(**overrides) -> RulesConfig:
    """Get service configuration."""
    return RulesConfig(**overrides)
