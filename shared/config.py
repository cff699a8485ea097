"""
Shared configuration management for the Rule Engine Platform.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="local", validation_alias="RULES_ENV")
    log_level: str = Field(default="info", validation_alias="RULES_LOG_LEVEL")

    # Rule/schema storage collaborator
    rule_store_url: str = Field(default="http://localhost:8080/api", validation_alias="RULES_STORE_URL")
    rule_store_timeout_seconds: float = Field(default=5.0, validation_alias="RULES_STORE_TIMEOUT")
    rule_store_api_key: Optional[str] = Field(default=None, validation_alias="RULES_STORE_API_KEY")

    # Execution engine
    max_iterations: int = Field(default=100, validation_alias="RULES_MAX_ITERATIONS")
    max_rule_firings: int = Field(default=1000, validation_alias="RULES_MAX_RULE_FIRINGS")
    execution_timeout_seconds: float = Field(default=30.0, validation_alias="RULES_EXECUTION_TIMEOUT")

    # Webhook actions
    webhook_timeout_seconds: float = Field(default=10.0, validation_alias="RULES_WEBHOOK_TIMEOUT")
    webhook_max_concurrency: int = Field(default=10, validation_alias="RULES_WEBHOOK_MAX_CONCURRENCY")

    # Compiled rule cache
    compiled_cache_size: int = Field(default=256, validation_alias="RULES_COMPILED_CACHE_SIZE")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
