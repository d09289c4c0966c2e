"""Configuration management for the review bot."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator


class GitHubConfig(BaseModel):
    """GitHub connection settings.

    Either a GitHub App (app_id + private_key + installation_id) or a static
    token must be configured for API access. The webhook secret is always
    required: unsigned deliveries are rejected.
    """

    webhook_secret: SecretStr = Field(..., description="Shared secret for X-Hub-Signature-256")
    token: Optional[SecretStr] = Field(default=None, description="Static token (PAT)")
    app_id: Optional[str] = None
    private_key: Optional[SecretStr] = Field(default=None, description="PEM-formatted App private key")
    installation_id: Optional[str] = None
    api_base: str = "https://api.github.com"

    @model_validator(mode="after")
    def _check_credentials(self) -> "GitHubConfig":
        has_app = bool(self.app_id and self.private_key and self.installation_id)
        if not has_app and self.token is None:
            raise ValueError("Configure either github.token or github.app_id/private_key/installation_id")
        return self


class LLMConfig(BaseModel):
    """LLM provider settings."""

    provider: Literal["anthropic", "openai"] = "anthropic"
    api_key: SecretStr = Field(..., description="API key for LLM provider")
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(default=4096, ge=1, le=16384)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)


class CacheConfig(BaseModel):
    """Analysis cache settings."""

    redis_url: Optional[str] = Field(default=None, description="Redis URL; unset means in-process cache only")
    ttl_seconds: int = Field(default=1800, ge=1, description="Lifetime of a cached analysis result")
    max_entries: int = Field(default=1024, ge=1, description="Bound of the in-process fallback cache")
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    connect_timeout_seconds: float = Field(default=5.0, gt=0)


class ReviewConfig(BaseModel):
    """Review pipeline behavior settings."""

    analysis_timeout_seconds: float = Field(default=300.0, gt=0, description="Deadline for one LLM analysis call")
    max_concurrent_reviews: int = Field(default=4, ge=1)


class ServerConfig(BaseModel):
    """HTTP server and storage settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    database_path: str = Field(
        default="~/.reviewbot/reviewbot.db", description="Path to SQLite database file"
    )


class Config(BaseModel):
    """Root configuration model."""

    github: GitHubConfig
    llm: LLMConfig
    cache: CacheConfig = CacheConfig()
    review: ReviewConfig = ReviewConfig()
    server: ServerConfig = ServerConfig()


def _expand_env_vars(obj):
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        env_var = obj[2:-1]
        value = os.getenv(env_var)
        if value is None:
            raise ValueError(f"Environment variable '{env_var}' is not set")
        return value
    return obj


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and fill in your values."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    raw_config = _expand_env_vars(raw_config)

    return Config(**raw_config)
