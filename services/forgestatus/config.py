"""
Configuration management for the forge status aggregator.

Repository records and poller tuning are loaded from a YAML file, tokens
and overrides from environment variables.
"""

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "~/.config/forgestatus/config.yaml"


def _config_path() -> Path:
    return Path(os.environ.get("FORGESTATUS_CONFIG_FILE", DEFAULT_CONFIG_PATH)).expanduser()


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = _config_path()
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


# --- Repository Configuration Models ---


class ForgeProvider(StrEnum):
    """Supported git hosting providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    CODEBERG = "codeberg"


class CIBackendKind(StrEnum):
    """CI surfaces available to Codeberg repositories."""

    FORGEJO_ACTIONS = "forgejo_actions"
    WOODPECKER = "woodpecker"

    @property
    def display_name(self) -> str:
        if self is CIBackendKind.WOODPECKER:
            return "Woodpecker CI"
        return "Forgejo Actions"


class RepositoryConfig(BaseModel):
    """Forge settings for one repository tracked on the dashboard."""

    name: str = Field(description="Repository identity used in branch keys (e.g. 'api')")
    provider: ForgeProvider = Field(default=ForgeProvider.GITHUB)
    repo_url: str = Field(
        default="",
        description="Web or SSH URL of the repository, e.g. https://github.com/owner/repo",
    )
    base_url: str = Field(
        default="",
        description="Forge base URL. Derived from repo_url when empty "
        "(github.com uses https://api.github.com).",
    )
    auth_token: str = Field(default="", description="API token. Empty disables the client.")
    ci_backend: CIBackendKind | None = Field(
        default=None,
        description="Codeberg only: forgejo_actions (default) or woodpecker",
    )
    project_id: int | str | None = Field(
        default=None,
        description="GitLab only: numeric project id, or a URL ending in it. "
        "Falls back to the namespace/project path from repo_url.",
    )
    woodpecker_url: str = Field(default="https://ci.codeberg.org/api")
    woodpecker_token: str = Field(default="")
    woodpecker_repo_id: int | str | None = Field(
        default=None,
        description="Woodpecker repository id, or its ci.codeberg.org URL. "
        "Looked up on first use when empty.",
    )


# --- Poller Configuration ---


class PollerConfig(BaseModel):
    """Poll cycle tuning."""

    poll_interval_seconds: int = Field(default=60, description="Seconds between poll cycles")
    max_concurrency: int = Field(
        default=8, ge=1, description="Maximum branch fetches in flight per cycle"
    )
    cycle_timeout_seconds: float = Field(
        default=30.0,
        description="Deadline for one cycle. Branches still pending are soft failures.",
    )
    request_timeout_seconds: float = Field(default=10.0)
    cooldown_seconds: float = Field(
        default=60.0,
        description="Cool-down after a 429/503 when the forge sends no Retry-After",
    )


class ForgeTokens(BaseModel):
    """Fallback tokens applied to repositories that do not set auth_token."""

    github: str = Field(default="")
    gitlab: str = Field(default="")
    codeberg: str = Field(default="")
    woodpecker: str = Field(default="")

    def for_provider(self, provider: ForgeProvider) -> str:
        return getattr(self, provider.value)


# --- Main Settings ---


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="FORGESTATUS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="forgestatus")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False, description="JSON logging for headless use")

    # Poller
    poller: PollerConfig = Field(default_factory=PollerConfig)

    # Credentials
    tokens: ForgeTokens = Field(default_factory=ForgeTokens)

    # Repositories
    repositories: list[RepositoryConfig] = Field(default_factory=list)

    def resolved_repositories(self) -> list[RepositoryConfig]:
        """Return repositories with empty tokens filled from the fallback tokens."""
        resolved = []
        for repo in self.repositories:
            updates: dict[str, Any] = {}
            if not repo.auth_token:
                updates["auth_token"] = self.tokens.for_provider(repo.provider)
            if not repo.woodpecker_token and self.tokens.woodpecker:
                updates["woodpecker_token"] = self.tokens.woodpecker
            resolved.append(repo.model_copy(update=updates) if updates else repo)
        return resolved

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
