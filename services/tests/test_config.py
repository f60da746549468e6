"""Tests for settings loading (YAML file + environment)."""

import pytest
from pydantic import ValidationError

from forgestatus.config import (
    CIBackendKind,
    ForgeProvider,
    PollerConfig,
    RepositoryConfig,
    Settings,
    yaml_config_settings_source,
)

CONFIG_YAML = """
poller:
  poll_interval_seconds: 30
tokens:
  github: ghp_fallback
  woodpecker: wp_fallback
repositories:
  - name: api
    provider: github
    repo_url: https://github.com/acme/api
  - name: site
    provider: codeberg
    repo_url: git@codeberg.org:acme/site.git
    ci_backend: woodpecker
    auth_token: cb_own
"""


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    monkeypatch.setenv("FORGESTATUS_CONFIG_FILE", str(path))
    return path


class TestYamlSource:
    def test_missing_file_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FORGESTATUS_CONFIG_FILE", str(tmp_path / "absent.yaml"))
        assert yaml_config_settings_source() == {}

    def test_empty_file_is_empty(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("")
        monkeypatch.setenv("FORGESTATUS_CONFIG_FILE", str(path))
        assert yaml_config_settings_source() == {}

    def test_loads_repositories(self, config_file):
        settings = Settings()

        assert settings.poller.poll_interval_seconds == 30
        assert [r.name for r in settings.repositories] == ["api", "site"]
        site = settings.repositories[1]
        assert site.provider is ForgeProvider.CODEBERG
        assert site.ci_backend is CIBackendKind.WOODPECKER


class TestEnvironmentOverrides:
    def test_nested_env_var(self, monkeypatch):
        monkeypatch.setenv("FORGESTATUS_POLLER__MAX_CONCURRENCY", "3")
        assert Settings().poller.max_concurrency == 3

    def test_env_beats_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("FORGESTATUS_TOKENS__GITHUB", "ghp_env")
        assert Settings().tokens.github == "ghp_env"


class TestResolvedRepositories:
    def test_fills_missing_tokens_from_fallbacks(self, config_file):
        api, site = Settings().resolved_repositories()

        assert api.auth_token == "ghp_fallback"
        assert site.auth_token == "cb_own"
        assert site.woodpecker_token == "wp_fallback"

    def test_leaves_configured_models_untouched(self, config_file):
        settings = Settings()
        settings.resolved_repositories()
        assert settings.repositories[0].auth_token == ""


class TestValidation:
    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValidationError):
            PollerConfig(max_concurrency=0)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            RepositoryConfig(name="api", provider="bitbucket")

    def test_display_names(self):
        assert CIBackendKind.WOODPECKER.display_name == "Woodpecker CI"
        assert CIBackendKind.FORGEJO_ACTIONS.display_name == "Forgejo Actions"
