"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from reviewbot.config import Config, load_config

CONFIG_YAML = """
github:
  webhook_secret: ${TEST_WEBHOOK_SECRET}
  token: ghp_test
llm:
  provider: anthropic
  api_key: ${TEST_LLM_KEY}
cache:
  redis_url: redis://localhost:6379/1
review:
  analysis_timeout_seconds: 120
"""


class TestLoadConfig:
    """Test YAML loading, env expansion and validation."""

    def test_load_with_env_expansion(self, tmp_path, monkeypatch):
        """Test ${VAR} references are expanded and defaults filled in."""
        monkeypatch.setenv("TEST_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("TEST_LLM_KEY", "sk-ant-xyz")
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.github.webhook_secret.get_secret_value() == "s3cret"
        assert config.llm.api_key.get_secret_value() == "sk-ant-xyz"
        assert config.cache.redis_url == "redis://localhost:6379/1"
        assert config.cache.ttl_seconds == 1800
        assert config.review.analysis_timeout_seconds == 120
        assert config.review.max_concurrent_reviews == 4
        assert config.server.port == 8080

    def test_missing_env_var(self, tmp_path, monkeypatch):
        """Test an unset variable is an error."""
        monkeypatch.delenv("TEST_WEBHOOK_SECRET", raising=False)
        monkeypatch.setenv("TEST_LLM_KEY", "k")
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        with pytest.raises(ValueError, match="TEST_WEBHOOK_SECRET"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        """Test a missing config file."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_github_credentials_required(self):
        """Test GitHub needs a token or complete App credentials."""
        with pytest.raises(ValidationError):
            Config(github={"webhook_secret": "s", "app_id": "1"}, llm={"api_key": "k"})

        config = Config(
            github={"webhook_secret": "s", "app_id": "1", "private_key": "pem", "installation_id": "2"},
            llm={"api_key": "k"},
        )
        assert config.github.token is None

    def test_secrets_are_masked(self):
        """Test secrets do not leak through repr."""
        config = Config(github={"webhook_secret": "hunter2", "token": "t"}, llm={"api_key": "k"})
        assert "hunter2" not in repr(config)
