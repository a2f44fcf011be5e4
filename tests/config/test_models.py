"""Tests for configuration models."""

import pytest
from pydantic import ValidationError

from rewriteflow.config.models import (
    EngineConfig,
    EtaConfig,
    IdentityBackend,
    IdentityConfig,
    LoggingConfig,
    LogLevel,
    PipelineConfig,
    RewriteflowConfig,
)


class TestEngineConfig:
    """Tests for EngineConfig model."""

    def test_defaults(self):
        """Test default engine settings."""
        config = EngineConfig()

        assert config.rpc_path == "rewrite-engine"
        assert config.timeout_seconds == 120.0
        assert config.max_retries == 3
        assert config.access_token is None

    def test_trailing_slash_stripped(self):
        """Test that the base URL is normalized."""
        config = EngineConfig(base_url="https://engine.example.com/functions/v1///")
        assert config.base_url == "https://engine.example.com/functions/v1"

    def test_access_token_hidden_in_repr(self):
        """Test that the token never shows up in reprs."""
        config = EngineConfig(access_token="super-secret")

        assert "super-secret" not in repr(config)
        assert config.access_token.get_secret_value() == "super-secret"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("timeout_seconds", 0),
            ("timeout_seconds", 601),
            ("max_retries", 0),
            ("max_retries", 11),
        ],
    )
    def test_out_of_range_rejected(self, field, value):
        """Test bounds on timeout and retries."""
        with pytest.raises(ValidationError):
            EngineConfig(**{field: value})


class TestPipelineConfig:
    """Tests for PipelineConfig model."""

    def test_defaults(self):
        """Test default pipeline settings."""
        config = PipelineConfig()

        assert config.max_empty_polls == 2
        assert config.refresh_every == 5
        assert config.max_expansions == 3
        assert config.max_consecutive_errors == 5
        assert config.auto_assemble is True

    def test_zero_expansions_allowed(self):
        """Test that expansion can be disabled entirely."""
        assert PipelineConfig(max_expansions=0).max_expansions == 0

    def test_negative_delay_rejected(self):
        """Test that delays cannot be negative."""
        with pytest.raises(ValidationError):
            PipelineConfig(job_delay_seconds=-1)

    def test_refresh_every_must_be_positive(self):
        """Test that a refresh period of zero is rejected."""
        with pytest.raises(ValidationError):
            PipelineConfig(refresh_every=0)


class TestEtaConfig:
    """Tests for EtaConfig model."""

    def test_defaults(self):
        config = EtaConfig()

        assert config.window == 5
        assert config.smoothing_cap == 99.0

    def test_cap_below_hundred(self):
        """Test that smoothing may never claim completion."""
        with pytest.raises(ValidationError):
            EtaConfig(smoothing_cap=100)


class TestRewriteflowConfig:
    """Tests for the root config model."""

    def test_defaults(self):
        """Test that every section has defaults."""
        config = RewriteflowConfig()

        assert config.identity == IdentityConfig()
        assert config.identity.backend == IdentityBackend.FILE
        assert config.logging == LoggingConfig()
        assert config.logging.level == LogLevel.INFO
        assert config.debug is False

    def test_nested_from_dict(self):
        """Test building from a plain dictionary."""
        config = RewriteflowConfig(
            engine={"base_url": "https://x.test/"},
            identity={"backend": "memory"},
            logging={"level": "ERROR"},
        )

        assert config.engine.base_url == "https://x.test"
        assert config.identity.backend == IdentityBackend.MEMORY
        assert config.logging.level == LogLevel.ERROR

    def test_invalid_backend(self):
        """Test that an unknown identity backend is rejected."""
        with pytest.raises(ValidationError):
            RewriteflowConfig(identity={"backend": "redis"})

    def test_to_yaml_dict_drops_secrets(self):
        """Test that the YAML dict never carries the access token."""
        config = RewriteflowConfig(engine={"access_token": "jwt"})

        data = config.to_yaml_dict()

        assert "access_token" not in data["engine"]
        assert data["identity"]["backend"] == "file"
        assert data["logging"]["level"] == "INFO"
        assert "file" not in data["logging"]
