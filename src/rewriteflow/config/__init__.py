"""
rewriteflow - Configuration Management

This module provides configuration management including:
- YAML configuration loading and validation
- Environment variable handling (.env via python-dotenv)
- Engine, pipeline, ETA, identity store and logging settings
"""

from rewriteflow.config.environment import (
    ACCESS_TOKEN_ENV_VAR,
    ensure_dotenv_loaded,
    get_access_token,
    reset_environment,
)
from rewriteflow.config.loader import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATHS,
    ENV_VAR_OVERRIDES,
    ConfigLoader,
    ConfigurationError,
    load_config,
)
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

__all__ = [
    # Config models
    "EngineConfig",
    "PipelineConfig",
    "EtaConfig",
    "IdentityBackend",
    "IdentityConfig",
    "LogLevel",
    "LoggingConfig",
    "RewriteflowConfig",
    # Loader
    "ConfigLoader",
    "ConfigurationError",
    "load_config",
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATHS",
    "ENV_VAR_OVERRIDES",
    # Environment
    "ACCESS_TOKEN_ENV_VAR",
    "ensure_dotenv_loaded",
    "get_access_token",
    "reset_environment",
]
