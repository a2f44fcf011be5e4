"""
Configuration Loader.

Loads and validates configuration from YAML files with environment
variable substitution and ``REWRITEFLOW_*`` overrides.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from rewriteflow.config.environment import ACCESS_TOKEN_ENV_VAR, ensure_dotenv_loaded
from rewriteflow.config.models import RewriteflowConfig

# Default configuration file locations
DEFAULT_CONFIG_PATHS = [
    "rewriteflow.yaml",
    "rewriteflow.yml",
    ".rewriteflow.yaml",
    ".rewriteflow.yml",
    "config.yaml",
    "config.yml",
]

# Environment variable for config path
CONFIG_ENV_VAR = "REWRITEFLOW_CONFIG"

# Maps env var name to config path (dot-separated)
ENV_VAR_OVERRIDES = {
    # Engine
    "REWRITEFLOW_BASE_URL": "engine.base_url",
    "REWRITEFLOW_RPC_PATH": "engine.rpc_path",
    "REWRITEFLOW_TIMEOUT": "engine.timeout_seconds",
    "REWRITEFLOW_MAX_RETRIES": "engine.max_retries",
    ACCESS_TOKEN_ENV_VAR: "engine.access_token",
    # Pipeline
    "REWRITEFLOW_MAX_EXPANSIONS": "pipeline.max_expansions",
    "REWRITEFLOW_AUTO_ASSEMBLE": "pipeline.auto_assemble",
    "REWRITEFLOW_STUCK_MINUTES": "pipeline.stuck_minutes",
    # Identity
    "REWRITEFLOW_IDENTITY_BACKEND": "identity.backend",
    "REWRITEFLOW_IDENTITY_PATH": "identity.path",
    # Logging
    "REWRITEFLOW_LOG_LEVEL": "logging.level",
    "REWRITEFLOW_LOG_FILE": "logging.file",
    "REWRITEFLOW_LOG_JSON": "logging.json_format",
    # Runtime flags
    "REWRITEFLOW_DEBUG": "debug",
}

# Overrides passed through verbatim, never coerced
RAW_STRING_OVERRIDES = {ACCESS_TOKEN_ENV_VAR, "REWRITEFLOW_BASE_URL", "REWRITEFLOW_RPC_PATH"}


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        errors: list[dict] | None = None,
        path: Path | None = None,
    ) -> None:
        """Initialize configuration error.

        Args:
            message: Error message
            errors: List of validation errors (from Pydantic)
            path: Path to the config file that caused the error
        """
        super().__init__(message)
        self.errors = errors or []
        self.path = path

    def __str__(self) -> str:
        msg = super().__str__()
        if self.path:
            msg = f"{msg} (file: {self.path})"
        if self.errors:
            details = []
            for err in self.errors[:5]:
                loc = ".".join(str(x) for x in err.get("loc", []))
                details.append(f"  - {loc}: {err.get('msg', 'Unknown error')}")
            if len(self.errors) > 5:
                details.append(f"  ... and {len(self.errors) - 5} more errors")
            msg = f"{msg}\n" + "\n".join(details)
        return msg


class ConfigLoader:
    """Loads configuration from YAML files.

    Supports:
    - YAML configuration files
    - Environment variable substitution (${VAR} and ${VAR:-default} syntax)
    - REWRITEFLOW_* overrides, applied after substitution
    - Validation via Pydantic

    Usage:
        # Load from specific file
        config = ConfigLoader("rewriteflow.yaml").load()

        # Load from REWRITEFLOW_CONFIG or default locations
        config = ConfigLoader().load_from_env()
    """

    # Matches ${VAR_NAME}, ${VAR_NAME:-default} and ${VAR_NAME:default}
    ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-?([^}]*))?\}")

    def __init__(
        self,
        config_path: str | Path | None = None,
        env_file: str = ".env",
    ) -> None:
        """Initialize the config loader.

        Args:
            config_path: Path to YAML config file (optional)
            env_file: Path to .env file for environment loading
        """
        self._config_path = Path(config_path) if config_path else None
        self._env_file = env_file
        self._config: RewriteflowConfig | None = None
        self._loaded_from_path: Path | None = None

    @property
    def loaded_from_path(self) -> Path | None:
        """Path the config was actually loaded from, if any."""
        return self._loaded_from_path

    @property
    def config(self) -> RewriteflowConfig | None:
        return self._config

    def load(self, path: str | Path | None = None) -> RewriteflowConfig:
        """Load and validate configuration from a specific path.

        With no path at all, defaults and environment overrides are used.

        Args:
            path: Optional path overriding the one given to __init__

        Returns:
            Validated RewriteflowConfig

        Raises:
            ConfigurationError: If config is invalid
            FileNotFoundError: If config file not found
        """
        if path is not None:
            self._config_path = Path(path)

        ensure_dotenv_loaded(self._env_file)

        if self._config_path:
            raw = self._load_yaml(self._config_path)
            self._loaded_from_path = self._config_path
        else:
            raw = {}
            self._loaded_from_path = None

        processed = self._substitute_env_vars(raw)
        processed = self._clean_none_values(processed)
        processed = self._apply_env_overrides(processed)

        try:
            self._config = RewriteflowConfig(**processed)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.error_count()} errors",
                errors=e.errors(),
                path=self._loaded_from_path,
            ) from e

        return self._config

    def load_from_env(self) -> RewriteflowConfig:
        """Load configuration from REWRITEFLOW_CONFIG or default locations.

        Search order:
        1. REWRITEFLOW_CONFIG environment variable (if set)
        2. DEFAULT_CONFIG_PATHS in the current directory
        3. Built-in defaults

        Returns:
            Validated RewriteflowConfig

        Raises:
            ConfigurationError: If config is invalid
            FileNotFoundError: If REWRITEFLOW_CONFIG points at a missing file
        """
        ensure_dotenv_loaded(self._env_file)

        env_config_path = os.environ.get(CONFIG_ENV_VAR)
        if env_config_path:
            config_path = Path(env_config_path)
            if not config_path.exists():
                raise FileNotFoundError(
                    f"Config file specified by {CONFIG_ENV_VAR} not found: {env_config_path}"
                )
            return self.load(config_path)

        for default_path in DEFAULT_CONFIG_PATHS:
            path = Path(default_path)
            if path.exists():
                return self.load(path)

        return self.load()

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", path=path) from e

        if not isinstance(data, dict):
            raise ConfigurationError("Top-level YAML value must be a mapping", path=path)
        return data

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively substitute environment variables in config values."""
        if isinstance(data, dict):
            return {k: self._substitute_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            return self._substitute_string(data)
        return data

    def _clean_none_values(self, data: Any) -> Any:
        """Drop None dict values so Pydantic falls back to defaults.

        YAML parses empty sections as None.
        """
        if isinstance(data, dict):
            return {k: self._clean_none_values(v) for k, v in data.items() if v is not None}
        elif isinstance(data, list):
            return [self._clean_none_values(item) for item in data]
        return data

    def _substitute_string(self, value: str) -> Any:
        """Substitute environment variables in a string.

        A string that is a single ``${VAR}`` reference is type-coerced;
        embedded references are substituted as text.
        """
        full_match = self.ENV_PATTERN.fullmatch(value)
        if full_match:
            env_value = os.environ.get(full_match.group(1))
            resolved = env_value if env_value is not None else full_match.group(2)
            if resolved is not None:
                return self._coerce_type(resolved)
            # Left as-is; fails validation if the field is typed
            return value

        def replace(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return self.ENV_PATTERN.sub(replace, value)

    def _coerce_type(self, value: str) -> Any:
        """Coerce a string value to bool, int, float or None."""
        if value == "":
            return None

        lower_value = value.lower()
        if lower_value in ("true", "yes", "on"):
            return True
        if lower_value in ("false", "no", "off"):
            return False

        try:
            if "." not in value and "e" not in lower_value:
                return int(value)
            return float(value)
        except ValueError:
            return value

    def _apply_env_overrides(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply REWRITEFLOW_* overrides; they take precedence over the file."""
        for env_var, config_path in ENV_VAR_OVERRIDES.items():
            env_value = os.environ.get(env_var)
            if env_value is None or env_value == "":
                continue
            value = env_value if env_var in RAW_STRING_OVERRIDES else self._coerce_type(env_value)
            self._set_nested_value(config_dict, config_path, value)
        return config_dict

    def _set_nested_value(self, config_dict: dict[str, Any], path: str, value: Any) -> None:
        parts = path.split(".")
        current = config_dict
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    def save(self, path: str | Path) -> None:
        """Save the current configuration (without secrets) to YAML.

        Raises:
            ValueError: If no config is loaded
        """
        if self._config is None:
            raise ValueError("No configuration loaded")

        with open(path, "w") as f:
            yaml.safe_dump(self._config.to_yaml_dict(), f, default_flow_style=False, sort_keys=False)


def load_config(
    config_path: str | Path | None = None,
    env_file: str = ".env",
) -> RewriteflowConfig:
    """Load configuration from a file, or discover it when no path is given.

    Args:
        config_path: Path to YAML config file
        env_file: Path to .env file

    Returns:
        Validated RewriteflowConfig

    Raises:
        ConfigurationError: If config validation fails
        FileNotFoundError: If config file not found
    """
    loader = ConfigLoader(config_path, env_file)
    if config_path is None:
        return loader.load_from_env()
    return loader.load()
