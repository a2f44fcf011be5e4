"""
Environment Variable Handling.

Loads .env files with python-dotenv and exposes the engine access token.
Call ensure_dotenv_loaded() before building configuration so that
``${VAR}`` references and ``REWRITEFLOW_*`` overrides see .env values.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import SecretStr

ACCESS_TOKEN_ENV_VAR = "REWRITEFLOW_ACCESS_TOKEN"

_dotenv_loaded: bool = False


def ensure_dotenv_loaded(env_file: str = ".env") -> bool:
    """Ensure a .env file is loaded into os.environ.

    Existing environment variables win over .env values.

    Args:
        env_file: Path to .env file (relative or absolute)

    Returns:
        True if a .env file was found and loaded
    """
    global _dotenv_loaded

    if _dotenv_loaded:
        return True

    for env_path in (Path(env_file), Path.cwd() / env_file):
        if env_path.exists():
            load_dotenv(env_path, override=False)
            _dotenv_loaded = True
            return True

    _dotenv_loaded = True
    return False


def get_access_token() -> SecretStr | None:
    """Read the engine access token from the environment."""
    ensure_dotenv_loaded()
    value = os.environ.get(ACCESS_TOKEN_ENV_VAR)
    return SecretStr(value) if value else None


def reset_environment() -> None:
    """Forget that .env was loaded. Useful for testing."""
    global _dotenv_loaded
    _dotenv_loaded = False
